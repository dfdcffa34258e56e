"""Exception hierarchy for the secret refresh controller.

Every failure raised by the reconciliation core derives from
:class:`TraktorError` so the scheduler can scope it to a single invocation
without ever taking the process down.
"""

from __future__ import annotations


class TraktorError(Exception):
    """Base exception for all controller errors."""


def _detail(status: int | None, reason: str | None) -> str:
    if status is not None:
        return f" (status={status}, reason={reason})"
    return f" ({reason})" if reason else ""


class StoreReadError(TraktorError):
    """Raised when a list or get call against the Kubernetes API fails.

    Aborts the current reconcile invocation.  The scheduler retries the
    request with backoff.
    """

    def __init__(
        self, operation: str, status: int | None = None, reason: str | None = None
    ) -> None:
        self.operation = operation
        self.status = status
        self.reason = reason
        super().__init__(f"Failed to {operation}{_detail(status, reason)}")


class StoreWriteError(TraktorError):
    """Raised when patching a single workload fails.

    Recovered per workload: the restart batch continues with the next item.
    """

    def __init__(
        self, workload: str, status: int | None = None, reason: str | None = None
    ) -> None:
        self.workload = workload
        self.status = status
        self.reason = reason
        super().__init__(f"Failed to patch {workload}{_detail(status, reason)}")


class PolicyError(TraktorError, ValueError):
    """Raised when a ``SecretsRefresh`` object cannot be evaluated.

    The offending policy is skipped for the current event; other policies
    are still evaluated.
    """


class SelectorParseError(PolicyError):
    """Raised when a label selector on a policy cannot be parsed."""
