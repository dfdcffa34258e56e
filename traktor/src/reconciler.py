from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from traktor.src.errors import PolicyError, StoreWriteError
from traktor.src.kube import ClusterStore
from traktor.src.matcher import find_policies_for_secret, match_namespaces, match_workloads
from traktor.src.metrics import METRICS
from traktor.src.models import MatchMode, ReconcileRequest, SecretSnapshot, WorkloadRef
from traktor.src.selectors import parse_label_selector

SKIP_SELF_NAMESPACE = "self-namespace"
SKIP_POLICY_NOT_FOUND = "policy-not-found"
SKIP_INVALID_POLICY = "invalid-policy"
SKIP_NAMESPACE_NOT_SELECTED = "namespace-not-selected"


def utc_now_rfc3339() -> str:
    """Return the current UTC time as an RFC 3339 string (e.g. ``2024-01-15T08:30:00.123Z``).

    Used as the restart annotation value.  Millisecond precision keeps two
    restarts of the same workload within one second distinct.
    """
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class WorkloadOutcome:
    workload: WorkloadRef
    restarted: bool
    error: str | None = None


@dataclass(frozen=True)
class ReconcileResult:
    """Immutable report of one reconcile invocation.

    ``skipped_reason`` is set when the invocation intentionally did nothing
    (for example the Secret lives in the controller's own namespace).
    Otherwise ``outcomes`` holds one entry per matched workload, in the
    order they were attempted.
    """

    request: ReconcileRequest
    matched: int = 0
    restarted: int = 0
    failed: int = 0
    outcomes: tuple[WorkloadOutcome, ...] = ()
    skipped_reason: str | None = None


class SecretsRefreshReconciler:
    """Decides which workloads depend on a changed Secret and rolls them.

    Stateless between invocations: policies, namespaces and workloads are
    listed fresh from the store on every call.  Read failures surface as
    :class:`~traktor.src.errors.StoreReadError` so the caller can retry the
    whole request; a failed patch only fails its own workload.
    """

    def __init__(
        self,
        store: ClusterStore,
        operator_namespace: str,
        restart_annotation_key: str,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.store = store
        self.operator_namespace = operator_namespace
        self.restart_annotation_key = restart_annotation_key
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def _is_self_namespace(self, namespace: str) -> bool:
        return namespace == self.operator_namespace

    def map_secret_to_requests(self, secret: SecretSnapshot) -> list[ReconcileRequest]:
        """Return the reconcile requests a change to *secret* should enqueue."""
        if self._is_self_namespace(secret.namespace):
            self.logger.debug(
                "Ignoring Secret %s in the controller's own namespace", secret.key
            )
            return []

        policies = self.store.list_policies()
        if not policies:
            return []
        namespaces = self.store.list_namespaces()
        requests = find_policies_for_secret(secret, policies, namespaces)
        for request in requests:
            METRICS.requests_total.labels(mode=request.mode.value).inc()
        return requests

    def reconcile(self, request: ReconcileRequest) -> ReconcileResult:
        """Restart the workloads affected by *request*.

        Fine requests restart workloads in the Secret's namespace that
        reference the Secret by name.  Coarse requests re-read their policy,
        confirm it still selects the Secret's namespace, and restart every
        workload there.
        """
        namespace = request.secret.namespace
        if self._is_self_namespace(namespace):
            self.logger.info(
                "Skipping operator's own namespace %s to prevent self-restart",
                namespace,
                extra={"secret": str(request.secret), "namespace": namespace},
            )
            METRICS.reconcile_total.labels(outcome="skipped").inc()
            return ReconcileResult(request=request, skipped_reason=SKIP_SELF_NAMESPACE)

        mode = MatchMode.FINE
        if request.policy is not None:
            policy = self.store.get_policy(request.policy)
            if policy is None:
                self.logger.info(
                    "SecretsRefresh %s no longer exists; nothing to do", request.policy
                )
                METRICS.reconcile_total.labels(outcome="skipped").inc()
                return ReconcileResult(request=request, skipped_reason=SKIP_POLICY_NOT_FOUND)
            try:
                mode = policy.mode()
                selected = match_namespaces(policy, self.store.list_namespaces())
            except PolicyError as exc:
                METRICS.policy_errors_total.inc()
                self.logger.error(
                    "Cannot evaluate SecretsRefresh %s: %s",
                    policy.key,
                    exc,
                    extra={"policy": str(policy.key), "secret": str(request.secret)},
                )
                METRICS.reconcile_total.labels(outcome="skipped").inc()
                return ReconcileResult(request=request, skipped_reason=SKIP_INVALID_POLICY)
            if namespace not in selected:
                selector = parse_label_selector(policy.namespace_selector)
                self.logger.info(
                    "SecretsRefresh %s no longer selects namespace %s (namespaceSelector: %s)",
                    policy.key,
                    namespace,
                    selector,
                    extra={"policy": str(policy.key), "selector": str(selector)},
                )
                METRICS.reconcile_total.labels(outcome="skipped").inc()
                return ReconcileResult(
                    request=request, skipped_reason=SKIP_NAMESPACE_NOT_SELECTED
                )

        workloads = self.store.list_workloads(namespace)
        if mode is MatchMode.COARSE:
            targets = sorted(workload.ref for workload in workloads)
        else:
            targets = sorted(match_workloads(namespace, request.secret.name, workloads))

        result = self._restart_batch(request, targets)
        self.logger.info(
            "Completed restart for %s: %d restarted, %d failed, %d matched of %d workloads",
            request,
            result.restarted,
            result.failed,
            result.matched,
            len(workloads),
            extra={
                "secret": str(request.secret),
                "namespace": namespace,
                "policy": str(request.policy) if request.policy else None,
                "mode": mode.value,
                "matched": result.matched,
                "restarted": result.restarted,
                "failed": result.failed,
            },
        )
        METRICS.reconcile_total.labels(
            outcome="partial_failure" if result.failed else "success"
        ).inc()
        return result

    def restart(self, workload: WorkloadRef, timestamp: str) -> WorkloadOutcome:
        """Patch the restart annotation onto one workload's pod template.

        Write failures are logged and reported in the returned outcome rather
        than raised.
        """
        try:
            self.store.patch_restart(workload, self.restart_annotation_key, timestamp)
        except StoreWriteError as exc:
            METRICS.restart_errors_total.labels(kind=workload.kind).inc()
            self.logger.error(
                "Failed to restart %s: %s",
                workload,
                exc,
                extra={"workload": str(workload), "namespace": workload.namespace},
            )
            return WorkloadOutcome(workload=workload, restarted=False, error=str(exc))

        METRICS.restarts_total.labels(kind=workload.kind).inc()
        self.logger.info(
            "Triggered rolling restart for %s",
            workload,
            extra={"workload": str(workload), "namespace": workload.namespace},
        )
        return WorkloadOutcome(workload=workload, restarted=True)

    def _restart_batch(
        self, request: ReconcileRequest, targets: list[WorkloadRef]
    ) -> ReconcileResult:
        timestamp = self.now_fn()
        outcomes = tuple(self.restart(workload, timestamp) for workload in targets)
        restarted = sum(1 for outcome in outcomes if outcome.restarted)
        if not targets:
            self.logger.info("No workloads depend on %s", request)
        return ReconcileResult(
            request=request,
            matched=len(targets),
            restarted=restarted,
            failed=len(outcomes) - restarted,
            outcomes=outcomes,
        )
