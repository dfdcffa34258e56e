from __future__ import annotations

import logging
from collections.abc import Iterable

from traktor.src.errors import PolicyError
from traktor.src.metrics import METRICS
from traktor.src.models import (
    MatchMode,
    NamespaceInfo,
    ReconcileRequest,
    RefreshPolicy,
    SecretSnapshot,
    Workload,
    WorkloadRef,
)
from traktor.src.selectors import parse_label_selector

LOGGER = logging.getLogger(__name__)


def match_namespaces(policy: RefreshPolicy, namespaces: Iterable[NamespaceInfo]) -> set[str]:
    """Return the names of the namespaces selected by *policy*.

    An absent ``namespaceSelector`` selects every namespace.  A malformed
    selector raises :class:`~traktor.src.errors.SelectorParseError`.
    """
    selector = parse_label_selector(policy.namespace_selector)
    if selector is None:
        return {namespace.name for namespace in namespaces}
    return {namespace.name for namespace in namespaces if selector.matches(namespace.labels)}


def match_workloads(
    namespace: str, secret_name: str, workloads: Iterable[Workload]
) -> set[WorkloadRef]:
    """Return the workloads in *namespace* that reference *secret_name*.

    Matching is exact string equality on the referenced Secret name; no
    prefix or wildcard matching.
    """
    return {
        workload.ref
        for workload in workloads
        if workload.ref.namespace == namespace and workload.uses_secret(secret_name)
    }


def _policy_wants_secret(
    policy: RefreshPolicy, secret: SecretSnapshot, namespaces: list[NamespaceInfo]
) -> bool:
    if secret.namespace not in match_namespaces(policy, namespaces):
        return False
    secret_selector = parse_label_selector(policy.secret_selector)
    return secret_selector is None or secret_selector.matches(secret.labels)


def find_policies_for_secret(
    secret: SecretSnapshot,
    policies: Iterable[RefreshPolicy],
    namespaces: Iterable[NamespaceInfo],
) -> list[ReconcileRequest]:
    """Map a changed Secret to the reconcile requests of every interested policy.

    A policy is interested when its namespace selector selects the Secret's
    namespace and its secret selector (if any) matches the Secret's labels.
    Fine-mode policies all map to the same Secret-scoped request; each
    coarse-mode policy gets its own request.  When any coarse request exists
    the fine request is dropped, because a coarse request already restarts
    every workload in the Secret's namespace.

    A policy that cannot be evaluated is logged and skipped; it never
    prevents other policies from being considered.
    """
    namespace_list = list(namespaces)
    requests: set[ReconcileRequest] = set()

    for policy in policies:
        try:
            mode = policy.mode()
            if not _policy_wants_secret(policy, secret, namespace_list):
                continue
        except PolicyError as exc:
            METRICS.policy_errors_total.inc()
            LOGGER.error(
                "Skipping SecretsRefresh %s for Secret %s: %s",
                policy.key,
                secret.key,
                exc,
                extra={"policy": str(policy.key), "secret": str(secret.key)},
            )
            continue

        if mode is MatchMode.COARSE:
            requests.add(ReconcileRequest(secret=secret.key, policy=policy.key))
        else:
            requests.add(ReconcileRequest(secret=secret.key))

    coarse = {request for request in requests if request.mode is MatchMode.COARSE}
    if coarse:
        requests = coarse
    return sorted(requests, key=ReconcileRequest.sort_key)
