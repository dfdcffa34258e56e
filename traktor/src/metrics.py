from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported on ``/metrics``.

    Restart counters carry a ``kind`` label (Deployment, StatefulSet,
    DaemonSet) so rollout churn can be broken down per workload type.
    """

    secret_events_total: Counter = field(
        default_factory=lambda: Counter(
            "traktor_secret_events_total",
            "Secret watch events seen, by change filter decision",
            ["decision"],
        )
    )
    requests_total: Counter = field(
        default_factory=lambda: Counter(
            "traktor_reconcile_requests_total",
            "Reconcile requests produced by mapping Secret changes to policies",
            ["mode"],
        )
    )
    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "traktor_reconcile_total",
            "Reconcile invocations, by outcome",
            ["outcome"],
        )
    )
    restarts_total: Counter = field(
        default_factory=lambda: Counter(
            "traktor_restarts_total",
            "Workload rolling restarts triggered by Secret changes",
            ["kind"],
        )
    )
    restart_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "traktor_restart_errors_total",
            "Workload restart patches that failed",
            ["kind"],
        )
    )
    policy_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "traktor_policy_errors_total",
            "SecretsRefresh objects skipped because they could not be evaluated",
        )
    )
    mapping_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "traktor_mapping_errors_total",
            "Secret changes dropped because policies or namespaces could not be listed",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "traktor_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "traktor_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    pending_retries: Gauge = field(
        default_factory=lambda: Gauge(
            "traktor_pending_retries",
            "Reconcile requests waiting to be retried after a read failure",
        )
    )
    retry_total: Counter = field(
        default_factory=lambda: Counter(
            "traktor_retry_total",
            "Reconcile retry attempts scheduled after read failures",
        )
    )
    dropped_requests_total: Counter = field(
        default_factory=lambda: Counter(
            "traktor_dropped_requests_total",
            "Pending reconcile requests dropped on shutdown",
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "traktor_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "traktor_leader_state",
            "Whether this replica currently holds the leader lease (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "traktor_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "traktor",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
