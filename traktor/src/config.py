from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

DEFAULT_OPERATOR_NAMESPACE = "traktor-system"
DEFAULT_RESTART_ANNOTATION_KEY = "traktor.gdxcloud.net/restartedAt"
SUPPORTED_WORKLOAD_KINDS = ("Deployment", "StatefulSet", "DaemonSet")


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _parse_workload_kinds(raw: str) -> tuple[str, ...]:
    kinds: list[str] = []
    for part in raw.split(","):
        kind = part.strip()
        if not kind:
            continue
        if kind not in SUPPORTED_WORKLOAD_KINDS:
            raise ConfigError(
                f"WORKLOAD_KINDS entries must be one of {', '.join(SUPPORTED_WORKLOAD_KINDS)}, "
                f"got: {kind!r}"
            )
        if kind not in kinds:
            kinds.append(kind)
    if not kinds:
        raise ConfigError("WORKLOAD_KINDS must name at least one workload kind")
    return tuple(kinds)


@dataclass(frozen=True)
class LeaderElectionConfig:
    """Lease timings for leader election.

    The relationship ``retry_period < renew_deadline < lease_duration`` is
    enforced on construction so a replica always gets several renewal
    attempts before its lease can be taken over.
    """

    enabled: bool = True
    lease_name: str = "traktor-controller-leader"
    identity: str = "unknown"
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2
    controller_stop_timeout_seconds: int = 45

    def __post_init__(self) -> None:
        if self.renew_deadline_seconds >= self.lease_duration_seconds:
            raise ConfigError(
                "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
                "LEADER_ELECTION_LEASE_DURATION_SECONDS"
            )
        if self.retry_period_seconds >= self.renew_deadline_seconds:
            raise ConfigError(
                "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
                "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
            )


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration, resolved once at startup.

    Attributes:
        operator_namespace: Namespace the controller runs in.  Secret changes
            in this namespace never trigger restarts, so the controller
            cannot roll its own pods.
        restart_annotation_key: Pod template annotation written on restart.
        policy_group, policy_version, policy_plural: Coordinates of the
            ``SecretsRefresh`` custom resource.
        workload_kinds: Workload kinds considered for restarts.
        watch_timeout_seconds: Server-side timeout for each watch stream.
    """

    operator_namespace: str = DEFAULT_OPERATOR_NAMESPACE
    restart_annotation_key: str = DEFAULT_RESTART_ANNOTATION_KEY
    policy_group: str = "traktor.gdxcloud.net"
    policy_version: str = "v1alpha1"
    policy_plural: str = "secretsrefreshes"
    workload_kinds: tuple[str, ...] = ("Deployment",)
    watch_timeout_seconds: int = 30
    health_port: int = 8080
    log_level: str = "INFO"
    leader_election: LeaderElectionConfig = field(default_factory=LeaderElectionConfig)


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller configuration from the environment.

    ``POD_NAMESPACE`` is normally injected through the downward API; when it
    is unset or blank the controller falls back to ``traktor-system``.
    Raises :class:`ConfigError` for malformed values.
    """
    values = env if env is not None else os.environ

    operator_namespace = (values.get("POD_NAMESPACE") or "").strip() or DEFAULT_OPERATOR_NAMESPACE

    restart_annotation_key = values.get("RESTART_ANNOTATION_KEY", DEFAULT_RESTART_ANNOTATION_KEY)
    if not restart_annotation_key.strip():
        raise ConfigError("RESTART_ANNOTATION_KEY must be a non-empty string")

    leader_election = LeaderElectionConfig(
        enabled=parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True),
        lease_name=values.get("LEADER_ELECTION_LEASE_NAME", "traktor-controller-leader"),
        identity=values.get(
            "LEADER_ELECTION_IDENTITY", values.get("HOSTNAME", values.get("POD_NAME", "unknown"))
        ),
        lease_duration_seconds=env_int(
            values, "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1
        ),
        renew_deadline_seconds=env_int(
            values, "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1
        ),
        retry_period_seconds=env_int(values, "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1),
        # Must exceed the watch timeout so a handoff never overlaps two watch loops.
        controller_stop_timeout_seconds=env_int(
            values, "LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS", 45, minimum=1
        ),
    )

    return ControllerConfig(
        operator_namespace=operator_namespace,
        restart_annotation_key=restart_annotation_key.strip(),
        policy_group=values.get("POLICY_GROUP", "traktor.gdxcloud.net"),
        policy_version=values.get("POLICY_VERSION", "v1alpha1"),
        policy_plural=values.get("POLICY_PLURAL", "secretsrefreshes"),
        workload_kinds=_parse_workload_kinds(values.get("WORKLOAD_KINDS", "Deployment")),
        watch_timeout_seconds=env_int(values, "WATCH_TIMEOUT_SECONDS", 30, minimum=1),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        log_level=values.get("LOG_LEVEL", "INFO").upper(),
        leader_election=leader_election,
    )
