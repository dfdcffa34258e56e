from __future__ import annotations

import pytest

from traktor.src.config import (
    DEFAULT_OPERATOR_NAMESPACE,
    DEFAULT_RESTART_ANNOTATION_KEY,
    ConfigError,
    LeaderElectionConfig,
    env_int,
    load_config,
    parse_bool,
)


def test_load_config_defaults() -> None:
    config = load_config({})

    assert config.operator_namespace == DEFAULT_OPERATOR_NAMESPACE == "traktor-system"
    assert config.restart_annotation_key == DEFAULT_RESTART_ANNOTATION_KEY
    assert (config.policy_group, config.policy_version, config.policy_plural) == (
        "traktor.gdxcloud.net",
        "v1alpha1",
        "secretsrefreshes",
    )
    assert config.workload_kinds == ("Deployment",)
    assert config.watch_timeout_seconds == 30
    assert config.health_port == 8080
    assert config.log_level == "INFO"
    assert config.leader_election.enabled is True
    assert config.leader_election.identity == "unknown"


def test_load_config_custom_values() -> None:
    config = load_config(
        {
            "POD_NAMESPACE": "platform",
            "RESTART_ANNOTATION_KEY": "example.com/restartedAt",
            "WORKLOAD_KINDS": "Deployment, StatefulSet,DaemonSet,Deployment",
            "WATCH_TIMEOUT_SECONDS": "60",
            "HEALTH_PORT": "9090",
            "LOG_LEVEL": "debug",
            "LEADER_ELECTION_ENABLED": "false",
            "HOSTNAME": "traktor-0",
        }
    )

    assert config.operator_namespace == "platform"
    assert config.restart_annotation_key == "example.com/restartedAt"
    assert config.workload_kinds == ("Deployment", "StatefulSet", "DaemonSet")
    assert config.watch_timeout_seconds == 60
    assert config.health_port == 9090
    assert config.log_level == "DEBUG"
    assert config.leader_election.enabled is False
    assert config.leader_election.identity == "traktor-0"


def test_blank_pod_namespace_falls_back_to_default() -> None:
    assert load_config({"POD_NAMESPACE": "  "}).operator_namespace == "traktor-system"


def test_leader_identity_prefers_explicit_value() -> None:
    config = load_config({"LEADER_ELECTION_IDENTITY": "explicit", "HOSTNAME": "host"})

    assert config.leader_election.identity == "explicit"


@pytest.mark.parametrize(
    ("env", "message"),
    [
        ({"WORKLOAD_KINDS": "Deployment,CronJob"}, "WORKLOAD_KINDS"),
        ({"WORKLOAD_KINDS": " , "}, "at least one"),
        ({"RESTART_ANNOTATION_KEY": " "}, "RESTART_ANNOTATION_KEY"),
        ({"WATCH_TIMEOUT_SECONDS": "0"}, "WATCH_TIMEOUT_SECONDS must be >= 1"),
        ({"HEALTH_PORT": "70000"}, "HEALTH_PORT must be <= 65535"),
        ({"HEALTH_PORT": "http"}, "HEALTH_PORT must be an integer"),
        (
            {"LEADER_ELECTION_RENEW_DEADLINE_SECONDS": "20"},
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller",
        ),
    ],
)
def test_load_config_rejects_invalid_values(env: dict[str, str], message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        load_config(env)


def test_env_int_returns_default_when_not_set() -> None:
    assert env_int({}, "X", 10) == 10


def test_env_int_raises_on_empty_string() -> None:
    with pytest.raises(ConfigError, match="X must be an integer"):
        env_int({"X": ""}, "X", 10)


def test_env_int_parses_negative_without_minimum() -> None:
    assert env_int({"X": "-5"}, "X", 0) == -5


def test_leader_election_retry_period_must_be_below_renew_deadline() -> None:
    with pytest.raises(ConfigError, match="RETRY_PERIOD"):
        LeaderElectionConfig(retry_period_seconds=10, renew_deadline_seconds=10)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, True), ("true", True), ("YES", True), ("1", True), ("off", False), ("", False)],
)
def test_parse_bool(raw: str | None, expected: bool) -> None:
    assert parse_bool(raw, default=True) is expected
