from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException
from urllib3.exceptions import MaxRetryError, ProtocolError, ReadTimeoutError

from traktor.src.errors import StoreReadError, StoreWriteError
from traktor.src.kube import (
    ClusterStore,
    build_clients,
    load_kube_configuration,
    restart_patch_body,
)
from traktor.src.models import ObjectKey, WorkloadRef
from traktor.tests.fakes import (
    FakeAppsApi,
    FakeCoreApi,
    FakeCustomObjectsApi,
    make_namespace,
    make_policy,
    make_workload,
)


def _make_store(
    core_api: object | None = None,
    apps_api: object | None = None,
    custom_api: object | None = None,
    workload_kinds: tuple[str, ...] = ("Deployment",),
) -> ClusterStore:
    return ClusterStore(
        core_api=core_api or FakeCoreApi(),
        apps_api=apps_api or FakeAppsApi(),
        custom_api=custom_api or FakeCustomObjectsApi(),
        policy_group="traktor.gdxcloud.net",
        policy_version="v1alpha1",
        policy_plural="secretsrefreshes",
        workload_kinds=workload_kinds,
    )


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("traktor.src.kube.config.load_incluster_config") as mock_incluster,
        patch("traktor.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "traktor.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("traktor.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_clients_returns_tuple() -> None:
    with patch("traktor.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.AppsV1Api.return_value = SimpleNamespace(name="apps")
        mock_client.CustomObjectsApi.return_value = SimpleNamespace(name="custom")
        core, apps, custom = build_clients()

    assert core.name == "core"
    assert apps.name == "apps"
    assert custom.name == "custom"


def test_restart_patch_body_only_touches_template_annotation() -> None:
    body = restart_patch_body("traktor.gdxcloud.net/restartedAt", "2026-01-01T00:00:00Z")

    assert body == {
        "spec": {
            "template": {
                "metadata": {
                    "annotations": {"traktor.gdxcloud.net/restartedAt": "2026-01-01T00:00:00Z"}
                }
            }
        }
    }


def test_store_rejects_unknown_workload_kind() -> None:
    with pytest.raises(ValueError, match="CronJob"):
        _make_store(workload_kinds=("Deployment", "CronJob"))


def test_list_namespaces_converts_labels() -> None:
    core_api = FakeCoreApi(namespaces=[make_namespace("ns-a", {"env": "test"})])

    namespaces = _make_store(core_api=core_api).list_namespaces()

    assert [(ns.name, dict(ns.labels)) for ns in namespaces] == [("ns-a", {"env": "test"})]


def test_list_namespaces_translates_api_errors() -> None:
    store = _make_store(core_api=FakeCoreApi(fail_status=503))

    with pytest.raises(StoreReadError) as exc_info:
        store.list_namespaces()

    assert exc_info.value.status == 503
    assert "list namespaces" in str(exc_info.value)


def test_list_policies_reads_cluster_wide() -> None:
    custom_api = FakeCustomObjectsApi(
        policies=[make_policy("refresh", namespace_selector={"matchLabels": {"env": "test"}})]
    )

    policies = _make_store(custom_api=custom_api).list_policies()

    assert custom_api.calls == [("list", "traktor.gdxcloud.net", "v1alpha1", "secretsrefreshes")]
    assert [policy.key for policy in policies] == [ObjectKey("ops", "refresh")]
    assert policies[0].namespace_selector == {"matchLabels": {"env": "test"}}


def test_list_policies_translates_api_errors() -> None:
    store = _make_store(custom_api=FakeCustomObjectsApi(fail_status=500))

    with pytest.raises(StoreReadError, match="secretsrefreshes"):
        store.list_policies()


def test_get_policy_returns_none_when_missing() -> None:
    store = _make_store(custom_api=FakeCustomObjectsApi(policies=[make_policy("refresh")]))

    assert store.get_policy(ObjectKey("ops", "gone")) is None
    found = store.get_policy(ObjectKey("ops", "refresh"))
    assert found is not None
    assert found.key == ObjectKey("ops", "refresh")


def test_get_policy_raises_on_other_errors() -> None:
    store = _make_store(custom_api=FakeCustomObjectsApi(fail_status=500))

    with pytest.raises(StoreReadError):
        store.get_policy(ObjectKey("ops", "refresh"))


def test_list_workloads_covers_configured_kinds_in_order() -> None:
    apps_api = FakeAppsApi(
        deployments=[make_workload("web", env_secrets=["db-creds"]), make_workload("api")],
        stateful_sets=[make_workload("db", volume_secrets=["db-creds"])],
        daemon_sets=[make_workload("agent")],
    )
    store = _make_store(apps_api=apps_api, workload_kinds=("StatefulSet", "Deployment"))

    workloads = store.list_workloads("ns-a")

    assert [str(workload.ref) for workload in workloads] == [
        "Deployment ns-a/api",
        "Deployment ns-a/web",
        "StatefulSet ns-a/db",
    ]
    assert apps_api.list_calls == [("stateful_set", "ns-a"), ("deployment", "ns-a")]


def test_list_workloads_translates_api_errors() -> None:
    store = _make_store(apps_api=FakeAppsApi(fail_list_status=403))

    with pytest.raises(StoreReadError) as exc_info:
        store.list_workloads("ns-a")

    assert exc_info.value.status == 403


def test_patch_restart_sends_correct_body() -> None:
    mock_apps_api = MagicMock()
    store = _make_store(apps_api=mock_apps_api, workload_kinds=("DaemonSet",))

    store.patch_restart(
        WorkloadRef(kind="DaemonSet", namespace="ns-a", name="agent"),
        "traktor.gdxcloud.net/restartedAt",
        "2026-01-01T00:00:00Z",
    )

    mock_apps_api.patch_namespaced_daemon_set.assert_called_once()
    call_kwargs = mock_apps_api.patch_namespaced_daemon_set.call_args
    assert call_kwargs.kwargs["name"] == "agent"
    assert call_kwargs.kwargs["namespace"] == "ns-a"
    annotations = call_kwargs.kwargs["body"]["spec"]["template"]["metadata"]["annotations"]
    assert annotations == {"traktor.gdxcloud.net/restartedAt": "2026-01-01T00:00:00Z"}


def test_patch_restart_translates_api_errors() -> None:
    mock_apps_api = MagicMock()
    mock_apps_api.patch_namespaced_deployment.side_effect = ApiException(
        status=409, reason="Conflict"
    )
    store = _make_store(apps_api=mock_apps_api)

    with pytest.raises(StoreWriteError) as exc_info:
        store.patch_restart(
            WorkloadRef(kind="Deployment", namespace="ns-a", name="web"), "k", "ts"
        )

    assert exc_info.value.status == 409
    assert "Deployment ns-a/web" in str(exc_info.value)


@pytest.mark.parametrize(
    "error",
    [
        MaxRetryError(None, "/apis/apps/v1/namespaces/ns-a/deployments/web"),
        ConnectionRefusedError("connection refused"),
    ],
)
def test_patch_restart_translates_transport_errors(error: Exception) -> None:
    mock_apps_api = MagicMock()
    mock_apps_api.patch_namespaced_deployment.side_effect = error
    store = _make_store(apps_api=mock_apps_api)

    with pytest.raises(StoreWriteError) as exc_info:
        store.patch_restart(
            WorkloadRef(kind="Deployment", namespace="ns-a", name="web"), "k", "ts"
        )

    assert exc_info.value.status is None
    assert exc_info.value.__cause__ is error


def test_store_reads_translate_transport_errors() -> None:
    timeout = ReadTimeoutError(None, "/api/v1/namespaces", "Read timed out.")
    core_api = MagicMock()
    core_api.list_namespace.side_effect = timeout
    custom_api = MagicMock()
    custom_api.list_cluster_custom_object.side_effect = ProtocolError("Connection aborted.")
    custom_api.get_namespaced_custom_object.side_effect = ConnectionResetError("reset")
    store = _make_store(core_api=core_api, custom_api=custom_api)

    with pytest.raises(StoreReadError, match="list namespaces.*Read timed out"):
        store.list_namespaces()
    with pytest.raises(StoreReadError, match="list secretsrefreshes"):
        store.list_policies()
    with pytest.raises(StoreReadError, match="get secretsrefreshes ops/refresh"):
        store.get_policy(ObjectKey("ops", "refresh"))
