from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from traktor.src.errors import StoreReadError, StoreWriteError
from traktor.src.models import NamespaceInfo, ObjectKey, RefreshPolicy, Workload, WorkloadRef

LOGGER = logging.getLogger(__name__)

# kind -> (AppsV1Api list method, AppsV1Api patch method)
WORKLOAD_API_METHODS: dict[str, tuple[str, str]] = {
    "Deployment": ("list_namespaced_deployment", "patch_namespaced_deployment"),
    "StatefulSet": ("list_namespaced_stateful_set", "patch_namespaced_stateful_set"),
    "DaemonSet": ("list_namespaced_daemon_set", "patch_namespaced_daemon_set"),
}

# Failures below the API layer, such as exhausted connection retries or read timeouts.
TRANSPORT_ERRORS: tuple[type[Exception], ...] = (HTTPError, OSError)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api, CustomObjectsApi]:
    """Return CoreV1, AppsV1 and CustomObjects API clients for the active configuration."""
    return client.CoreV1Api(), client.AppsV1Api(), client.CustomObjectsApi()


def restart_patch_body(annotation_key: str, timestamp: str) -> dict[str, Any]:
    """Build the strategic-merge patch that rolls a workload's pods.

    Only the pod template annotation is expressed, which is the same
    mechanism ``kubectl rollout restart`` uses.  Replicas, images and every
    other field are left untouched, and no read-modify-write is involved.
    """
    return {
        "spec": {
            "template": {
                "metadata": {
                    "annotations": {annotation_key: timestamp}
                }
            }
        }
    }


class ClusterStore:
    """Object store facade over the Kubernetes API.

    Every call is a fresh read against the API server; nothing is cached.
    ``ApiException`` and transport failures are translated into
    :class:`StoreReadError` for reads and :class:`StoreWriteError` for patches.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        custom_api: CustomObjectsApi,
        *,
        policy_group: str,
        policy_version: str,
        policy_plural: str,
        workload_kinds: Sequence[str] = ("Deployment",),
    ) -> None:
        unknown = [kind for kind in workload_kinds if kind not in WORKLOAD_API_METHODS]
        if unknown:
            raise ValueError(f"Unsupported workload kinds: {', '.join(unknown)}")

        self.core_api = core_api
        self.apps_api = apps_api
        self.custom_api = custom_api
        self.policy_group = policy_group
        self.policy_version = policy_version
        self.policy_plural = policy_plural
        self.workload_kinds = tuple(workload_kinds)

    def list_namespaces(self) -> list[NamespaceInfo]:
        try:
            response = self.core_api.list_namespace()
        except ApiException as exc:
            raise StoreReadError("list namespaces", exc.status, exc.reason) from exc
        except TRANSPORT_ERRORS as exc:
            raise StoreReadError("list namespaces", reason=str(exc)) from exc
        return [NamespaceInfo.from_k8s(item) for item in getattr(response, "items", None) or []]

    def list_policies(self) -> list[RefreshPolicy]:
        try:
            response = self.custom_api.list_cluster_custom_object(
                group=self.policy_group,
                version=self.policy_version,
                plural=self.policy_plural,
            )
        except ApiException as exc:
            raise StoreReadError(f"list {self.policy_plural}", exc.status, exc.reason) from exc
        except TRANSPORT_ERRORS as exc:
            raise StoreReadError(f"list {self.policy_plural}", reason=str(exc)) from exc
        items = response.get("items") if isinstance(response, dict) else None
        return [RefreshPolicy.from_k8s(item) for item in items or [] if isinstance(item, dict)]

    def get_policy(self, key: ObjectKey) -> RefreshPolicy | None:
        """Return the policy identified by *key*, or ``None`` when it no longer exists."""
        try:
            response = self.custom_api.get_namespaced_custom_object(
                group=self.policy_group,
                version=self.policy_version,
                namespace=key.namespace,
                plural=self.policy_plural,
                name=key.name,
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise StoreReadError(f"get {self.policy_plural} {key}", exc.status, exc.reason) from exc
        except TRANSPORT_ERRORS as exc:
            raise StoreReadError(f"get {self.policy_plural} {key}", reason=str(exc)) from exc
        return RefreshPolicy.from_k8s(response)

    def list_workloads(self, namespace: str) -> list[Workload]:
        """List every configured workload kind in *namespace*, in a stable order."""
        workloads: list[Workload] = []
        for kind in self.workload_kinds:
            list_method = getattr(self.apps_api, WORKLOAD_API_METHODS[kind][0])
            try:
                response = list_method(namespace=namespace)
            except ApiException as exc:
                raise StoreReadError(
                    f"list {kind} objects in namespace {namespace}", exc.status, exc.reason
                ) from exc
            except TRANSPORT_ERRORS as exc:
                raise StoreReadError(
                    f"list {kind} objects in namespace {namespace}", reason=str(exc)
                ) from exc
            for item in getattr(response, "items", None) or []:
                workload = Workload.from_k8s(kind, item)
                if not workload.ref.namespace:
                    workload = Workload(
                        ref=WorkloadRef(kind=kind, namespace=namespace, name=workload.ref.name),
                        secret_names=workload.secret_names,
                    )
                workloads.append(workload)
        return sorted(workloads, key=lambda workload: workload.ref)

    def patch_restart(self, ref: WorkloadRef, annotation_key: str, timestamp: str) -> None:
        patch_method = getattr(self.apps_api, WORKLOAD_API_METHODS[ref.kind][1])
        try:
            patch_method(
                name=ref.name,
                namespace=ref.namespace,
                body=restart_patch_body(annotation_key, timestamp),
            )
        except ApiException as exc:
            raise StoreWriteError(str(ref), exc.status, exc.reason) from exc
        except TRANSPORT_ERRORS as exc:
            raise StoreWriteError(str(ref), reason=str(exc)) from exc
