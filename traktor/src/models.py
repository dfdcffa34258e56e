from __future__ import annotations

import base64
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from traktor.src.errors import PolicyError


class MatchMode(str, Enum):
    """How a policy turns a Secret change into workload restarts.

    ``fine`` restarts only workloads that reference the changed Secret by
    name; ``coarse`` restarts every workload in the Secret's namespace.
    """

    COARSE = "coarse"
    FINE = "fine"


@dataclass(frozen=True, order=True)
class ObjectKey:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


def _string_labels(raw: Any) -> dict[str, str]:
    if not isinstance(raw, Mapping):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in raw.items() if isinstance(k, str)}


@dataclass(frozen=True)
class SecretSnapshot:
    """Observed state of a Secret at one point in time, with ``data`` base64-decoded."""

    key: ObjectKey
    data: Mapping[str, bytes] = field(default_factory=dict)
    labels: Mapping[str, str] = field(default_factory=dict)
    resource_version: str | None = None

    @property
    def name(self) -> str:
        return self.key.name

    @property
    def namespace(self) -> str:
        return self.key.namespace

    @classmethod
    def from_k8s(cls, secret: Any) -> SecretSnapshot:
        """Build a snapshot from a ``V1Secret``.

        Raises ``ValueError`` when the object has no name or namespace, or
        when a ``data`` value is not valid base64.
        """
        metadata = getattr(secret, "metadata", None)
        name = getattr(metadata, "name", None)
        namespace = getattr(metadata, "namespace", None)
        if not name or not namespace:
            raise ValueError("Secret is missing metadata.name or metadata.namespace")

        raw_data = getattr(secret, "data", None) or {}
        if not isinstance(raw_data, Mapping):
            raise ValueError(f"Secret {namespace}/{name} has non-mapping data")

        data: dict[str, bytes] = {}
        for data_key, encoded in raw_data.items():
            if encoded is None:
                data[str(data_key)] = b""
                continue
            data[str(data_key)] = base64.b64decode(encoded, validate=True)

        return cls(
            key=ObjectKey(namespace=namespace, name=name),
            data=data,
            labels=_string_labels(getattr(metadata, "labels", None)),
            resource_version=getattr(metadata, "resource_version", None),
        )


@dataclass(frozen=True)
class SecretEvent:
    """A typed Secret watch notification carrying the previous and current snapshot."""

    type: str
    old: SecretSnapshot | None
    new: SecretSnapshot | None


@dataclass(frozen=True)
class NamespaceInfo:
    name: str
    labels: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_k8s(cls, namespace: Any) -> NamespaceInfo:
        metadata = getattr(namespace, "metadata", None)
        return cls(
            name=getattr(metadata, "name", None) or "",
            labels=_string_labels(getattr(metadata, "labels", None)),
        )


@dataclass(frozen=True, order=True)
class WorkloadRef:
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind} {self.namespace}/{self.name}"


def _containers(pod_spec: Any) -> Iterable[Any]:
    for attribute in ("init_containers", "containers", "ephemeral_containers"):
        yield from getattr(pod_spec, attribute, None) or []


def pod_spec_secret_names(pod_spec: Any) -> frozenset[str]:
    """Return every Secret name a pod spec depends on.

    Four reference classes are considered: secret volumes (plain and
    projected), ``env[].valueFrom.secretKeyRef``, ``envFrom[].secretRef``
    across init, regular and ephemeral containers, and ``imagePullSecrets``.
    """
    names: set[str] = set()
    if pod_spec is None:
        return frozenset()

    for volume in getattr(pod_spec, "volumes", None) or []:
        secret_source = getattr(volume, "secret", None)
        if secret_source is not None and getattr(secret_source, "secret_name", None):
            names.add(secret_source.secret_name)
        projected = getattr(volume, "projected", None)
        for source in getattr(projected, "sources", None) or []:
            projection = getattr(source, "secret", None)
            if projection is not None and getattr(projection, "name", None):
                names.add(projection.name)

    for container in _containers(pod_spec):
        for env_from in getattr(container, "env_from", None) or []:
            secret_ref = getattr(env_from, "secret_ref", None)
            if secret_ref is not None and getattr(secret_ref, "name", None):
                names.add(secret_ref.name)
        for env in getattr(container, "env", None) or []:
            value_from = getattr(env, "value_from", None)
            key_ref = getattr(value_from, "secret_key_ref", None)
            if key_ref is not None and getattr(key_ref, "name", None):
                names.add(key_ref.name)

    for pull_secret in getattr(pod_spec, "image_pull_secrets", None) or []:
        if getattr(pull_secret, "name", None):
            names.add(pull_secret.name)

    return frozenset(names)


@dataclass(frozen=True)
class Workload:
    """A pod-template owning object together with the Secret names it references."""

    ref: WorkloadRef
    secret_names: frozenset[str] = frozenset()

    def uses_secret(self, secret_name: str) -> bool:
        return secret_name in self.secret_names

    @classmethod
    def from_k8s(cls, kind: str, obj: Any) -> Workload:
        metadata = getattr(obj, "metadata", None)
        template = getattr(getattr(obj, "spec", None), "template", None)
        return cls(
            ref=WorkloadRef(
                kind=kind,
                namespace=getattr(metadata, "namespace", None) or "",
                name=getattr(metadata, "name", None) or "",
            ),
            secret_names=pod_spec_secret_names(getattr(template, "spec", None)),
        )


@dataclass(frozen=True)
class RefreshPolicy:
    """A ``SecretsRefresh`` object: which namespaces and Secrets trigger restarts.

    Selectors are kept in their raw ``metav1.LabelSelector`` form and parsed
    at evaluation time so a malformed selector only fails the policy that
    carries it.
    """

    key: ObjectKey
    namespace_selector: Mapping[str, Any] | None = None
    secret_selector: Mapping[str, Any] | None = None
    match_mode: str = MatchMode.FINE.value

    def mode(self) -> MatchMode:
        try:
            return MatchMode(self.match_mode)
        except ValueError as exc:
            raise PolicyError(
                f"SecretsRefresh {self.key} has unsupported matchMode {self.match_mode!r}"
            ) from exc

    @classmethod
    def from_k8s(cls, obj: Mapping[str, Any]) -> RefreshPolicy:
        """Build a policy from a custom object dict as returned by ``CustomObjectsApi``."""
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        return cls(
            key=ObjectKey(
                namespace=metadata.get("namespace") or "",
                name=metadata.get("name") or "",
            ),
            namespace_selector=spec.get("namespaceSelector"),
            secret_selector=spec.get("secretSelector"),
            match_mode=spec.get("matchMode") or MatchMode.FINE.value,
        )


@dataclass(frozen=True)
class ReconcileRequest:
    """A unit of work for the reconciler.

    ``secret`` always identifies the changed Secret.  ``policy`` is set only
    for coarse requests, which restart every workload in the Secret's
    namespace on behalf of that policy.  Fine requests omit it so that any
    number of interested fine-mode policies collapse into one request.
    """

    secret: ObjectKey
    policy: ObjectKey | None = None

    @property
    def mode(self) -> MatchMode:
        return MatchMode.FINE if self.policy is None else MatchMode.COARSE

    def sort_key(self) -> tuple[str, str, str, str]:
        policy = self.policy or ObjectKey(namespace="", name="")
        return (self.secret.namespace, self.secret.name, policy.namespace, policy.name)

    def __str__(self) -> str:
        if self.policy is None:
            return f"secret {self.secret}"
        return f"secret {self.secret} via policy {self.policy}"
