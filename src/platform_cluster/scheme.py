"""Type registry mapping Python object types to Kubernetes GroupVersionKinds."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any

from kubernetes import client as k8s_client

from platform_cluster.errors import NotRegisteredError


@dataclass(frozen=True)
class GroupVersionKind:
    """Identity of a kind served by the API server."""

    group: str
    version: str
    kind: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> GroupVersionKind:
        group, _, version = api_version.rpartition("/")
        return cls(group=group, version=version, kind=kind)

    def __str__(self) -> str:
        return f"{self.api_version}, Kind={self.kind}"


# Built-in kinds and the kubernetes.client.models class that represents each one.
_BUILTIN_KINDS: tuple[tuple[str, str, str, str], ...] = (
    ("", "v1", "ConfigMap", "V1ConfigMap"),
    ("", "v1", "Endpoints", "V1Endpoints"),
    ("", "v1", "Event", "CoreV1Event"),
    ("", "v1", "LimitRange", "V1LimitRange"),
    ("", "v1", "Namespace", "V1Namespace"),
    ("", "v1", "Node", "V1Node"),
    ("", "v1", "PersistentVolume", "V1PersistentVolume"),
    ("", "v1", "PersistentVolumeClaim", "V1PersistentVolumeClaim"),
    ("", "v1", "Pod", "V1Pod"),
    ("", "v1", "ReplicationController", "V1ReplicationController"),
    ("", "v1", "ResourceQuota", "V1ResourceQuota"),
    ("", "v1", "Secret", "V1Secret"),
    ("", "v1", "Service", "V1Service"),
    ("", "v1", "ServiceAccount", "V1ServiceAccount"),
    ("apps", "v1", "ControllerRevision", "V1ControllerRevision"),
    ("apps", "v1", "DaemonSet", "V1DaemonSet"),
    ("apps", "v1", "Deployment", "V1Deployment"),
    ("apps", "v1", "ReplicaSet", "V1ReplicaSet"),
    ("apps", "v1", "StatefulSet", "V1StatefulSet"),
    ("autoscaling", "v2", "HorizontalPodAutoscaler", "V2HorizontalPodAutoscaler"),
    ("batch", "v1", "CronJob", "V1CronJob"),
    ("batch", "v1", "Job", "V1Job"),
    ("coordination.k8s.io", "v1", "Lease", "V1Lease"),
    ("events.k8s.io", "v1", "Event", "EventsV1Event"),
    ("networking.k8s.io", "v1", "Ingress", "V1Ingress"),
    ("networking.k8s.io", "v1", "NetworkPolicy", "V1NetworkPolicy"),
    ("policy", "v1", "PodDisruptionBudget", "V1PodDisruptionBudget"),
    ("rbac.authorization.k8s.io", "v1", "ClusterRole", "V1ClusterRole"),
    ("rbac.authorization.k8s.io", "v1", "ClusterRoleBinding", "V1ClusterRoleBinding"),
    ("rbac.authorization.k8s.io", "v1", "Role", "V1Role"),
    ("rbac.authorization.k8s.io", "v1", "RoleBinding", "V1RoleBinding"),
)


class Scheme:
    """Registry of object types and the kinds they represent.

    Two families of types are understood:

    - generated ``kubernetes.client.models`` classes (anything with ``openapi_types``),
      converted with the SDK's own serializer;
    - pydantic models, converted with ``model_validate`` / ``model_dump``. Use these
      for custom resources the SDK does not ship.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._kinds: dict[type, GroupVersionKind] = {}
        self._types: dict[GroupVersionKind, type] = {}
        self._serializer: k8s_client.ApiClient | None = None

    def add_known_type(self, gvk: GroupVersionKind, obj_type: type) -> None:
        """Register ``obj_type`` as the representation of ``gvk``.

        Raises:
            ValueError: If ``obj_type`` is already registered under a different kind.
        """
        with self._lock:
            existing = self._kinds.get(obj_type)
            if existing is not None and existing != gvk:
                msg = f"{obj_type.__name__} is already registered as {existing}"
                raise ValueError(msg)
            self._kinds[obj_type] = gvk
            self._types[gvk] = obj_type

    def object_kind(self, obj_or_type: Any) -> GroupVersionKind:
        """Return the kind registered for an object or object type.

        Raises:
            NotRegisteredError: If the type was never registered.
        """
        obj_type = obj_or_type if isinstance(obj_or_type, type) else type(obj_or_type)
        with self._lock:
            gvk = self._kinds.get(obj_type)
        if gvk is None:
            raise NotRegisteredError(obj_type)
        return gvk

    def is_registered(self, obj_type: type) -> bool:
        with self._lock:
            return obj_type in self._kinds

    def recognizes(self, gvk: GroupVersionKind) -> bool:
        with self._lock:
            return gvk in self._types

    def type_for(self, gvk: GroupVersionKind) -> type:
        with self._lock:
            obj_type = self._types.get(gvk)
        if obj_type is None:
            msg = f"no type is registered for {gvk}"
            raise KeyError(msg)
        return obj_type

    def type_for_kind(self, kind: str, api_version: str | None = None) -> type:
        """Look up a registered type by kind name, optionally qualified by apiVersion.

        Raises:
            KeyError: If no type matches, or several do and ``api_version`` was omitted.
        """
        if api_version:
            return self.type_for(GroupVersionKind.from_api_version(api_version, kind))
        with self._lock:
            matches = [gvk for gvk in self._types if gvk.kind == kind]
        if not matches:
            msg = f"no type is registered for kind {kind!r}"
            raise KeyError(msg)
        if len(matches) > 1:
            versions = ", ".join(sorted(m.api_version for m in matches))
            msg = f"kind {kind!r} is ambiguous, specify one of: {versions}"
            raise KeyError(msg)
        return self.type_for(matches[0])

    def known_kinds(self) -> list[GroupVersionKind]:
        with self._lock:
            return sorted(self._types, key=lambda g: (g.group, g.version, g.kind))

    def copy(self) -> Scheme:
        clone = Scheme()
        with self._lock:
            clone._kinds = dict(self._kinds)
            clone._types = dict(self._types)
        return clone

    # --- Conversion ---

    def to_dict(self, obj: Any) -> dict[str, Any]:
        """Serialize an object to its wire form, with apiVersion and kind filled in."""
        gvk = self.object_kind(obj)
        if hasattr(obj, "model_dump"):
            data = obj.model_dump(by_alias=True, exclude_none=True, mode="json")
        else:
            data = self._get_serializer().sanitize_for_serialization(obj)
        data["apiVersion"] = gvk.api_version
        data["kind"] = gvk.kind
        return data

    def from_dict(self, data: dict[str, Any], obj_type: type) -> Any:
        """Deserialize a wire-form dict into ``obj_type``."""
        if hasattr(obj_type, "model_validate"):
            return obj_type.model_validate(data)
        if not hasattr(obj_type, "openapi_types"):
            raise NotRegisteredError(obj_type)
        # ApiClient.deserialize only accepts response-like objects carrying a JSON body.
        response = SimpleNamespace(data=json.dumps(data))
        return self._get_serializer().deserialize(response, obj_type.__name__)

    def _get_serializer(self) -> k8s_client.ApiClient:
        with self._lock:
            if self._serializer is None:
                self._serializer = k8s_client.ApiClient()
            return self._serializer


def new_default_scheme() -> Scheme:
    """Build a fresh scheme holding the built-in Kubernetes kinds.

    Each call returns an independent registry, so registering custom types on one
    cluster's scheme never leaks into another's.
    """
    scheme = Scheme()
    for group, version, kind, class_name in _BUILTIN_KINDS:
        model = getattr(k8s_client, class_name, None)
        if model is None:
            continue
        scheme.add_known_type(GroupVersionKind(group, version, kind), model)
    return scheme


def object_meta(obj: Any) -> tuple[str | None, str, dict[str, str]]:
    """Return ``(namespace, name, labels)`` for a typed or pydantic object."""
    meta = getattr(obj, "metadata", None)
    if meta is None:
        msg = f"{type(obj).__name__} has no metadata"
        raise ValueError(msg)
    if isinstance(meta, dict):
        return meta.get("namespace"), meta.get("name", ""), dict(meta.get("labels") or {})
    return getattr(meta, "namespace", None), getattr(meta, "name", None) or "", dict(getattr(meta, "labels", None) or {})
