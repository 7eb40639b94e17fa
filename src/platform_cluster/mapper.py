"""REST mapping: resolves kinds to the resource paths the API server serves them on."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Protocol

import structlog
from kubernetes import client as k8s_client
from kubernetes.client import Configuration
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError, ResourceNotUniqueError

from platform_cluster.errors import NoKindMatchError
from platform_cluster.scheme import GroupVersionKind

log = structlog.get_logger()


@dataclass(frozen=True)
class RESTMapping:
    """Where a kind lives on the API server."""

    gvk: GroupVersionKind
    resource: str
    namespaced: bool

    def path(self, namespace: str | None = None, name: str | None = None) -> str:
        """Build the request path for a collection or a single object.

        ``namespace`` is ignored for cluster-scoped kinds. Omitting it for a namespaced
        kind addresses the collection across all namespaces.
        """
        gvk = self.gvk
        base = f"/apis/{gvk.group}/{gvk.version}" if gvk.group else f"/api/{gvk.version}"
        if self.namespaced and namespace:
            base = f"{base}/namespaces/{namespace}"
        base = f"{base}/{self.resource}"
        return f"{base}/{name}" if name else base


class RESTMapper(Protocol):
    def rest_mapping(self, gvk: GroupVersionKind) -> RESTMapping: ...

    def kind_for(self, api_version: str, resource: str) -> GroupVersionKind: ...


class DynamicRESTMapper:
    """REST mapper backed by the dynamic client's discovery cache.

    Mappings are memoized. A miss triggers one rediscovery before failing, so kinds
    installed after startup (new CRDs) are picked up on first use.
    """

    def __init__(self, dynamic_client: DynamicClient) -> None:
        self._client = dynamic_client
        self._lock = threading.Lock()
        self._mappings: dict[GroupVersionKind, RESTMapping] = {}

    def rest_mapping(self, gvk: GroupVersionKind) -> RESTMapping:
        with self._lock:
            cached = self._mappings.get(gvk)
        if cached is not None:
            return cached

        resource = self._lookup(gvk)
        mapping = RESTMapping(gvk=gvk, resource=resource.name, namespaced=bool(resource.namespaced))
        with self._lock:
            self._mappings[gvk] = mapping
        return mapping

    def kind_for(self, api_version: str, resource: str) -> GroupVersionKind:
        try:
            found = self._client.resources.get(api_version=api_version, name=resource)
        except ResourceNotFoundError:
            self._client.resources.invalidate_cache()
            try:
                found = self._client.resources.get(api_version=api_version, name=resource)
            except ResourceNotFoundError:
                raise NoKindMatchError(GroupVersionKind.from_api_version(api_version, resource)) from None
        return GroupVersionKind.from_api_version(api_version, found.kind)

    def _lookup(self, gvk: GroupVersionKind):
        for attempt in range(2):
            try:
                return self._client.resources.get(api_version=gvk.api_version, kind=gvk.kind)
            except ResourceNotUniqueError:
                # Subresources share the parent's kind; the top-level one has no slash.
                candidates = self._client.resources.search(api_version=gvk.api_version, kind=gvk.kind)
                for candidate in candidates:
                    if "/" not in candidate.name:
                        return candidate
                raise NoKindMatchError(gvk) from None
            except ResourceNotFoundError:
                if attempt == 0:
                    log.info("rediscovering_api_resources", kind=gvk.kind, api_version=gvk.api_version)
                    self._client.resources.invalidate_cache()
        raise NoKindMatchError(gvk)


def new_dynamic_rest_mapper(config: Configuration, api_client: k8s_client.ApiClient) -> RESTMapper:
    """Default mapper provider: discovery through the dynamic client.

    Constructing the DynamicClient contacts the API server, so this can fail with the
    usual transport errors.
    """
    return DynamicRESTMapper(DynamicClient(api_client))
