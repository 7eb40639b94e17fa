"""Direct client: every call is a request to the API server, nothing is cached."""

from __future__ import annotations

import asyncio
from typing import Any, TypeVar

import structlog
from kubernetes import client as k8s_client
from kubernetes.client.rest import ApiException

from platform_cluster.clients.interfaces import DRY_RUN_ALL, MERGE_PATCH, ObjectKey
from platform_cluster.errors import NotFoundError
from platform_cluster.mapper import RESTMapper, RESTMapping
from platform_cluster.scheme import Scheme, object_meta

log = structlog.get_logger()

T = TypeVar("T")

_JSON = "application/json"


class DirectClient:
    """Reads and writes typed objects straight against the API server.

    Objects are converted with the scheme and addressed through the REST mapper, so
    any type registered in the scheme can be used, built-in or custom.
    """

    def __init__(self, api_client: k8s_client.ApiClient, scheme: Scheme, mapper: RESTMapper) -> None:
        self._api_client = api_client
        self._scheme = scheme
        self._mapper = mapper

    @property
    def scheme(self) -> Scheme:
        return self._scheme

    @property
    def mapper(self) -> RESTMapper:
        return self._mapper

    def _mapping_for(self, obj_or_type: Any) -> RESTMapping:
        return self._mapper.rest_mapping(self._scheme.object_kind(obj_or_type))

    # --- Reads ---

    async def get(self, key: ObjectKey, obj_type: type[T]) -> T:
        mapping = self._mapping_for(obj_type)
        data = await self._request("GET", mapping.path(key.namespace, key.name), mapping=mapping, key=key)
        return self._scheme.from_dict(data, obj_type)

    async def list(
        self,
        obj_type: type[T],
        namespace: str | None = None,
        label_selector: str | None = None,
        field_selector: str | None = None,
    ) -> list[T]:
        mapping = self._mapping_for(obj_type)
        query: list[tuple[str, Any]] = []
        if label_selector:
            query.append(("labelSelector", label_selector))
        if field_selector:
            query.append(("fieldSelector", field_selector))
        data = await self._request("GET", mapping.path(namespace), query=query, mapping=mapping)
        return [self._scheme.from_dict(item, obj_type) for item in data.get("items") or []]

    # --- Writes ---

    async def create(self, obj: Any, *, dry_run: bool = False, field_manager: str | None = None) -> Any:
        mapping = self._mapping_for(obj)
        namespace, _, _ = object_meta(obj)
        data = await self._request(
            "POST",
            mapping.path(namespace),
            query=_write_query(dry_run, field_manager),
            body=self._scheme.to_dict(obj),
            mapping=mapping,
        )
        return self._scheme.from_dict(data, type(obj))

    async def update(self, obj: Any, *, dry_run: bool = False, field_manager: str | None = None) -> Any:
        mapping = self._mapping_for(obj)
        namespace, name, _ = object_meta(obj)
        data = await self._request(
            "PUT",
            mapping.path(namespace, name),
            query=_write_query(dry_run, field_manager),
            body=self._scheme.to_dict(obj),
            mapping=mapping,
            key=ObjectKey(namespace, name),
        )
        return self._scheme.from_dict(data, type(obj))

    async def patch(
        self,
        obj: Any,
        patch: Any,
        *,
        patch_type: str = MERGE_PATCH,
        dry_run: bool = False,
        field_manager: str | None = None,
    ) -> Any:
        mapping = self._mapping_for(obj)
        namespace, name, _ = object_meta(obj)
        data = await self._request(
            "PATCH",
            mapping.path(namespace, name),
            query=_write_query(dry_run, field_manager),
            body=patch,
            content_type=patch_type,
            mapping=mapping,
            key=ObjectKey(namespace, name),
        )
        return self._scheme.from_dict(data, type(obj))

    async def delete(
        self,
        obj: Any,
        *,
        dry_run: bool = False,
        grace_period_seconds: int | None = None,
        propagation_policy: str | None = None,
    ) -> None:
        mapping = self._mapping_for(obj)
        namespace, name, _ = object_meta(obj)
        await self._request(
            "DELETE",
            mapping.path(namespace, name),
            query=_write_query(dry_run, None),
            body=_delete_options(grace_period_seconds, propagation_policy),
            mapping=mapping,
            key=ObjectKey(namespace, name),
        )

    async def delete_all_of(
        self,
        obj_type: type,
        *,
        namespace: str | None = None,
        label_selector: str | None = None,
        dry_run: bool = False,
    ) -> None:
        mapping = self._mapping_for(obj_type)
        query = _write_query(dry_run, None)
        if label_selector:
            query.append(("labelSelector", label_selector))
        await self._request("DELETE", mapping.path(namespace), query=query, mapping=mapping)

    # --- Transport ---

    async def _request(
        self,
        method: str,
        path: str,
        *,
        mapping: RESTMapping,
        query: list[tuple[str, Any]] | None = None,
        body: Any = None,
        content_type: str = _JSON,
        key: ObjectKey | None = None,
    ) -> dict[str, Any]:
        try:
            data = await asyncio.to_thread(
                self._api_client.call_api,
                path,
                method,
                query_params=query or [],
                header_params={"Accept": _JSON, "Content-Type": content_type},
                body=body,
                response_type="object",
                auth_settings=["BearerToken"],
                _return_http_data_only=True,
            )
        except ApiException as exc:
            if exc.status == 404 and key is not None:
                raise NotFoundError(mapping.gvk.kind, key.namespace, key.name) from exc
            log.error(
                "api_request_failed",
                method=method,
                path=path,
                status=exc.status,
                reason=exc.reason,
            )
            raise
        return data or {}


def _write_query(dry_run: bool, field_manager: str | None) -> list[tuple[str, Any]]:
    query: list[tuple[str, Any]] = []
    if dry_run:
        query.append(("dryRun", DRY_RUN_ALL))
    if field_manager:
        query.append(("fieldManager", field_manager))
    return query


def _delete_options(grace_period_seconds: int | None, propagation_policy: str | None) -> dict[str, Any] | None:
    options: dict[str, Any] = {}
    if grace_period_seconds is not None:
        options["gracePeriodSeconds"] = grace_period_seconds
    if propagation_policy:
        options["propagationPolicy"] = propagation_policy
    return options or None
