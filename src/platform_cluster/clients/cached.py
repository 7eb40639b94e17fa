"""Split client: reads from a cache, writes straight to the API server."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, TypeVar

from platform_cluster.clients.interfaces import MERGE_PATCH, Client, ObjectKey, Reader

T = TypeVar("T")


class CachedClient:
    """Serves get/list from ``cache_reader`` and every mutation from ``direct``.

    Types listed in ``uncached_types`` skip the cache and are read from ``direct``
    as well, for kinds that are too large or too sensitive to keep in memory.
    """

    def __init__(self, cache_reader: Reader, direct: Client, uncached_types: Iterable[type] = ()) -> None:
        self._cache_reader = cache_reader
        self._direct = direct
        self._uncached_types = frozenset(uncached_types)

    @property
    def uncached_types(self) -> frozenset[type]:
        return self._uncached_types

    def _reader_for(self, obj_type: type) -> Reader:
        if obj_type in self._uncached_types:
            return self._direct
        return self._cache_reader

    async def get(self, key: ObjectKey, obj_type: type[T]) -> T:
        return await self._reader_for(obj_type).get(key, obj_type)

    async def list(
        self,
        obj_type: type[T],
        namespace: str | None = None,
        label_selector: str | None = None,
        field_selector: str | None = None,
    ) -> list[T]:
        return await self._reader_for(obj_type).list(
            obj_type,
            namespace=namespace,
            label_selector=label_selector,
            field_selector=field_selector,
        )

    async def create(self, obj: Any, *, dry_run: bool = False, field_manager: str | None = None) -> Any:
        return await self._direct.create(obj, dry_run=dry_run, field_manager=field_manager)

    async def update(self, obj: Any, *, dry_run: bool = False, field_manager: str | None = None) -> Any:
        return await self._direct.update(obj, dry_run=dry_run, field_manager=field_manager)

    async def patch(
        self,
        obj: Any,
        patch: Any,
        *,
        patch_type: str = MERGE_PATCH,
        dry_run: bool = False,
        field_manager: str | None = None,
    ) -> Any:
        return await self._direct.patch(
            obj, patch, patch_type=patch_type, dry_run=dry_run, field_manager=field_manager
        )

    async def delete(
        self,
        obj: Any,
        *,
        dry_run: bool = False,
        grace_period_seconds: int | None = None,
        propagation_policy: str | None = None,
    ) -> None:
        await self._direct.delete(
            obj,
            dry_run=dry_run,
            grace_period_seconds=grace_period_seconds,
            propagation_policy=propagation_policy,
        )

    async def delete_all_of(
        self,
        obj_type: type,
        *,
        namespace: str | None = None,
        label_selector: str | None = None,
        dry_run: bool = False,
    ) -> None:
        await self._direct.delete_all_of(
            obj_type, namespace=namespace, label_selector=label_selector, dry_run=dry_run
        )
