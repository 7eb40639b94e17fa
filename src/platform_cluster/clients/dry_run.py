"""Dry-run decorator for a client."""

from __future__ import annotations

from typing import Any, TypeVar

from platform_cluster.clients.interfaces import MERGE_PATCH, Client, ObjectKey

T = TypeVar("T")


class DryRunClient:
    """Wraps a client so every mutation is sent with ``dryRun=All``.

    Reads pass through untouched. The API server validates dry-run writes and runs
    admission but persists nothing; this wrapper only guarantees the marker is set,
    whatever the caller passes.
    """

    def __init__(self, client: Client) -> None:
        self._client = client

    async def get(self, key: ObjectKey, obj_type: type[T]) -> T:
        return await self._client.get(key, obj_type)

    async def list(
        self,
        obj_type: type[T],
        namespace: str | None = None,
        label_selector: str | None = None,
        field_selector: str | None = None,
    ) -> list[T]:
        return await self._client.list(
            obj_type, namespace=namespace, label_selector=label_selector, field_selector=field_selector
        )

    async def create(self, obj: Any, *, dry_run: bool = False, field_manager: str | None = None) -> Any:
        return await self._client.create(obj, dry_run=True, field_manager=field_manager)

    async def update(self, obj: Any, *, dry_run: bool = False, field_manager: str | None = None) -> Any:
        return await self._client.update(obj, dry_run=True, field_manager=field_manager)

    async def patch(
        self,
        obj: Any,
        patch: Any,
        *,
        patch_type: str = MERGE_PATCH,
        dry_run: bool = False,
        field_manager: str | None = None,
    ) -> Any:
        return await self._client.patch(obj, patch, patch_type=patch_type, dry_run=True, field_manager=field_manager)

    async def delete(
        self,
        obj: Any,
        *,
        dry_run: bool = False,
        grace_period_seconds: int | None = None,
        propagation_policy: str | None = None,
    ) -> None:
        await self._client.delete(
            obj,
            dry_run=True,
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
        await self._client.delete_all_of(obj_type, namespace=namespace, label_selector=label_selector, dry_run=True)
