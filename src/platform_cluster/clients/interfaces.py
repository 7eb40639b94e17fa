"""Client protocols shared by the cache, the direct client and their decorators."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, NamedTuple, Protocol, TypeVar

T = TypeVar("T")

MERGE_PATCH = "application/merge-patch+json"
STRATEGIC_MERGE_PATCH = "application/strategic-merge-patch+json"
JSON_PATCH = "application/json-patch+json"

# Value the API server expects in the dryRun query parameter.
DRY_RUN_ALL = "All"


class ObjectKey(NamedTuple):
    """Namespace and name of an object. ``namespace`` is None for cluster-scoped kinds."""

    namespace: str | None
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


class Reader(Protocol):
    async def get(self, key: ObjectKey, obj_type: type[T]) -> T: ...

    async def list(
        self,
        obj_type: type[T],
        namespace: str | None = None,
        label_selector: str | None = None,
        field_selector: str | None = None,
    ) -> list[T]: ...


class Writer(Protocol):
    async def create(self, obj: Any, *, dry_run: bool = False, field_manager: str | None = None) -> Any: ...

    async def update(self, obj: Any, *, dry_run: bool = False, field_manager: str | None = None) -> Any: ...

    async def patch(
        self,
        obj: Any,
        patch: Any,
        *,
        patch_type: str = MERGE_PATCH,
        dry_run: bool = False,
        field_manager: str | None = None,
    ) -> Any: ...

    async def delete(
        self,
        obj: Any,
        *,
        dry_run: bool = False,
        grace_period_seconds: int | None = None,
        propagation_policy: str | None = None,
    ) -> None: ...

    async def delete_all_of(
        self,
        obj_type: type,
        *,
        namespace: str | None = None,
        label_selector: str | None = None,
        dry_run: bool = False,
    ) -> None: ...


class Client(Reader, Writer, Protocol):
    """Reads and writes typed objects."""


class FieldIndexer(Protocol):
    def index_field(self, obj_type: type, field: str, extract_value: Callable[[Any], list[str]]) -> None: ...
