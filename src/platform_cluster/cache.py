"""Watch-backed, read-through cache of typed objects."""

from __future__ import annotations

import asyncio
import copy
import math
import random
import threading
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Protocol, TypeVar

import structlog
from kubernetes import client as k8s_client
from kubernetes import watch as k8s_watch
from kubernetes.client import Configuration
from kubernetes.client.rest import ApiException

from platform_cluster.clients.interfaces import ObjectKey
from platform_cluster.errors import (
    CacheNotStartedError,
    CacheSyncTimeoutError,
    NotFoundError,
    WatchError,
)
from platform_cluster.mapper import RESTMapper, RESTMapping
from platform_cluster.scheme import GroupVersionKind, Scheme, object_meta

log = structlog.get_logger()

T = TypeVar("T")

DEFAULT_RESYNC = timedelta(hours=10)
DEFAULT_SYNC_TIMEOUT = timedelta(minutes=2)

# Server-side timeout for one watch request; the informer re-watches afterwards.
WATCH_TIMEOUT_SECONDS = 300

_HTTP_GONE = 410

# How long start() waits for informer threads to exit after stop.
INFORMER_STOP_TIMEOUT = 5.0


class Cache(Protocol):
    async def get(self, key: ObjectKey, obj_type: type[T]) -> T: ...

    async def list(
        self,
        obj_type: type[T],
        namespace: str | None = None,
        label_selector: str | None = None,
        field_selector: str | None = None,
    ) -> list[T]: ...

    def index_field(self, obj_type: type, field: str, extract_value: Callable[[Any], list[str]]) -> None: ...

    async def start(self, stop: asyncio.Event) -> None: ...


@dataclass(frozen=True)
class CacheOptions:
    api_client: k8s_client.ApiClient
    scheme: Scheme
    mapper: RESTMapper
    resync: timedelta | None = None
    namespace: str = ""
    sync_timeout: timedelta = DEFAULT_SYNC_TIMEOUT


def jittered(period: timedelta) -> timedelta:
    """Spread ``period`` by +/-10% so informers do not relist in lockstep."""
    return period * (random.random() / 5.0 + 0.9)


# --- Selectors ---


def parse_label_selector(selector: str) -> list[tuple[str, str, str | None]]:
    """Parse an equality-based label selector into ``(op, key, value)`` requirements.

    Supported forms: ``k=v``, ``k==v``, ``k!=v``, ``k`` (exists) and ``!k`` (absent).
    """
    requirements: list[tuple[str, str, str | None]] = []
    for raw in selector.split(","):
        term = raw.strip()
        if not term:
            continue
        if "!=" in term:
            key, _, value = term.partition("!=")
            requirements.append(("!=", key.strip(), value.strip()))
        elif "==" in term:
            key, _, value = term.partition("==")
            requirements.append(("=", key.strip(), value.strip()))
        elif "=" in term:
            key, _, value = term.partition("=")
            requirements.append(("=", key.strip(), value.strip()))
        elif term.startswith("!"):
            requirements.append(("!", term[1:].strip(), None))
        else:
            requirements.append(("exists", term, None))
    return requirements


def matches_labels(requirements: list[tuple[str, str, str | None]], labels: dict[str, str]) -> bool:
    for op, key, value in requirements:
        if op == "=" and labels.get(key) != value:
            return False
        if op == "!=" and labels.get(key) == value:
            return False
        if op == "exists" and key not in labels:
            return False
        if op == "!" and key in labels:
            return False
    return True


def _parse_field_selector(selector: str) -> tuple[str, str]:
    field, sep, value = selector.replace("==", "=", 1).partition("=")
    if not sep or "," in selector or "!=" in selector:
        msg = f"field selector {selector!r} must be a single exact match: field=value"
        raise ValueError(msg)
    return field.strip(), value.strip()


# --- Store ---


class _Store:
    """Thread-safe object store with secondary field indexes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[ObjectKey, Any] = {}
        self._indexers: dict[str, Callable[[Any], list[str]]] = {}
        # field -> (namespace or "", value) -> keys
        self._indices: dict[str, dict[tuple[str, str], set[ObjectKey]]] = defaultdict(lambda: defaultdict(set))

    def add_indexer(self, field: str, extract_value: Callable[[Any], list[str]]) -> None:
        with self._lock:
            if field in self._indexers:
                msg = f"an index for field {field!r} is already registered"
                raise ValueError(msg)
            self._indexers[field] = extract_value
            for key, obj in self._items.items():
                self._index(field, key, obj)

    def has_index(self, field: str) -> bool:
        with self._lock:
            return field in self._indexers

    def replace(self, objs: list[Any]) -> None:
        with self._lock:
            self._items.clear()
            self._indices.clear()
            for obj in objs:
                self._put(obj)

    def upsert(self, obj: Any) -> None:
        with self._lock:
            self._put(obj)

    def remove(self, obj: Any) -> None:
        with self._lock:
            self._drop(_key_of(obj))

    def get(self, key: ObjectKey) -> Any | None:
        with self._lock:
            obj = self._items.get(key)
        return copy.deepcopy(obj) if obj is not None else None

    def list(self, namespace: str | None = None) -> list[Any]:
        with self._lock:
            objs = [obj for key, obj in self._items.items() if not namespace or key.namespace == namespace]
        return copy.deepcopy(objs)

    def by_index(self, field: str, value: str, namespace: str | None = None) -> list[Any]:
        with self._lock:
            keys = self._indices.get(field, {}).get((namespace or "", value), set())
            objs = [self._items[key] for key in sorted(keys, key=str) if key in self._items]
        return copy.deepcopy(objs)

    def _put(self, obj: Any) -> None:
        key = _key_of(obj)
        self._drop(key)
        self._items[key] = obj
        for field in self._indexers:
            self._index(field, key, obj)

    def _drop(self, key: ObjectKey) -> None:
        if self._items.pop(key, None) is None:
            return
        for buckets in self._indices.values():
            for keys in buckets.values():
                keys.discard(key)

    def _index(self, field: str, key: ObjectKey, obj: Any) -> None:
        for value in self._indexers[field](obj) or []:
            self._indices[field][("", value)].add(key)
            if key.namespace:
                self._indices[field][(key.namespace, value)].add(key)


def _key_of(obj: Any) -> ObjectKey:
    namespace, name, _ = object_meta(obj)
    return ObjectKey(namespace or None, name)


def _status_of(exc: Exception) -> int | None:
    if isinstance(exc, ApiException):
        return exc.status
    if isinstance(exc, WatchError):
        return exc.code
    return None


# --- Informer ---


class _Informer:
    """List-then-watch loop for one kind, run on a worker thread."""

    def __init__(
        self,
        api_client: k8s_client.ApiClient,
        scheme: Scheme,
        mapping: RESTMapping,
        obj_type: type,
        namespace: str,
        resync: timedelta,
    ) -> None:
        self.mapping = mapping
        self.obj_type = obj_type
        self.store = _Store()
        self.synced = threading.Event()
        self.running = False
        self._api_client = api_client
        self._scheme = scheme
        self._namespace = namespace if mapping.namespaced else ""
        self._resync = resync
        self._watch = k8s_watch.Watch()
        # Streaming response of the watch in flight, closed by stop() to unblock the reader.
        self._response: Any = None

    def list_objects(self, **kwargs: Any) -> Any:
        """List the informer's resource; also invoked by Watch.stream with watch=True."""
        query: list[tuple[str, Any]] = []
        if kwargs.get("watch"):
            query.append(("watch", "true"))
            query.append(("allowWatchBookmarks", "true"))
        if kwargs.get("resource_version"):
            query.append(("resourceVersion", kwargs["resource_version"]))
        if kwargs.get("timeout_seconds"):
            query.append(("timeoutSeconds", kwargs["timeout_seconds"]))
        preload = kwargs.get("_preload_content", True)
        response = self._api_client.call_api(
            self.mapping.path(self._namespace or None),
            "GET",
            query_params=query,
            header_params={"Accept": "application/json"},
            response_type="object",
            auth_settings=["BearerToken"],
            _return_http_data_only=True,
            _preload_content=preload,
        )
        if not preload:
            self._response = response
        return response

    def run(self, stopped: threading.Event) -> None:
        resource_version = self._relist()
        next_resync = self._next_resync()
        while not stopped.is_set():
            timeout = int(min(WATCH_TIMEOUT_SECONDS, max(1.0, next_resync - time.monotonic())))
            try:
                resource_version = self._watch_once(resource_version, timeout, stopped)
            except Exception as exc:
                # Closing the response on stop surfaces as a read error.
                if stopped.is_set():
                    break
                if _status_of(exc) != _HTTP_GONE:
                    raise
                resource_version = None
            finally:
                self._response = None
            if stopped.is_set():
                break
            if resource_version is None or time.monotonic() >= next_resync:
                log.debug("informer_relist", kind=self.mapping.gvk.kind, expired=resource_version is None)
                resource_version = self._relist()
                next_resync = self._next_resync()

    def stop(self) -> None:
        self._watch.stop()
        response = self._response
        if response is not None:
            response.close()

    def _next_resync(self) -> float:
        if self._resync <= timedelta(0):
            return math.inf
        return time.monotonic() + jittered(self._resync).total_seconds()

    def _relist(self) -> str | None:
        data = self.list_objects()
        objs = [self._scheme.from_dict(item, self.obj_type) for item in data.get("items") or []]
        self.store.replace(objs)
        self.synced.set()
        log.debug("informer_synced", kind=self.mapping.gvk.kind, namespace=self._namespace, count=len(objs))
        return (data.get("metadata") or {}).get("resourceVersion")

    def _watch_once(self, resource_version: str | None, timeout: int, stopped: threading.Event) -> str | None:
        for event in self._watch.stream(
            self.list_objects,
            resource_version=resource_version,
            timeout_seconds=timeout,
        ):
            if stopped.is_set():
                self._watch.stop()
                break
            event_type = event["type"]
            raw = event["raw_object"]
            if event_type == "ERROR":
                raise WatchError(raw)
            resource_version = (raw.get("metadata") or {}).get("resourceVersion", resource_version)
            if event_type == "BOOKMARK":
                continue
            obj = self._scheme.from_dict(raw, self.obj_type)
            if event_type == "DELETED":
                self.store.remove(obj)
            else:
                self.store.upsert(obj)
        return resource_version


# --- Cache ---


class InformerCache:
    """Cache holding one informer per kind, created on first read or index registration.

    Reads require start() to have been called and wait for the kind's initial list.
    Indexes must be registered before the kind's informer is running.
    """

    def __init__(self, options: CacheOptions) -> None:
        self._options = options
        self._resync = options.resync if options.resync is not None else DEFAULT_RESYNC
        self._lock = threading.Lock()
        self._informers: dict[GroupVersionKind, _Informer] = {}
        self._threads: list[threading.Thread] = []
        self._stopped = threading.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._failure: asyncio.Future[None] | None = None
        self._started = False

    @property
    def namespace(self) -> str:
        return self._options.namespace

    def index_field(self, obj_type: type, field: str, extract_value: Callable[[Any], list[str]]) -> None:
        informer = self._informer_for(obj_type, start=False)
        if informer.running:
            msg = f"cannot add index {field!r}: the {informer.mapping.gvk.kind} informer is already running"
            raise ValueError(msg)
        informer.store.add_indexer(field, extract_value)

    async def get(self, key: ObjectKey, obj_type: type[T]) -> T:
        informer = await self._synced_informer(obj_type)
        obj = informer.store.get(ObjectKey(key.namespace if informer.mapping.namespaced else None, key.name))
        if obj is None:
            raise NotFoundError(informer.mapping.gvk.kind, key.namespace, key.name)
        return obj

    async def list(
        self,
        obj_type: type[T],
        namespace: str | None = None,
        label_selector: str | None = None,
        field_selector: str | None = None,
    ) -> list[T]:
        informer = await self._synced_informer(obj_type)
        if field_selector:
            field, value = _parse_field_selector(field_selector)
            if not informer.store.has_index(field):
                msg = f"no index registered for field {field!r} on {informer.mapping.gvk.kind}"
                raise ValueError(msg)
            objs = informer.store.by_index(field, value, namespace)
        else:
            objs = informer.store.list(namespace)
        if label_selector:
            requirements = parse_label_selector(label_selector)
            objs = [obj for obj in objs if matches_labels(requirements, object_meta(obj)[2])]
        return objs

    async def start(self, stop: asyncio.Event) -> None:
        """Run every informer until ``stop`` is set or one of them fails.

        Returns None on a clean stop. An informer failure is raised unchanged. Open
        watches are closed and informer threads joined, for at most
        INFORMER_STOP_TIMEOUT seconds, before returning.
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._started:
                msg = "cache already started"
                raise RuntimeError(msg)
            self._started = True
            self._loop = loop
            self._failure = loop.create_future()
            informers = list(self._informers.values())
        log.info("cache_starting", namespace=self._options.namespace or "<all>", informers=len(informers))
        for informer in informers:
            self._run(informer)

        stop_waiter = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({stop_waiter, self._failure}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_waiter.cancel()
            self._stopped.set()
            with self._lock:
                for informer in self._informers.values():
                    informer.stop()
            await asyncio.to_thread(self._join_informers, INFORMER_STOP_TIMEOUT)
        log.info("cache_stopped")
        if self._failure.done() and not self._failure.cancelled():
            self._failure.result()

    async def _synced_informer(self, obj_type: type) -> _Informer:
        if not self._started:
            raise CacheNotStartedError("the cache has not been started; call start() first")
        # Creating an informer may run REST discovery.
        informer = await asyncio.to_thread(self._informer_for, obj_type, start=True)
        if not informer.synced.is_set():
            timeout = self._options.sync_timeout.total_seconds()
            if not await asyncio.to_thread(informer.synced.wait, timeout):
                msg = f"timed out waiting for {informer.mapping.gvk.kind} informer to sync"
                raise CacheSyncTimeoutError(msg)
        return informer

    def _informer_for(self, obj_type: type, *, start: bool) -> _Informer:
        gvk = self._options.scheme.object_kind(obj_type)
        with self._lock:
            informer = self._informers.get(gvk)
        if informer is None:
            mapping = self._options.mapper.rest_mapping(gvk)
            created = _Informer(
                self._options.api_client,
                self._options.scheme,
                mapping,
                obj_type,
                self._options.namespace,
                self._resync,
            )
            with self._lock:
                informer = self._informers.setdefault(gvk, created)
        if start:
            with self._lock:
                should_run = self._started and not informer.running and not self._stopped.is_set()
            if should_run:
                self._run(informer)
        return informer

    def _run(self, informer: _Informer) -> None:
        with self._lock:
            if informer.running:
                return
            informer.running = True
        thread = threading.Thread(
            target=self._run_informer,
            args=(informer,),
            name=f"informer-{informer.mapping.resource}",
            daemon=True,
        )
        with self._lock:
            self._threads.append(thread)
        thread.start()

    def _join_informers(self, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        alive = [t.name for t in threads if t.is_alive()]
        if alive:
            log.warning("informers_still_running", threads=alive, timeout=timeout)

    def _run_informer(self, informer: _Informer) -> None:
        try:
            informer.run(self._stopped)
        except Exception as exc:
            log.error("informer_failed", kind=informer.mapping.gvk.kind, error=str(exc))
            loop = self._loop
            if loop is None or loop.is_closed() or self._stopped.is_set():
                return
            try:
                loop.call_soon_threadsafe(self._fail, exc)
            except RuntimeError:
                log.debug("informer_failure_after_loop_closed", kind=informer.mapping.gvk.kind)

    def _fail(self, exc: BaseException) -> None:
        if self._failure is not None and not self._failure.done():
            self._failure.set_exception(exc)


def new_cache(config: Configuration, options: CacheOptions) -> Cache:
    """Default cache builder."""
    return InformerCache(options)
