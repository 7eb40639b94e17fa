"""Tests for cache.py: selectors, the object store, informer event handling and the cache lifecycle."""

from __future__ import annotations

import asyncio
import math
import threading
import time
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from kubernetes import client as k8s_client
from kubernetes.client.rest import ApiException

from platform_cluster import cache as cache_module
from platform_cluster.cache import (
    CacheOptions,
    InformerCache,
    jittered,
    matches_labels,
    new_cache,
    parse_label_selector,
)
from platform_cluster.clients import ObjectKey
from platform_cluster.errors import CacheNotStartedError, NotFoundError, WatchError


def _make_config_map(name: str, namespace: str = "team-a", labels: dict[str, str] | None = None, owner: str = ""):
    return k8s_client.V1ConfigMap(
        metadata=k8s_client.V1ObjectMeta(name=name, namespace=namespace, labels=labels),
        data={"owner": owner} if owner else None,
    )


def _raw_config_map(name: str, resource_version: str, namespace: str = "team-a") -> dict:
    return {"metadata": {"name": name, "namespace": namespace, "resourceVersion": resource_version}}


def _owner_index(obj: k8s_client.V1ConfigMap) -> list[str]:
    return [obj.data["owner"]] if obj.data and "owner" in obj.data else []


class _SlowMapper:
    """Wraps a mapper and delays every lookup, as discovery against a slow API server would."""

    def __init__(self, inner, delay: float) -> None:
        self._inner = inner
        self._delay = delay

    def rest_mapping(self, gvk):
        time.sleep(self._delay)
        return self._inner.rest_mapping(gvk)

    def kind_for(self, api_version: str, resource: str):
        return self._inner.kind_for(api_version, resource)


@pytest.fixture
def cache_options(api_client, scheme, mapper) -> CacheOptions:
    return CacheOptions(api_client=api_client, scheme=scheme, mapper=mapper, resync=timedelta(hours=1))


class TestLabelSelectors:
    @pytest.mark.parametrize(
        "selector,labels,expected",
        [
            ("app=web", {"app": "web"}, True),
            ("app==web", {"app": "db"}, False),
            ("app!=web", {"app": "db"}, True),
            ("tier", {"tier": "x"}, True),
            ("!tier", {"tier": "x"}, False),
            ("app=web,tier=front", {"app": "web"}, False),
        ],
    )
    def test_matches(self, selector: str, labels: dict[str, str], expected: bool) -> None:
        assert matches_labels(parse_label_selector(selector), labels) is expected

    def test_empty_selector_matches_everything(self) -> None:
        assert parse_label_selector(" , ") == []


class TestJitter:
    def test_stays_within_ten_percent(self) -> None:
        period = timedelta(hours=10)
        for _ in range(50):
            value = jittered(period)
            assert timedelta(hours=9) <= value <= timedelta(hours=11)


class TestStore:
    def test_reads_return_copies(self) -> None:
        store = cache_module._Store()
        store.upsert(_make_config_map("a"))

        copy = store.get(ObjectKey("team-a", "a"))
        copy.metadata.name = "changed"

        assert store.get(ObjectKey("team-a", "a")).metadata.name == "a"

    def test_index_tracks_updates_and_deletes(self) -> None:
        store = cache_module._Store()
        store.add_indexer("owner", _owner_index)
        store.upsert(_make_config_map("a", owner="alice"))
        store.upsert(_make_config_map("b", namespace="team-b", owner="alice"))

        assert [o.metadata.name for o in store.by_index("owner", "alice")] == ["a", "b"]
        assert [o.metadata.name for o in store.by_index("owner", "alice", "team-b")] == ["b"]

        store.upsert(_make_config_map("a", owner="bob"))
        store.remove(_make_config_map("b", namespace="team-b"))

        assert store.by_index("owner", "alice") == []
        assert [o.metadata.name for o in store.by_index("owner", "bob")] == ["a"]

    def test_duplicate_indexer_rejected(self) -> None:
        store = cache_module._Store()
        store.add_indexer("owner", _owner_index)
        with pytest.raises(ValueError, match="already registered"):
            store.add_indexer("owner", _owner_index)


class TestInformerEvents:
    def _informer(self, api_client, scheme, mapper) -> cache_module._Informer:
        gvk = scheme.object_kind(k8s_client.V1ConfigMap)
        return cache_module._Informer(
            api_client, scheme, mapper.rest_mapping(gvk), k8s_client.V1ConfigMap, "team-a", timedelta(hours=1)
        )

    def test_relist_replaces_store_and_marks_synced(self, api_client, scheme, mapper) -> None:
        api_client.call_api.return_value = {
            "metadata": {"resourceVersion": "100"},
            "items": [_raw_config_map("a", "5"), _raw_config_map("b", "6")],
        }
        informer = self._informer(api_client, scheme, mapper)

        assert informer._relist() == "100"
        assert informer.synced.is_set()
        assert sorted(o.metadata.name for o in informer.store.list()) == ["a", "b"]
        args, _ = api_client.call_api.call_args
        assert args[0] == "/api/v1/namespaces/team-a/configmaps"

    def test_watch_events_update_store(self, api_client, scheme, mapper) -> None:
        informer = self._informer(api_client, scheme, mapper)
        informer.store.replace([_make_config_map("gone")])
        events = [
            {"type": "ADDED", "raw_object": _raw_config_map("a", "7")},
            {"type": "MODIFIED", "raw_object": _raw_config_map("a", "8")},
            {"type": "DELETED", "raw_object": _raw_config_map("gone", "9")},
            {"type": "BOOKMARK", "raw_object": {"metadata": {"resourceVersion": "10"}}},
        ]

        with patch.object(informer._watch, "stream", return_value=iter(events)):
            resource_version = informer._watch_once("6", 30, threading.Event())

        assert resource_version == "10"
        assert [o.metadata.name for o in informer.store.list()] == ["a"]
        assert informer.store.get(ObjectKey("team-a", "a")).metadata.resource_version == "8"

    def test_error_event_raises(self, api_client, scheme, mapper) -> None:
        informer = self._informer(api_client, scheme, mapper)
        events = [{"type": "ERROR", "raw_object": {"code": 500, "message": "etcd unavailable"}}]

        with patch.object(informer._watch, "stream", return_value=iter(events)):
            with pytest.raises(WatchError, match="etcd unavailable"):
                informer._watch_once("6", 30, threading.Event())

    def test_expired_watch_relists(self, api_client, scheme, mapper) -> None:
        informer = self._informer(api_client, scheme, mapper)
        stopped = threading.Event()
        relists: list[int] = []

        def relist() -> str:
            relists.append(1)
            if len(relists) == 2:
                stopped.set()
            return "1"

        with (
            patch.object(informer, "_relist", side_effect=relist),
            patch.object(informer, "_watch_once", side_effect=ApiException(status=410, reason="Gone")),
        ):
            informer.run(stopped)

        assert len(relists) == 2

    def test_other_api_errors_end_the_informer(self, api_client, scheme, mapper) -> None:
        informer = self._informer(api_client, scheme, mapper)

        with (
            patch.object(informer, "_relist", return_value="1"),
            patch.object(informer, "_watch_once", side_effect=ApiException(status=403, reason="Forbidden")),
        ):
            with pytest.raises(ApiException):
                informer.run(threading.Event())

    def test_stop_closes_inflight_watch(self, api_client, scheme, mapper) -> None:
        informer = self._informer(api_client, scheme, mapper)
        response = MagicMock()
        api_client.call_api.return_value = response

        informer.list_objects(watch=True, resource_version="6", timeout_seconds=30, _preload_content=False)
        informer.stop()

        response.close.assert_called_once_with()

    def test_read_error_after_stop_ends_quietly(self, api_client, scheme, mapper) -> None:
        informer = self._informer(api_client, scheme, mapper)
        stopped = threading.Event()

        def closed_mid_read(*args) -> str:
            stopped.set()
            raise OSError("response closed")

        with (
            patch.object(informer, "_relist", return_value="1"),
            patch.object(informer, "_watch_once", side_effect=closed_mid_read),
        ):
            informer.run(stopped)

    def test_zero_resync_disables_periodic_relist(self, api_client, scheme, mapper) -> None:
        gvk = scheme.object_kind(k8s_client.V1ConfigMap)
        informer = cache_module._Informer(
            api_client, scheme, mapper.rest_mapping(gvk), k8s_client.V1ConfigMap, "", timedelta(0)
        )
        assert informer._next_resync() == math.inf


class TestInformerCache:
    async def test_read_before_start_raises(self, cache_options: CacheOptions) -> None:
        cache = InformerCache(cache_options)
        with pytest.raises(CacheNotStartedError):
            await cache.get(ObjectKey("team-a", "a"), k8s_client.V1ConfigMap)

    async def test_read_before_start_skips_discovery(self, cache_options: CacheOptions, mapper) -> None:
        cache = InformerCache(cache_options)
        with pytest.raises(CacheNotStartedError):
            await cache.list(k8s_client.V1ConfigMap)
        assert mapper.calls == []

    async def test_discovery_runs_off_the_event_loop(self, api_client, scheme, mapper) -> None:
        cache = InformerCache(CacheOptions(api_client=api_client, scheme=scheme, mapper=_SlowMapper(mapper, 0.3)))

        def fake_run(self, stopped: threading.Event) -> None:
            self.store.replace([_make_config_map("web")])
            self.synced.set()
            stopped.wait()

        ticks = 0

        async def tick() -> None:
            nonlocal ticks
            while True:
                await asyncio.sleep(0.02)
                ticks += 1

        stop = asyncio.Event()
        with patch.object(cache_module._Informer, "run", fake_run):
            task = asyncio.create_task(cache.start(stop))
            await asyncio.sleep(0)
            ticker = asyncio.create_task(tick())

            web = await cache.get(ObjectKey("team-a", "web"), k8s_client.V1ConfigMap)

            ticker.cancel()
            stop.set()
            await asyncio.wait_for(task, timeout=5)

        assert web.metadata.name == "web"
        assert ticks > 0

    async def test_informer_threads_joined_when_start_returns(self, cache_options: CacheOptions) -> None:
        cache = InformerCache(cache_options)
        cache.index_field(k8s_client.V1ConfigMap, "owner", _owner_index)

        def fake_run(self, stopped: threading.Event) -> None:
            stopped.wait()
            time.sleep(0.1)

        stop = asyncio.Event()
        with patch.object(cache_module._Informer, "run", fake_run):
            task = asyncio.create_task(cache.start(stop))
            await asyncio.sleep(0)
            stop.set()
            await asyncio.wait_for(task, timeout=5)

        assert len(cache._threads) == 1
        assert not any(thread.is_alive() for thread in cache._threads)

    def test_failure_after_loop_closed_is_not_reported(self, cache_options: CacheOptions) -> None:
        cache = InformerCache(cache_options)
        informer = cache._informer_for(k8s_client.V1ConfigMap, start=False)
        loop = asyncio.new_event_loop()
        loop.close()
        cache._loop = loop

        with patch.object(informer, "run", side_effect=RuntimeError("watch dropped")):
            cache._run_informer(informer)

        assert cache._failure is None

    async def test_start_returns_when_stop_already_set(self, cache_options: CacheOptions) -> None:
        cache = InformerCache(cache_options)
        stop = asyncio.Event()
        stop.set()

        assert await asyncio.wait_for(cache.start(stop), timeout=1) is None

    async def test_informer_failure_is_raised_from_start(self, cache_options: CacheOptions) -> None:
        cache = InformerCache(cache_options)
        cache.index_field(k8s_client.V1ConfigMap, "owner", _owner_index)
        failure = RuntimeError("watch forbidden")

        with patch.object(cache_module._Informer, "run", side_effect=failure):
            with pytest.raises(RuntimeError) as excinfo:
                await asyncio.wait_for(cache.start(asyncio.Event()), timeout=5)

        assert excinfo.value is failure

    async def test_reads_served_from_synced_store(self, cache_options: CacheOptions) -> None:
        cache = InformerCache(cache_options)
        cache.index_field(k8s_client.V1ConfigMap, "owner", _owner_index)

        def fake_run(self, stopped: threading.Event) -> None:
            self.store.replace(
                [
                    _make_config_map("web", labels={"app": "web"}, owner="alice"),
                    _make_config_map("db", labels={"app": "db"}, owner="bob"),
                ]
            )
            self.synced.set()
            stopped.wait()

        stop = asyncio.Event()
        with patch.object(cache_module._Informer, "run", fake_run):
            task = asyncio.create_task(cache.start(stop))
            await asyncio.sleep(0)

            web = await cache.get(ObjectKey("team-a", "web"), k8s_client.V1ConfigMap)
            by_label = await cache.list(k8s_client.V1ConfigMap, label_selector="app=db")
            by_field = await cache.list(k8s_client.V1ConfigMap, namespace="team-a", field_selector="owner=alice")
            with pytest.raises(NotFoundError):
                await cache.get(ObjectKey("team-a", "missing"), k8s_client.V1ConfigMap)

            stop.set()
            await asyncio.wait_for(task, timeout=5)

        assert web.metadata.name == "web"
        assert [o.metadata.name for o in by_label] == ["db"]
        assert [o.metadata.name for o in by_field] == ["web"]

    async def test_unindexed_field_selector_rejected(self, cache_options: CacheOptions) -> None:
        cache = InformerCache(cache_options)

        def fake_run(self, stopped: threading.Event) -> None:
            self.synced.set()
            stopped.wait()

        stop = asyncio.Event()
        with patch.object(cache_module._Informer, "run", fake_run):
            task = asyncio.create_task(cache.start(stop))
            await asyncio.sleep(0)
            with pytest.raises(ValueError, match="no index registered"):
                await cache.list(k8s_client.V1ConfigMap, field_selector="owner=alice")
            stop.set()
            await asyncio.wait_for(task, timeout=5)

    async def test_index_after_informer_running_rejected(self, cache_options: CacheOptions) -> None:
        cache = InformerCache(cache_options)
        cache.index_field(k8s_client.V1ConfigMap, "owner", _owner_index)

        def fake_run(self, stopped: threading.Event) -> None:
            stopped.wait()

        stop = asyncio.Event()
        with patch.object(cache_module._Informer, "run", fake_run):
            task = asyncio.create_task(cache.start(stop))
            await asyncio.sleep(0)
            with pytest.raises(ValueError, match="already running"):
                cache.index_field(k8s_client.V1ConfigMap, "tier", _owner_index)
            stop.set()
            await asyncio.wait_for(task, timeout=5)

    def test_namespace_restriction_reaches_informer(self, api_client, scheme, mapper) -> None:
        cache = InformerCache(CacheOptions(api_client=api_client, scheme=scheme, mapper=mapper, namespace="team-a"))
        informer = cache._informer_for(k8s_client.V1ConfigMap, start=False)
        node_informer = cache._informer_for(k8s_client.V1Node, start=False)

        informer.list_objects()
        assert api_client.call_api.call_args.args[0] == "/api/v1/namespaces/team-a/configmaps"
        node_informer.list_objects()
        assert api_client.call_api.call_args.args[0] == "/api/v1/nodes"


def test_new_cache_builds_informer_cache(rest_config, cache_options: CacheOptions) -> None:
    cache = new_cache(rest_config, cache_options)
    assert isinstance(cache, InformerCache)
    assert cache.namespace == ""


def test_default_resync_applies_when_unset(api_client, scheme, mapper) -> None:
    cache = InformerCache(CacheOptions(api_client=api_client, scheme=scheme, mapper=mapper))
    assert cache._resync == cache_module.DEFAULT_RESYNC


def test_informer_watch_uses_list_function(api_client, scheme, mapper) -> None:
    informer = InformerCache(CacheOptions(api_client=api_client, scheme=scheme, mapper=mapper))._informer_for(
        k8s_client.V1ConfigMap, start=False
    )
    informer._watch = MagicMock()
    informer._watch.stream.return_value = iter([])

    informer._watch_once("5", 30, threading.Event())

    informer._watch.stream.assert_called_once_with(informer.list_objects, resource_version="5", timeout_seconds=30)
