"""Cluster: the cache, clients, REST mapper and event recorders for one API server."""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

import structlog
from kubernetes import client as k8s_client
from kubernetes.client import Configuration
from structlog.typing import BindableLogger

from platform_cluster import cache as cache_mod
from platform_cluster import clients as clients_mod
from platform_cluster import recorder as recorder_mod
from platform_cluster.cache import Cache, CacheOptions
from platform_cluster.clients import Client, ClientCacheOptions, ClientOptions, FieldIndexer, Reader
from platform_cluster.config import default_sync_period
from platform_cluster.errors import (
    CacheConstructionError,
    ClientConstructionError,
    ClusterAlreadyStartedError,
    ConfigMissingError,
    InvalidOptionsError,
    RecorderProviderError,
    TransportDerivationError,
    TypeResolutionError,
)
from platform_cluster.mapper import RESTMapper, new_dynamic_rest_mapper
from platform_cluster.recorder import DEFAULT_SHUTDOWN_TIMEOUT, BroadcasterFactory, EventBroadcaster, Provider
from platform_cluster.scheme import Scheme, new_default_scheme

log = structlog.get_logger()

MapperProvider = Callable[[Configuration, k8s_client.ApiClient], RESTMapper]
NewCacheFunc = Callable[[Configuration, CacheOptions], Cache]
NewClientFunc = Callable[[Configuration, ClientOptions], Client]
NewRecorderProviderFunc = Callable[
    [Configuration, k8s_client.ApiClient, Scheme, BindableLogger, BroadcasterFactory],
    Provider,
]


@dataclass(frozen=True)
class Options:
    """Everything that can be configured for a Cluster. Unset fields are defaulted by new_cluster.

    Attributes:
        scheme: Registry used to resolve object types to kinds. Defaults to a fresh
            scheme holding the built-in Kubernetes kinds.
        mapper_provider: Builds the REST mapper. Defaults to dynamic discovery.
        logger: structlog logger for the cluster. Defaults to one bound to ``logger="cluster"``.
        sync_period: Minimum resync interval of the cache's informers. Defaults to
            10 hours; each informer jitters it by +/-10%. Zero disables periodic resync.
        namespace: Restricts the cache to one namespace. Empty watches all namespaces.
            Cluster-scoped kinds are always watched cluster-wide.
        api_client: Transport used by the cache and clients. Derived from the
            connection configuration when unset.
        new_cache: Cache builder. Defaults to the informer cache.
        new_client: Client builder. Defaults to a client reading from the cache and
            writing directly.
        client_disable_cache_for: Types the client always reads directly.
        dry_run_client: Send every mutation from the client with ``dryRun=All``.
        event_broadcaster: Caller-owned broadcaster. The cluster records to it but never
            shuts it down. When unset, the cluster creates its own on first use and
            owns it.
    """

    scheme: Scheme | None = None
    mapper_provider: MapperProvider | None = None
    logger: BindableLogger | None = None
    sync_period: timedelta | None = None
    namespace: str = ""
    api_client: k8s_client.ApiClient | None = None
    new_cache: NewCacheFunc | None = None
    new_client: NewClientFunc | None = None
    client_disable_cache_for: tuple[type, ...] = ()
    dry_run_client: bool = False
    event_broadcaster: EventBroadcaster | None = None

    make_broadcaster: BroadcasterFactory | None = None
    new_recorder_provider: NewRecorderProviderFunc | None = None


Option = Callable[[Options], Options]


def with_scheme(scheme: Scheme) -> Option:
    return lambda o: dataclasses.replace(o, scheme=scheme)


def with_mapper_provider(provider: MapperProvider) -> Option:
    return lambda o: dataclasses.replace(o, mapper_provider=provider)


def with_logger(logger: BindableLogger) -> Option:
    return lambda o: dataclasses.replace(o, logger=logger)


def with_sync_period(period: timedelta) -> Option:
    return lambda o: dataclasses.replace(o, sync_period=period)


def with_namespace(namespace: str) -> Option:
    return lambda o: dataclasses.replace(o, namespace=namespace)


def with_api_client(api_client: k8s_client.ApiClient) -> Option:
    return lambda o: dataclasses.replace(o, api_client=api_client)


def with_new_cache(new_cache: NewCacheFunc) -> Option:
    return lambda o: dataclasses.replace(o, new_cache=new_cache)


def with_new_client(new_client: NewClientFunc) -> Option:
    return lambda o: dataclasses.replace(o, new_client=new_client)


def with_client_disable_cache_for(*obj_types: type) -> Option:
    return lambda o: dataclasses.replace(o, client_disable_cache_for=o.client_disable_cache_for + tuple(obj_types))


def with_dry_run_client(enabled: bool = True) -> Option:
    return lambda o: dataclasses.replace(o, dry_run_client=enabled)


def with_event_broadcaster(broadcaster: EventBroadcaster) -> Option:
    return lambda o: dataclasses.replace(o, event_broadcaster=broadcaster)


def set_options_defaults(options: Options, config: Configuration) -> Options:
    """Return a copy of ``options`` with every unset field filled in.

    The broadcaster factory is installed but not called, so an unused cluster never
    starts a dispatch thread.

    Raises:
        TransportDerivationError: If no api_client was given and none can be built.
        InvalidOptionsError: If the sync period is negative or its environment override is malformed.
    """
    api_client = options.api_client
    if api_client is None:
        try:
            api_client = clients_mod.new_api_client(config)
        except Exception as exc:
            raise TransportDerivationError(f"unable to create an API client: {exc}") from exc

    sync_period = options.sync_period
    if sync_period is None:
        try:
            sync_period = default_sync_period()
        except ValueError as exc:
            raise InvalidOptionsError(f"invalid default sync period: {exc}") from exc
    elif sync_period < timedelta(0):
        raise InvalidOptionsError(f"sync period must not be negative, got {sync_period}")

    external = options.event_broadcaster
    if external is None:

        def make_broadcaster() -> tuple[EventBroadcaster, bool]:
            return EventBroadcaster(), True

    else:

        def make_broadcaster() -> tuple[EventBroadcaster, bool]:
            return external, False

    return dataclasses.replace(
        options,
        api_client=api_client,
        scheme=options.scheme or new_default_scheme(),
        mapper_provider=options.mapper_provider or new_dynamic_rest_mapper,
        new_client=options.new_client or clients_mod.new_client,
        new_cache=options.new_cache or cache_mod.new_cache,
        new_recorder_provider=options.new_recorder_provider or recorder_mod.new_provider,
        logger=options.logger or structlog.get_logger().bind(logger="cluster"),
        sync_period=sync_period,
        client_disable_cache_for=tuple(options.client_disable_cache_for),
        make_broadcaster=make_broadcaster,
    )


class ClusterState(enum.Enum):
    CONSTRUCTED = "constructed"
    RUNNING = "running"
    TERMINATED = "terminated"


class Cluster:
    """The assembled object graph for talking to one cluster.

    Built only by new_cluster. Components never change after construction. The
    cache, client and API reader all share one scheme and one REST mapper.
    """

    def __init__(
        self,
        *,
        config: Configuration,
        api_client: k8s_client.ApiClient,
        scheme: Scheme,
        cache: Cache,
        client: Client,
        api_reader: Reader,
        recorder_provider: Provider,
        mapper: RESTMapper,
        logger: BindableLogger,
    ) -> None:
        self._config = config
        self._api_client = api_client
        self._scheme = scheme
        self._cache = cache
        self._client = client
        self._api_reader = api_reader
        self._recorder_provider = recorder_provider
        self._mapper = mapper
        self._logger = logger
        self._state = ClusterState.CONSTRUCTED
        self._state_lock = threading.Lock()

    @property
    def config(self) -> Configuration:
        return self._config

    @property
    def api_client(self) -> k8s_client.ApiClient:
        return self._api_client

    @property
    def scheme(self) -> Scheme:
        return self._scheme

    @property
    def cache(self) -> Cache:
        return self._cache

    @property
    def field_indexer(self) -> FieldIndexer:
        return self._cache

    @property
    def client(self) -> Client:
        """Client that may serve reads from the cache. See Options.new_client."""
        return self._client

    @property
    def api_reader(self) -> Reader:
        """Reader that always queries the API server. Use only when cached reads are not acceptable."""
        return self._api_reader

    @property
    def mapper(self) -> RESTMapper:
        return self._mapper

    @property
    def logger(self) -> BindableLogger:
        return self._logger

    @property
    def recorder_provider(self) -> Provider:
        return self._recorder_provider

    @property
    def state(self) -> ClusterState:
        with self._state_lock:
            return self._state

    def get_event_recorder_for(self, name: str) -> recorder_mod.EventRecorder:
        return self._recorder_provider.get_event_recorder_for(name)

    async def start(self, stop: asyncio.Event) -> None:
        """Run the cache until ``stop`` is set or the cache fails.

        Blocks for the cluster's whole life. Whatever the cache returns or raises is
        passed through unchanged. Afterwards the recorder provider is stopped off the
        event loop, which shuts down the event broadcaster only if the cluster created
        it and waits at most DEFAULT_SHUTDOWN_TIMEOUT seconds for queued events. A cluster
        runs once; build a new one to run again.

        Raises:
            ClusterAlreadyStartedError: If start() was already called.
        """
        with self._state_lock:
            if self._state is not ClusterState.CONSTRUCTED:
                msg = f"cluster cannot start from state {self._state.value!r}"
                raise ClusterAlreadyStartedError(msg)
            self._state = ClusterState.RUNNING
        self._logger.info("cluster_starting")
        try:
            await self._cache.start(stop)
        finally:
            with self._state_lock:
                self._state = ClusterState.TERMINATED
            await asyncio.to_thread(self._recorder_provider.stop, DEFAULT_SHUTDOWN_TIMEOUT)
            self._logger.info("cluster_terminated")


def new_cluster(config: Configuration | None, *opts: Option) -> Cluster:
    """Build a Cluster for ``config``.

    Steps run in order: defaulting, REST mapper, cache, client, API reader, recorder
    provider. The first failure aborts the build; nothing is retried.

    Raises:
        ConfigMissingError: If ``config`` is None.
        TransportDerivationError: If no api_client was given and none can be built.
        InvalidOptionsError: If the sync period is unusable.
        TypeResolutionError: If the REST mapper cannot be built.
        CacheConstructionError: If the cache cannot be built.
        ClientConstructionError: If the client or API reader cannot be built.
        RecorderProviderError: If the recorder provider cannot be built.
    """
    if config is None:
        raise ConfigMissingError("must specify a connection Configuration")

    options = Options()
    for opt in opts:
        options = opt(options)

    try:
        options = set_options_defaults(options, config)
    except Exception as exc:
        (options.logger or log).error("failed_to_set_defaults", error=str(exc))
        raise

    logger = options.logger
    api_client = options.api_client
    scheme = options.scheme

    try:
        mapper = options.mapper_provider(config, api_client)
    except Exception as exc:
        logger.error("failed_to_create_rest_mapper", error=str(exc))
        raise TypeResolutionError(f"unable to build REST mapper: {exc}") from exc

    try:
        cache = options.new_cache(
            config,
            CacheOptions(
                api_client=api_client,
                scheme=scheme,
                mapper=mapper,
                resync=options.sync_period,
                namespace=options.namespace,
            ),
        )
    except Exception as exc:
        logger.error("failed_to_create_cache", error=str(exc))
        raise CacheConstructionError(f"unable to build cache: {exc}") from exc

    try:
        client = options.new_client(
            config,
            ClientOptions(
                api_client=api_client,
                scheme=scheme,
                mapper=mapper,
                cache=ClientCacheOptions(reader=cache, disable_for=options.client_disable_cache_for),
            ),
        )
    except Exception as exc:
        logger.error("failed_to_create_client", error=str(exc))
        raise ClientConstructionError(f"unable to build client: {exc}") from exc

    if options.dry_run_client:
        client = clients_mod.DryRunClient(client)

    try:
        api_reader = clients_mod.new_client(config, ClientOptions(api_client=api_client, scheme=scheme, mapper=mapper))
    except Exception as exc:
        logger.error("failed_to_create_api_reader", error=str(exc))
        raise ClientConstructionError(f"unable to build API reader: {exc}") from exc

    try:
        recorder_provider = options.new_recorder_provider(
            config,
            api_client,
            scheme,
            logger.bind(logger="events"),
            options.make_broadcaster,
        )
    except Exception as exc:
        logger.error("failed_to_create_recorder_provider", error=str(exc))
        raise RecorderProviderError(f"unable to build recorder provider: {exc}") from exc

    logger.info(
        "cluster_built",
        namespace=options.namespace or "<all>",
        dry_run=options.dry_run_client,
        uncached_types=[t.__name__ for t in options.client_disable_cache_for],
    )
    return Cluster(
        config=config,
        api_client=api_client,
        scheme=scheme,
        cache=cache,
        client=client,
        api_reader=api_reader,
        recorder_provider=recorder_provider,
        mapper=mapper,
        logger=logger,
    )

