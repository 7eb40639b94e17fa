"""Build the cache, clients and event recorders a controller needs for one cluster."""

from platform_cluster.cluster import (
    Cluster,
    ClusterState,
    Option,
    Options,
    new_cluster,
    set_options_defaults,
    with_api_client,
    with_client_disable_cache_for,
    with_dry_run_client,
    with_event_broadcaster,
    with_logger,
    with_mapper_provider,
    with_namespace,
    with_new_cache,
    with_new_client,
    with_scheme,
    with_sync_period,
)
from platform_cluster.clients import ObjectKey
from platform_cluster.errors import (
    CacheConstructionError,
    ClientConstructionError,
    ClusterAlreadyStartedError,
    ClusterError,
    ConfigMissingError,
    InvalidOptionsError,
    RecorderProviderError,
    TransportDerivationError,
    TypeResolutionError,
)
from platform_cluster.scheme import GroupVersionKind, Scheme, new_default_scheme

__version__ = "0.1.0"

__all__ = [
    "CacheConstructionError",
    "ClientConstructionError",
    "Cluster",
    "ClusterAlreadyStartedError",
    "ClusterError",
    "ClusterState",
    "ConfigMissingError",
    "GroupVersionKind",
    "InvalidOptionsError",
    "ObjectKey",
    "Option",
    "Options",
    "RecorderProviderError",
    "Scheme",
    "TransportDerivationError",
    "TypeResolutionError",
    "new_cluster",
    "new_default_scheme",
    "set_options_defaults",
    "with_api_client",
    "with_client_disable_cache_for",
    "with_dry_run_client",
    "with_event_broadcaster",
    "with_logger",
    "with_mapper_provider",
    "with_namespace",
    "with_new_cache",
    "with_new_client",
    "with_scheme",
    "with_sync_period",
]
