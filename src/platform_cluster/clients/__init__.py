"""Clients for reading and writing cluster objects."""

from __future__ import annotations

import copy
from dataclasses import dataclass

from kubernetes import client as k8s_client
from kubernetes.client import Configuration

from platform_cluster.clients.cached import CachedClient
from platform_cluster.clients.direct import DirectClient
from platform_cluster.clients.dry_run import DryRunClient
from platform_cluster.clients.interfaces import Client, FieldIndexer, ObjectKey, Reader, Writer
from platform_cluster.mapper import RESTMapper
from platform_cluster.scheme import Scheme

__all__ = [
    "CachedClient",
    "Client",
    "ClientCacheOptions",
    "ClientOptions",
    "DirectClient",
    "DryRunClient",
    "FieldIndexer",
    "ObjectKey",
    "Reader",
    "Writer",
    "new_api_client",
    "new_client",
]


def new_api_client(config: Configuration) -> k8s_client.ApiClient:
    """Create an ApiClient bound to ``config``.

    The configuration is copied so the client never shares mutable state with the
    caller's object or with the SDK's process-wide default.
    """
    return k8s_client.ApiClient(configuration=copy.deepcopy(config))


@dataclass(frozen=True)
class ClientCacheOptions:
    """Cache wiring for the default client."""

    reader: Reader
    disable_for: tuple[type, ...] = ()


@dataclass(frozen=True)
class ClientOptions:
    api_client: k8s_client.ApiClient | None = None
    scheme: Scheme | None = None
    mapper: RESTMapper | None = None
    cache: ClientCacheOptions | None = None


def new_client(config: Configuration, options: ClientOptions) -> Client:
    """Build the default client.

    Without cache options this is a DirectClient. With them, reads come from the
    cache reader except for the ``disable_for`` types, and writes always go direct.

    Raises:
        ValueError: If the scheme or mapper is missing.
        NotRegisteredError: If a ``disable_for`` type is unknown to the scheme.
    """
    if options.scheme is None or options.mapper is None:
        msg = "ClientOptions requires both a scheme and a mapper"
        raise ValueError(msg)
    api_client = options.api_client or new_api_client(config)
    direct = DirectClient(api_client, options.scheme, options.mapper)
    if options.cache is None:
        return direct

    for obj_type in options.cache.disable_for:
        options.scheme.object_kind(obj_type)
    return CachedClient(options.cache.reader, direct, options.cache.disable_for)
