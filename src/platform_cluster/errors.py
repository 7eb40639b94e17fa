"""Error taxonomy for cluster construction and the collaborators it wires together."""

from __future__ import annotations

from typing import Any


class ClusterError(Exception):
    """Base class for every error raised by platform_cluster."""


# --- Construction errors ---
# Raised by new_cluster. None of them leave a partially built Cluster behind.


class ConfigMissingError(ClusterError):
    """No connection configuration was supplied."""


class TransportDerivationError(ClusterError):
    """An ApiClient could not be derived from the connection configuration."""


class InvalidOptionsError(ClusterError):
    """An option value, supplied or taken from the environment, is unusable."""


class TypeResolutionError(ClusterError):
    """The REST mapper provider failed."""


class CacheConstructionError(ClusterError):
    """The cache builder failed."""


class ClientConstructionError(ClusterError):
    """The client builder failed."""


class RecorderProviderError(ClusterError):
    """The event recorder provider could not be built."""


class ClusterAlreadyStartedError(ClusterError):
    """start() was called on a cluster that is already running or terminated."""


# --- Collaborator errors ---


class NotRegisteredError(ClusterError):
    """A Python type has no GroupVersionKind registered in the scheme."""

    def __init__(self, obj_type: Any) -> None:
        name = getattr(obj_type, "__name__", repr(obj_type))
        super().__init__(f"no kind is registered for type {name}")
        self.obj_type = obj_type


class NoKindMatchError(ClusterError):
    """The API server does not serve the requested kind."""

    def __init__(self, gvk: Any) -> None:
        super().__init__(f"no matches for kind {gvk.kind!r} in version {gvk.api_version!r}")
        self.gvk = gvk


class NotFoundError(ClusterError):
    """The requested object does not exist."""

    def __init__(self, kind: str, namespace: str | None, name: str) -> None:
        where = f"{namespace}/{name}" if namespace else name
        super().__init__(f"{kind} {where!r} not found")
        self.kind = kind
        self.namespace = namespace
        self.name = name


class CacheNotStartedError(ClusterError):
    """The cache was read before start() was called."""


class CacheSyncTimeoutError(ClusterError):
    """An informer did not complete its initial list in time."""


class WatchError(ClusterError):
    """The API server closed a watch with an error status."""

    def __init__(self, status: dict[str, Any]) -> None:
        super().__init__(status.get("message") or "watch failed")
        self.status = status
        self.code = status.get("code")
