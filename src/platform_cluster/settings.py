"""YAML settings file describing how a cluster should be built."""

from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field

from platform_cluster.cluster import (
    Option,
    with_client_disable_cache_for,
    with_dry_run_client,
    with_namespace,
    with_scheme,
    with_sync_period,
)
from platform_cluster.scheme import Scheme
from platform_cluster.validation import validate_namespace


class KindRef(BaseModel):
    """A kind named in the settings file, e.g. ``{kind: Secret}``."""

    model_config = ConfigDict(frozen=True)

    kind: str
    api_version: str | None = None


class ClusterSettings(BaseModel):
    """Cluster options that can be set from a settings file."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    namespace: str = ""
    sync_period_seconds: float | None = Field(default=None, gt=0)
    dry_run: bool = False
    disable_cache_for: list[KindRef] = Field(default_factory=list)

    def to_options(self, scheme: Scheme) -> list[Option]:
        """Translate the settings into cluster options, resolving kinds against ``scheme``.

        The scheme itself is included so the resolved types and the cluster agree.

        Raises:
            KeyError: If a kind is unknown to the scheme or ambiguous.
        """
        validate_namespace(self.namespace or None)
        opts: list[Option] = [with_scheme(scheme), with_namespace(self.namespace), with_dry_run_client(self.dry_run)]
        if self.sync_period_seconds is not None:
            opts.append(with_sync_period(timedelta(seconds=self.sync_period_seconds)))
        if self.disable_cache_for:
            types = [scheme.type_for_kind(ref.kind, ref.api_version) for ref in self.disable_cache_for]
            opts.append(with_client_disable_cache_for(*types))
        return opts


def load_settings(path: Path | None = None) -> ClusterSettings:
    """Load cluster settings from YAML.

    The path defaults to ``PLATFORM_CLUSTER_SETTINGS``, then ``cluster.yaml`` in the
    working directory. A missing default file yields default settings; a missing
    explicit file is an error.

    Raises:
        FileNotFoundError: If an explicitly named file does not exist.
        ValueError: If the file is not a mapping or fails validation.
    """
    explicit = path is not None or "PLATFORM_CLUSTER_SETTINGS" in os.environ
    path = path or Path(os.environ.get("PLATFORM_CLUSTER_SETTINGS", "cluster.yaml"))
    if not path.exists():
        if explicit:
            msg = f"Cluster settings file not found: {path}"
            raise FileNotFoundError(msg)
        return ClusterSettings()

    raw = yaml.safe_load(path.read_text())
    if raw is None:
        return ClusterSettings()
    if not isinstance(raw, dict):
        msg = f"Cluster settings file {path} must contain a mapping, got {type(raw).__name__}."
        raise ValueError(msg)
    return ClusterSettings.model_validate(raw)
