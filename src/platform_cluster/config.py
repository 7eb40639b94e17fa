"""Connection configuration loading and environment variable defaults."""

from __future__ import annotations

import os
from datetime import timedelta

import structlog
from kubernetes import config as k8s_config
from kubernetes.client import Configuration
from kubernetes.config.config_exception import ConfigException

log = structlog.get_logger()

_SYNC_PERIOD_ENV = "PLATFORM_CLUSTER_SYNC_PERIOD_SECONDS"
_DEFAULT_SYNC_PERIOD_SECONDS = 10 * 60 * 60


def default_sync_period() -> timedelta:
    """Return the cache resync period: 10 hours unless overridden by the environment.

    Raises:
        ValueError: If the environment override is not a positive number.
    """
    raw = os.environ.get(_SYNC_PERIOD_ENV)
    if raw is None:
        return timedelta(seconds=_DEFAULT_SYNC_PERIOD_SECONDS)
    seconds = float(raw)
    if seconds <= 0:
        msg = f"{_SYNC_PERIOD_ENV} must be positive, got {raw!r}"
        raise ValueError(msg)
    return timedelta(seconds=seconds)


def load_rest_config(context: str | None = None, kubeconfig: str | None = None) -> Configuration:
    """Load connection configuration for one kubeconfig context.

    The result is a fresh Configuration; the SDK's process-wide default is left alone,
    so several contexts can be loaded side by side. When no kubeconfig is available
    and no explicit file or context was requested, in-cluster service account
    configuration is used.

    Raises:
        ConfigException: If neither source yields a usable configuration.
    """
    config = Configuration()
    try:
        k8s_config.load_kube_config(config_file=kubeconfig, context=context, client_configuration=config)
    except ConfigException:
        if kubeconfig or context:
            log.error("failed_to_load_kubeconfig", context=context, kubeconfig=kubeconfig)
            raise
        log.info("kubeconfig_unavailable_using_incluster")
        k8s_config.load_incluster_config(client_configuration=config)
    return config
