"""Run a cluster's cache from the command line until interrupted."""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path

import structlog
from kubernetes.config.config_exception import ConfigException

from platform_cluster.cluster import new_cluster, with_dry_run_client, with_namespace
from platform_cluster.config import load_rest_config
from platform_cluster.errors import ClusterError, InvalidOptionsError
from platform_cluster.logs import configure_logging
from platform_cluster.scheme import new_default_scheme
from platform_cluster.settings import load_settings
from platform_cluster.validation import validate_namespace

log = structlog.get_logger()


def _namespace_arg(value: str) -> str:
    try:
        validate_namespace(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc
    return value


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="platform-cluster", description=__doc__)
    parser.add_argument("--context", help="kubeconfig context to connect to")
    parser.add_argument("--kubeconfig", help="path to a kubeconfig file")
    parser.add_argument("--settings", type=Path, help="cluster settings YAML (default: $PLATFORM_CLUSTER_SETTINGS)")
    parser.add_argument("--namespace", type=_namespace_arg, help="restrict the cache to one namespace")
    parser.add_argument("--dry-run", action="store_true", help="send every client mutation as a dry run")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> None:
    config = load_rest_config(context=args.context, kubeconfig=args.kubeconfig)
    try:
        settings = load_settings(args.settings)
        opts = settings.to_options(new_default_scheme())
    except (OSError, KeyError, ValueError) as exc:
        raise InvalidOptionsError(f"unable to load cluster settings: {exc}") from exc
    if args.namespace:
        opts.append(with_namespace(args.namespace))
    if args.dry_run:
        opts.append(with_dry_run_client())
    cluster = new_cluster(config, *opts)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await cluster.start(stop)


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = _parse_args(argv)
    try:
        asyncio.run(run(args))
    except ClusterError as exc:
        log.error("cluster_failed", error=str(exc))
        return 1
    except ConfigException as exc:
        log.error("failed_to_load_connection_config", error=str(exc))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
