#!/usr/bin/env python
"""Command-line interface for secret-mounter.

This module provides the CLI entry point that loads the configuration,
connects to the cluster and runs the controller until it receives SIGINT
or SIGTERM.
"""

import signal
import sys
import threading

import click
from icecream import ic

from secret_mounter import __version__, console
from secret_mounter.cluster import Cluster
from secret_mounter.config import ControllerConfig, load_config
from secret_mounter.controller import Controller, ControllerContext
from secret_mounter.exceptions import ClusterConnectionError, ConfigParsingError


def build_config(
    config_file: str | None,
    namespace: str | None,
    workers: int | None,
    resync_period: float | None,
) -> ControllerConfig:
    """Load the configuration file and apply command-line overrides.

    Raises:
        click.ClickException: If the configuration file cannot be used.

    """
    try:
        cfg = load_config(config_file)
    except ConfigParsingError as e:
        raise click.ClickException(str(e)) from None
    return cfg.with_overrides(namespace=namespace, workers=workers, resync_period=resync_period)


def install_signal_handlers(stop_event: threading.Event) -> None:
    """Set ``stop_event`` on SIGINT and SIGTERM."""

    def _stop(signum: int, _frame: object) -> None:
        console.warning(f"Received {signal.Signals(signum).name}, finishing in-flight work")
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)


@click.command(help="Mount labelled Kubernetes secrets into deployments")
@click.option("--version", "-v", required=False, is_flag=True, help="print version")
@click.option("--debug", required=False, is_flag=True, help="print debug information")
@click.option("--select", required=False, is_flag=True, default=False, help="prompt for context select")
@click.option("--context", required=False, help="kubeconfig context to use")
@click.option("--kubeconfig", required=False, type=click.Path(dir_okay=False), help="path to kubeconfig file")
@click.option("--config", "-c", "config_file", required=False, type=click.Path(dir_okay=False), help="YAML settings file")
@click.option("--namespace", "-n", required=False, help="only watch this namespace")
@click.option("--workers", required=False, type=click.IntRange(min=1), help="number of worker threads")
@click.option("--resync-period", required=False, type=click.FloatRange(min=0), help="seconds between cache resyncs")
def cli(
    version: bool,
    debug: bool,
    select: bool,
    context: str | None,
    kubeconfig: str | None,
    config_file: str | None,
    namespace: str | None,
    workers: int | None,
    resync_period: float | None,
) -> None:
    """Process CLI arguments and run the controller.

    Args:
        version: Print version and exit.
        debug: Enable debug logging and output.
        select: Prompt for Kubernetes context selection.
        context: Kubeconfig context to use.
        kubeconfig: Path to a kubeconfig file.
        config_file: Path to the YAML settings file.
        namespace: Namespace to watch instead of the whole cluster.
        workers: Number of worker threads.
        resync_period: Seconds between cache resyncs.

    """
    if not debug:
        ic.disable()

    if version:
        click.echo(__version__)
        return

    console.setup_logging(debug=debug)
    cfg = build_config(config_file, namespace, workers, resync_period)
    ic(cfg)

    try:
        cluster = Cluster(select_context=select, context=context, kubeconfig=kubeconfig)
    except ClusterConnectionError as e:
        console.error(f"Cluster connection failed: {e}")
        sys.exit(1)

    console.summary_panel("secret-mounter", {"Context": cluster.context, **cfg.summary()})
    console.info("Press Ctrl+C to stop")

    ctx = ControllerContext.create(cfg, apps_api=cluster.apps_api(), core_api=cluster.core_api())
    stop_event = threading.Event()
    install_signal_handlers(stop_event)
    Controller(ctx).run(stop_event)
    console.success("Controller stopped")


if __name__ == "__main__":
    cli()
