"""Entry point for the VIP allocator agent."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path
from threading import Event

from prometheus_client import start_http_server

from vip_allocator.hook import HookAllocator
from vip_allocator.kube import KubernetesStore
from vip_allocator.metrics import AllocatorMetrics
from vip_allocator.reconciler import ClusterReconciler

from .config import load_config
from .dispatcher import ReconcileDispatcher
from .server import HookServer
from .watchers import ClusterWatcher

LOG = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the Cluster API VIP allocator")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("/etc/capi-vip-allocator/config.yaml"),
        help="Path to the agent configuration file",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    config = load_config(args.config)
    store = KubernetesStore.from_config(
        kubeconfig=config.kubernetes.kubeconfig,
        in_cluster=config.kubernetes.in_cluster,
    )
    metrics = AllocatorMetrics()
    if config.metrics.enabled:
        start_http_server(config.metrics.port, registry=metrics.registry)
        LOG.info("metrics exposed on port %d", config.metrics.port)

    stop_event = Event()

    dispatcher = None
    watcher = None
    if config.reconciler.enabled:
        reconciler = ClusterReconciler(store, config.allocator, metrics)
        dispatcher = ReconcileDispatcher(
            reconciler.reconcile,
            stop_event,
            workers=config.reconciler.workers,
            retry_delay=config.allocator.requeue_delay,
            forget=reconciler.forget,
        )
        watcher = ClusterWatcher(
            store,
            dispatcher.handle,
            interval=config.reconciler.resync_interval,
            stop_event=stop_event,
        )
        dispatcher.start()
        watcher.start()
    else:
        LOG.info("background reconciler disabled")

    server = None
    if config.hook.enabled:
        allocator = HookAllocator(
            store,
            config.allocator,
            metrics,
            extension_name=config.hook.extension_name,
        )
        server = HookServer(allocator, port=config.hook.port, cert_dir=config.hook.cert_dir)
        server.start()
    else:
        LOG.info("runtime hooks disabled")

    if dispatcher is None and server is None:
        LOG.warning("reconciler and hooks both disabled; agent will idle")

    def _shutdown(signum, frame):  # pragma: no cover - signal handler
        LOG.info("received signal %s, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        while not stop_event.is_set():
            stop_event.wait(1.0)
    except KeyboardInterrupt:  # pragma: no cover - fallback if signal not set
        stop_event.set()

    if server is not None:
        server.shutdown()
    if dispatcher is not None:
        dispatcher.stop()
        dispatcher.join(timeout=5.0)
    if watcher is not None:
        watcher.join(timeout=5.0)

    LOG.info("VIP allocator stopped")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
