"""
Operator entry point.

Wires settings, logging, the Kubernetes clients and the reconciler together,
then runs the watch streams until SIGINT/SIGTERM.
"""
import asyncio
import sys

from kubedb_operator import __version__
from kubedb_operator.config.logging import configure_logging, get_logger
from kubedb_operator.config.settings import get_settings
from kubedb_operator.core.context import build_context
from kubedb_operator.core.reconciler import LifecycleReconciler
from kubedb_operator.services.kubernetes_client import load_client_set
from kubedb_operator.services.metrics import start_metrics_server
from kubedb_operator.utils.shutdown import ShutdownHandler
from kubedb_operator.workers.event_watcher import DatabaseWatcher
from kubedb_operator.workers.work_dispatcher import WorkDispatcher

logger = get_logger(__name__)


async def main() -> None:
    settings = get_settings()
    configure_logging(settings)

    logger.info(
        "operator_starting",
        version=__version__,
        environment=settings.environment,
        namespace=settings.watch_namespace or "<all>",
        max_concurrent_reconciles=settings.max_concurrent_reconciles,
    )

    shutdown = ShutdownHandler()
    shutdown.install(asyncio.get_running_loop())

    if settings.metrics_enabled:
        start_metrics_server(settings.metrics_port)

    client_set = await load_client_set(settings)
    try:
        ctx = build_context(client_set, settings, shutdown.shutdown_event)
        dispatcher = WorkDispatcher(LifecycleReconciler(ctx), settings, shutdown.shutdown_event)
        watcher = DatabaseWatcher(client_set, dispatcher, settings, shutdown.shutdown_event)

        watch_task = asyncio.create_task(watcher.start(), name="database-watcher")
        await shutdown.shutdown_event.wait()

        logger.info("operator_stopping", pending_work_items=dispatcher.pending)
        await watcher.stop()
        await asyncio.gather(watch_task, return_exceptions=True)
        # Running items observe the shutdown event and return promptly.
        await dispatcher.drain()
    finally:
        await client_set.close()
        logger.info("operator_stopped")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("operator_interrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
