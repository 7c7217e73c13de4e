"""
Worker process for executing jobs.

Builds a JobSystem from settings and runs a WorkerPool until SIGTERM or
SIGINT, then lets in-flight jobs finish before exiting.
"""

import asyncio
import logging
import signal

from jobrunner.observability.logging import bind_context, setup_logging
from jobrunner.observability.metrics import setup_metrics
from jobrunner.observability.tracing import instrument_sqlalchemy, setup_tracing
from jobrunner.system import JobSystem
from jobrunner.worker.pool import WorkerPool

logger = logging.getLogger(__name__)


async def run_async() -> None:
    """Run the worker asynchronously."""
    setup_logging()
    setup_tracing()
    setup_metrics()

    system = JobSystem()
    await system.init()
    if system.database is not None:
        instrument_sqlalchemy(system.database.engine.sync_engine)
    system.registry.freeze()

    pool = WorkerPool(system.queue, system.registry, settings=system.settings)
    bind_context(pool=pool.name)

    # Handle shutdown signals
    shutdown_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown_requested.set)

    try:
        await pool.start()
        await shutdown_requested.wait()
        logger.info("Shutdown signal received")
    finally:
        await pool.stop()
        await system.shutdown()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
