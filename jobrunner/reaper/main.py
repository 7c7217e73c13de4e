"""
Lease reaper for recovering expired job leases.

The reaper runs periodically to find jobs with expired leases and return
them to the queue, and to promote retries whose backoff has elapsed. This
handles worker crashes and ensures at-least-once delivery.
"""

import asyncio
import logging
import signal

from jobrunner.config import get_settings
from jobrunner.exceptions import StoreUnavailableError
from jobrunner.observability.logging import setup_logging
from jobrunner.observability.metrics import setup_metrics
from jobrunner.observability.tracing import setup_tracing
from jobrunner.queue.service import JobQueue

logger = logging.getLogger(__name__)


class Reaper:
    """
    Lease reaper that recovers expired job leases.

    Runs periodically to:
    1. Return LEASED/RUNNING jobs with an expired lease to PENDING
       (or dead-letter / cancel them, see JobQueue.reclaim_expired)
    2. Promote RETRYING jobs whose backoff elapsed to PENDING
    """

    def __init__(self, queue: JobQueue, interval_seconds: float | None = None):
        """
        Initialize the reaper.

        Args:
            queue: The queue to maintain.
            interval_seconds: Seconds between reaper runs.
        """
        self.queue = queue
        self.interval = interval_seconds or get_settings().reaper_interval_seconds
        self._stopped = asyncio.Event()

    async def start(self) -> None:
        """Run the reaper loop until stop() is called."""
        logger.info(f"Reaper starting with interval {self.interval}s")
        self._stopped.clear()

        while not self._stopped.is_set():
            try:
                reclaimed = await self.run_once()
                if reclaimed > 0:
                    logger.info(f"Recovered {reclaimed} expired leases")
            except StoreUnavailableError as e:
                logger.warning(f"Job store unavailable in reaper loop: {e}")
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            try:
                await asyncio.wait_for(self._stopped.wait(), self.interval)
            except TimeoutError:
                pass

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._stopped.set()

    async def run_once(self) -> int:
        """
        Run one reclaim cycle (for testing or cron-style execution).

        Returns:
            Number of jobs reclaimed.
        """
        now = self.queue.now()
        reclaimed = await self.queue.reclaim_expired(now)
        await self.queue.promote_due_retries(now)
        await self.queue.stats()
        return reclaimed


async def run_async() -> None:
    """Run a standalone reaper process."""
    from jobrunner.system import JobSystem

    setup_logging()
    setup_tracing()
    setup_metrics()

    system = JobSystem()
    await system.init()

    reaper = Reaper(system.queue)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(reaper.stop())
        )

    try:
        await reaper.start()
    finally:
        await system.shutdown()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
