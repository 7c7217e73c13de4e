#!/usr/bin/env python3
"""
Demo - enqueue a send-email job and process it once.

Runs the whole lifecycle in one process against the configured database
(DATABASE_URL), or a local SQLite file when none is set:

    python scripts/seed_demo.py
    python scripts/seed_demo.py --email someone@example.com --no-process

The job uses a fixed idempotency key, so running the script repeatedly
does not pile up duplicate demo jobs.
"""

import argparse
import asyncio
import logging
import os

from jobrunner.observability.logging import setup_logging
from jobrunner.system import JobSystem
from jobrunner.worker.pool import WorkerPool

logger = logging.getLogger("seed_demo")

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./jobrunner-demo.db"
DEMO_IDEMPOTENCY_KEY = "demo-send-email"


async def seed_demo(email: str, process: bool) -> None:
    """Enqueue the demo job and optionally run one worker cycle."""
    database_url = None if "DATABASE_URL" in os.environ else DEFAULT_DATABASE_URL

    async with JobSystem(database_url=database_url) as system:
        job_id = await system.producer.submit(
            "send-email",
            {"email": email, "subject": "Welcome"},
            idempotency_key=DEMO_IDEMPOTENCY_KEY,
        )
        job = await system.queue.get(job_id)
        logger.info(
            "Demo job enqueued",
            extra={"job_id": str(job_id), "state": job.state.value}
        )

        if process:
            pool = WorkerPool(system.queue, system.registry, settings=system.settings)
            processed = await pool.run_once(worker_id="demo-worker")
            if processed is None:
                logger.info("Nothing to process (demo job already handled)")
            else:
                logger.info(
                    "Demo job processed",
                    extra={
                        "job_id": str(processed.id),
                        "state": processed.state.value,
                        "attempts": processed.attempts,
                        "result": processed.result,
                    }
                )

        stats = await system.queue.stats()
        logger.info("Queue stats", extra={"depth_by_state": stats.depth_by_state})


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--email", default="user@example.com")
    parser.add_argument(
        "--no-process",
        dest="process",
        action="store_false",
        help="Only enqueue; leave the job for a running worker",
    )
    args = parser.parse_args()

    setup_logging(log_format="console")
    asyncio.run(seed_demo(args.email, args.process))


if __name__ == "__main__":
    main()
