"""
Producer: the submission side of the job queue.
"""

import logging
from datetime import timedelta
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from jobrunner.constants import DEFAULT_PRIORITY
from jobrunner.queue.service import JobQueue
from jobrunner.worker.registry import HandlerRegistry

logger = logging.getLogger(__name__)


class Producer:
    """
    Submits jobs to a queue.

    Payloads of registered types that declare a schema are validated up
    front, so a malformed job is rejected at submit time instead of being
    dead-lettered later. Types with no registered handler are accepted;
    a worker dead-letters them when it leases one.
    """

    def __init__(self, queue: JobQueue, registry: HandlerRegistry | None = None):
        self.queue = queue
        self.registry = registry

    async def submit(
        self,
        job_type: str,
        payload: dict[str, Any] | BaseModel,
        *,
        max_attempts: int | None = None,
        priority: int | None = None,
        delay: float | timedelta | None = None,
        idempotency_key: str | None = None,
    ) -> UUID:
        """
        Submit a job.

        Args:
            job_type: Handler selector.
            payload: Job data, as a dict or a payload model instance.
            max_attempts: Attempt budget. Defaults to the type's registered
                budget, then to the queue default.
            priority: Higher values are leased first.
            delay: Seconds (or a timedelta) before the job becomes eligible.
            idempotency_key: Reusing a key returns the original job's id.

        Returns:
            The job id.

        Raises:
            PayloadValidationError: If the payload does not fit the type's schema.
            StoreUnavailableError: If the job store cannot be reached.
        """
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")

        if self.registry is not None and self.registry.is_registered(job_type):
            self.registry.validate(job_type, payload)
            if max_attempts is None:
                max_attempts = self.registry.default_max_attempts(job_type)
        elif self.registry is not None:
            logger.warning(
                "Submitting job with no registered handler",
                extra={"job_type": job_type}
            )

        job = await self.queue.enqueue(
            job_type,
            payload,
            max_attempts=max_attempts,
            priority=priority if priority is not None else DEFAULT_PRIORITY,
            delay=delay,
            idempotency_key=idempotency_key,
        )
        return job.id
