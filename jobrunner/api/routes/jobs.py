"""
Job management routes.
"""

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Header, Query, status

from jobrunner.api.deps import System
from jobrunner.constants import API_V1_PREFIX, IDEMPOTENCY_KEY_HEADER, JobState
from jobrunner.types.api import (
    JobListResponse,
    JobResponse,
    QueueStatsResponse,
    RetryJobRequest,
    SubmitJobRequest,
    SubmitJobResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/jobs", tags=["Jobs"])


@router.post(
    "",
    response_model=SubmitJobResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a job",
    description="Submit a new job to the queue. An optional idempotency key prevents duplicates.",
)
async def submit_job(
    request: SubmitJobRequest,
    system: System,
    idempotency_key: Annotated[str | None, Header(alias=IDEMPOTENCY_KEY_HEADER)] = None,
) -> SubmitJobResponse:
    """
    Submit a new job.

    If a job with the same idempotency key exists, returns the existing job.

    Args:
        request: Job submission request.
        system: The job system.
        idempotency_key: Optional dedupe key.

    Returns:
        SubmitJobResponse with the job id and state.
    """
    existing = None
    if idempotency_key is not None:
        existing = await system.store.get_by_idempotency_key(idempotency_key)

    job_id = await system.producer.submit(
        request.type,
        request.payload,
        max_attempts=request.max_attempts,
        priority=request.priority,
        delay=request.delay_seconds,
        idempotency_key=idempotency_key,
    )
    job = await system.queue.get(job_id)

    return SubmitJobResponse(
        id=job.id,
        status=job.state,
        message="Job accepted" if existing is None else "Job already exists (idempotent)",
    )


@router.get(
    "",
    response_model=JobListResponse,
    summary="List jobs",
    description="List jobs, newest first, with optional filtering.",
)
async def list_jobs(
    system: System,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    state: JobState | None = Query(default=None),
    job_type: str | None = Query(default=None, alias="type"),
) -> JobListResponse:
    offset = (page - 1) * page_size
    jobs, total = await system.queue.list_jobs(
        state=state,
        job_type=job_type,
        limit=page_size,
        offset=offset,
    )

    return JobListResponse(
        jobs=[JobResponse.from_record(job) for job in jobs],
        total=total,
        page=page,
        page_size=page_size,
        has_next=(page * page_size) < total,
    )


@router.get(
    "/stats/summary",
    response_model=QueueStatsResponse,
    summary="Get queue statistics",
    description="Queue depth per state, active leases and dead-letter count.",
)
async def get_queue_stats(system: System) -> QueueStatsResponse:
    stats = await system.queue.stats()
    return QueueStatsResponse(
        depth_by_state=stats.depth_by_state,
        active_leases=stats.active_leases,
        dead_lettered=stats.dead_lettered,
    )


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
    description="Get detailed information about a specific job.",
)
async def get_job(job_id: UUID, system: System) -> JobResponse:
    """
    Get job details by ID.

    Raises:
        JobNotFoundError: Mapped to 404.
    """
    job = await system.queue.get(job_id)
    return JobResponse.from_record(job)


@router.post(
    "/{job_id}/cancel",
    response_model=JobResponse,
    summary="Cancel a job",
    description=(
        "Cancel a pending or retrying job. Leased and running jobs are flagged "
        "and stop at the handler's next cancellation check."
    ),
)
async def cancel_job(job_id: UUID, system: System) -> JobResponse:
    job = await system.queue.cancel(job_id)
    logger.info(
        "Job cancel requested via API",
        extra={"job_id": str(job_id), "state": job.state.value}
    )
    return JobResponse.from_record(job)


@router.post(
    "/{job_id}/retry",
    response_model=JobResponse,
    summary="Retry a dead-lettered job",
    description="Move a dead-lettered job back to pending.",
)
async def retry_job(
    job_id: UUID,
    system: System,
    request: RetryJobRequest | None = None,
) -> JobResponse:
    """
    Retry a job from the dead letter.

    Raises:
        JobNotFoundError: Mapped to 404.
        InvalidStateError: Mapped to 409 when the job is not dead-lettered.
    """
    request = request or RetryJobRequest()
    job = await system.queue.retry_dead_lettered(
        job_id, reset_attempts=request.reset_attempts
    )
    return JobResponse.from_record(job)
