"""
Built-in job handlers.

Job handlers must be idempotent - they may be executed multiple times
for the same job in case of worker crashes or lease expiry.
"""

import asyncio
import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field

from jobrunner.exceptions import JobCancelledError
from jobrunner.types.job import JobContext, JobResult
from jobrunner.worker.registry import HandlerRegistry

logger = logging.getLogger(__name__)


class SendEmailPayload(BaseModel):
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+$")
    subject: str | None = None
    body: str | None = None


class SleepPayload(BaseModel):
    duration_seconds: float = Field(default=1.0, ge=0, le=3600)
    checkpoint_interval: float = Field(default=1.0, gt=0)


class HttpRequestPayload(BaseModel):
    url: str
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout_seconds: float = Field(default=30.0, gt=0)


async def handle_send_email(context: JobContext) -> JobResult:
    """
    Demo email job.

    Only logs the delivery; a real implementation would call a mail
    provider with the job id as the dedupe key.
    """
    payload: SendEmailPayload = context.payload
    logger.info(
        f"Sending email to {payload.email}",
        extra={"job_id": str(context.job_id), "attempt": context.attempt}
    )
    return JobResult(success=True, output={"delivered_to": payload.email})


async def handle_echo(context: JobContext) -> JobResult:
    """
    Echo handler for testing.

    Simply returns the input payload as output.
    """
    return JobResult(success=True, output={"echo": context.payload})


async def handle_sleep(context: JobContext) -> JobResult:
    """
    Sleep in steps, honouring cancellation between steps.

    Useful for exercising lease heartbeats and cooperative cancellation.
    """
    payload: SleepPayload = context.payload
    elapsed = 0.0
    while elapsed < payload.duration_seconds:
        if await context.cancellation_requested():
            raise JobCancelledError(f"Cancelled after {elapsed:.1f}s")
        step = min(payload.checkpoint_interval, payload.duration_seconds - elapsed)
        await asyncio.sleep(step)
        elapsed += step

    return JobResult(success=True, output={"slept_for": payload.duration_seconds})


async def handle_failing_job(context: JobContext) -> JobResult:
    """
    Handler that always fails - for testing retry logic.
    """
    return JobResult(
        success=False,
        error=f"Intentional failure on attempt {context.attempt}",
    )


async def handle_http_request(context: JobContext) -> JobResult:
    """
    Make an HTTP request.

    5xx responses and transport errors are reported as failures so they
    are retried; everything else succeeds.
    """
    payload: HttpRequestPayload = context.payload
    method = payload.method.upper()

    logger.info(
        "HTTP request job",
        extra={"job_id": str(context.job_id), "method": method, "url": payload.url}
    )

    try:
        async with httpx.AsyncClient(timeout=payload.timeout_seconds) as client:
            response = await client.request(
                method=method,
                url=payload.url,
                headers=payload.headers,
                json=payload.body if method in ("POST", "PUT", "PATCH") else None,
            )
    except httpx.HTTPError as e:
        return JobResult(success=False, error=f"HTTP request failed: {e}")

    return JobResult(
        success=response.status_code < 500,
        output={
            "status_code": response.status_code,
            "body": response.text[:1000],
        },
        error=None if response.status_code < 500 else f"HTTP {response.status_code}",
    )


def register_builtin_handlers(registry: HandlerRegistry) -> HandlerRegistry:
    """Register the built-in job types on a registry."""
    registry.register("send-email", handle_send_email, payload_model=SendEmailPayload)
    registry.register("echo", handle_echo)
    registry.register("sleep", handle_sleep, payload_model=SleepPayload)
    registry.register("failing-job", handle_failing_job)
    registry.register(
        "http-request",
        handle_http_request,
        payload_model=HttpRequestPayload,
        max_attempts=5,
    )
    return registry
