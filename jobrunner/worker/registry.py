"""
Handler registry.

Maps a job type to the function that executes it, plus an optional
pydantic model describing that type's payload. Job payloads therefore form
a tagged union keyed by type, validated here rather than trusted blindly.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from jobrunner.exceptions import HandlerNotFoundError, PayloadValidationError
from jobrunner.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

HandlerOutput = JobResult | dict[str, Any] | None

# Handlers may be coroutine functions or plain functions (run in a thread)
JobHandler = Callable[[JobContext], Awaitable[HandlerOutput] | HandlerOutput]


@dataclass(frozen=True)
class HandlerSpec:
    """A registered handler and its per-type settings."""

    job_type: str
    handler: JobHandler
    payload_model: type[BaseModel] | None = None
    max_attempts: int | None = None


class HandlerRegistry:
    """
    Registry of job handlers keyed by job type.

    Example:
        registry = HandlerRegistry()

        @registry.handler("send-email", payload_model=SendEmailPayload)
        async def send_email(context: JobContext) -> JobResult:
            ...
    """

    def __init__(self) -> None:
        self._handlers: dict[str, HandlerSpec] = {}
        self._frozen = False

    def register(
        self,
        job_type: str,
        handler: JobHandler,
        *,
        payload_model: type[BaseModel] | None = None,
        max_attempts: int | None = None,
    ) -> None:
        """
        Register a handler for a job type, replacing any previous one.

        Args:
            job_type: The job type this handler processes.
            handler: Callable taking a JobContext.
            payload_model: Optional schema the payload must satisfy.
            max_attempts: Default attempt budget for jobs of this type.
        """
        if self._frozen:
            raise RuntimeError(f"Cannot register '{job_type}': handler registry is frozen")
        if max_attempts is not None and max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self._handlers[job_type] = HandlerSpec(
            job_type=job_type,
            handler=handler,
            payload_model=payload_model,
            max_attempts=max_attempts,
        )
        logger.debug(f"Registered handler for job type: {job_type}")

    def handler(
        self,
        job_type: str,
        *,
        payload_model: type[BaseModel] | None = None,
        max_attempts: int | None = None,
    ) -> Callable[[JobHandler], JobHandler]:
        """Decorator form of register()."""
        def decorator(fn: JobHandler) -> JobHandler:
            self.register(
                job_type, fn, payload_model=payload_model, max_attempts=max_attempts
            )
            return fn
        return decorator

    def resolve(self, job_type: str) -> HandlerSpec:
        """
        Look up the handler for a job type.

        Raises:
            HandlerNotFoundError: If nothing is registered for the type.
        """
        spec = self._handlers.get(job_type)
        if spec is None:
            raise HandlerNotFoundError(job_type)
        return spec

    def is_registered(self, job_type: str) -> bool:
        return job_type in self._handlers

    def validate(self, job_type: str, payload: dict[str, Any]) -> Any:
        """
        Validate a payload against the type's schema.

        Returns:
            The parsed model instance, or the raw payload for types without
            a schema.

        Raises:
            HandlerNotFoundError: If the type is unknown.
            PayloadValidationError: If the payload does not fit the schema.
        """
        spec = self.resolve(job_type)
        if spec.payload_model is None:
            return payload
        try:
            return spec.payload_model.model_validate(payload)
        except ValidationError as e:
            raise PayloadValidationError(job_type, str(e)) from e

    def default_max_attempts(self, job_type: str) -> int | None:
        spec = self._handlers.get(job_type)
        return spec.max_attempts if spec is not None else None

    def list_types(self) -> list[str]:
        """List all registered job types."""
        return list(self._handlers.keys())

    def freeze(self) -> None:
        """Prevent further registrations."""
        self._frozen = True
