"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from jobrunner.observability.logging import (
    bind_context,
    job_log_context,
    setup_logging,
)
from jobrunner.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from jobrunner.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "bind_context",
    "job_log_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
]
