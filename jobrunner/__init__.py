"""
jobrunner

A durable background job queue with lease-based workers: retry with backoff,
dead-lettering, crash recovery through lease expiry, idempotent submission
and observability.
"""

__version__ = "1.0.0"
