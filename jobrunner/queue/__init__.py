"""
Queue module.
Contains the job queue state machine and the retry backoff policy.
"""

from jobrunner.queue.backoff import BackoffPolicy
from jobrunner.queue.service import JobQueue

__all__ = ["JobQueue", "BackoffPolicy"]
