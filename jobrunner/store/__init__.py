"""
Job store implementations.
"""

from jobrunner.store.base import JobStore
from jobrunner.store.memory import InMemoryJobStore
from jobrunner.store.sql import SqlJobStore

__all__ = ["JobStore", "InMemoryJobStore", "SqlJobStore"]
