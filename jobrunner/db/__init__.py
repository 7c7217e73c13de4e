"""
Database module.
Contains database connection, models, and repository implementations.
"""

from jobrunner.db.connection import Database
from jobrunner.db.models import Base, Job
from jobrunner.db.repository import JobRepository

__all__ = [
    "Database",
    "Job",
    "Base",
    "JobRepository",
]
