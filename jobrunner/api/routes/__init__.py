"""
API routes module.
"""

from jobrunner.api.routes.health import router as health_router
from jobrunner.api.routes.jobs import router as jobs_router

__all__ = ["jobs_router", "health_router"]
