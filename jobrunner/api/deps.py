"""
FastAPI dependencies.
"""

from typing import Annotated

from fastapi import Depends, Request

from jobrunner.system import JobSystem


def get_system(request: Request) -> JobSystem:
    """Return the JobSystem owned by the running application."""
    return request.app.state.system


# Type alias for dependency injection
System = Annotated[JobSystem, Depends(get_system)]
