"""
API routes module.
"""

from delayed.api.routes.auth import router as auth_router
from delayed.api.routes.health import router as health_router
from delayed.api.routes.jobs import router as jobs_router
from delayed.api.routes.workers import router as workers_router

__all__ = ["jobs_router", "workers_router", "auth_router", "health_router"]
