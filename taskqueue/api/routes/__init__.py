"""
API routes module.
"""

from taskqueue.api.routes.admin import router as admin_router
from taskqueue.api.routes.health import router as health_router
from taskqueue.api.routes.jobs import router as jobs_router
from taskqueue.api.routes.tick import router as tick_router

__all__ = ["jobs_router", "tick_router", "admin_router", "health_router"]
