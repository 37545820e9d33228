"""
API module.
Contains FastAPI application, routes, and auth dependencies.
"""

from taskqueue.api.main import create_app, run

__all__ = ["create_app", "run"]
