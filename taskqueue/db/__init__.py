"""
Database module.
Contains database connection, models, and repository implementations.
"""

from taskqueue.db.connection import (
    close_db,
    create_engine_for_url,
    create_session_factory,
    create_tables,
    get_engine,
    init_db,
    session_scope,
)
from taskqueue.db.models import Base, CacheEntry, DeadLetter, Job

__all__ = [
    "session_scope",
    "get_engine",
    "create_engine_for_url",
    "create_session_factory",
    "create_tables",
    "init_db",
    "close_db",
    "Job",
    "DeadLetter",
    "CacheEntry",
    "Base",
]
