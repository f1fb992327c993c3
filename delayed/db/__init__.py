"""
Database module.
Contains database connection, models, and repository implementations.
"""

from delayed.db.connection import (
    close_db,
    create_engine_for_url,
    create_session_factory,
    get_async_session,
    get_engine,
    get_session_context,
    get_session_factory,
    init_db,
)
from delayed.db.models import Base, DelayedJob

__all__ = [
    "get_async_session",
    "get_session_context",
    "get_session_factory",
    "get_engine",
    "create_engine_for_url",
    "create_session_factory",
    "init_db",
    "close_db",
    "DelayedJob",
    "Base",
]
