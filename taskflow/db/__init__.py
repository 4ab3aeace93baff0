"""
Database module.
Contains database connection, models, and repository implementations.
"""

from taskflow.db.connection import (
    close_db,
    create_session_factory,
    get_engine,
    init_db,
    session_scope,
)
from taskflow.db.models import Base, Task
from taskflow.db.repository import TaskRepository

__all__ = [
    "get_engine",
    "create_session_factory",
    "session_scope",
    "init_db",
    "close_db",
    "Task",
    "Base",
    "TaskRepository",
]
