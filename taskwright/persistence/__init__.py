"""Persistence layer for taskwright tasks, steps and transitions."""

from __future__ import annotations

import os
from typing import Optional

from ..config import TaskwrightConfig, load_config
from .inmemory import InMemoryTaskRepository
from .models import TaskRecord, TransitionRecord, WorkflowStep
from .repository import TaskRepository
from .sqlite import SQLiteTaskRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresTaskRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresTaskRepository = None  # type: ignore

_repository_instance: TaskRepository | None = None


def _repository_for_url(database_url: str) -> TaskRepository:
    scheme = database_url.split("://", 1)[0]
    if scheme == "sqlite":
        return SQLiteTaskRepository(database_url[len("sqlite://"):])
    if scheme in ("postgres", "postgresql"):
        if PostgresTaskRepository is None:
            raise RuntimeError("Postgres support not available")
        return PostgresTaskRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[TaskwrightConfig] = None
) -> TaskRepository:
    """Return the store that holds tasks, their steps and the transition log.

    The first of ``database_url``, ``TASKWRIGHT_DATABASE_URL``, ``DATABASE_URL``
    and ``config.database_url`` picks the backend: ``sqlite://<path>`` or a
    ``postgresql://`` DSN. Without any of them, task state lives in memory and
    is lost with the process. Calls without arguments share one instance so a
    dispatcher and a coordinator in the same process see the same tasks.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("TASKWRIGHT_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )
    _repository_instance = (
        _repository_for_url(database_url) if database_url else InMemoryTaskRepository()
    )
    return _repository_instance


def reset_repository() -> None:
    """Forget the cached repository instance."""
    global _repository_instance
    _repository_instance = None


__all__ = [
    "TaskRecord",
    "TransitionRecord",
    "WorkflowStep",
    "TaskRepository",
    "SQLiteTaskRepository",
    "PostgresTaskRepository",
    "InMemoryTaskRepository",
    "get_repository",
    "reset_repository",
]
