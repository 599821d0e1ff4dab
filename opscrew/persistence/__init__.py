"""Persistence layer for opscrew engine state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import OpsCrewConfig, load_config
from .inmemory import InMemoryRepository
from .repository import (
    AgentRepository,
    AuditLogRepository,
    ExecutionRepository,
    StateRepository,
    WorkflowRepository,
)
from .sqlite import SQLiteRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresRepository = None  # type: ignore

_repository_instance: StateRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[OpsCrewConfig] = None
) -> StateRepository:
    """Factory function to obtain a state repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``OPSCREW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("OPSCREW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresRepository is None:
            raise RuntimeError("Postgres support not available")
        _repository_instance = PostgresRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "AgentRepository",
    "AuditLogRepository",
    "ExecutionRepository",
    "WorkflowRepository",
    "StateRepository",
    "InMemoryRepository",
    "SQLiteRepository",
    "PostgresRepository",
    "get_repository",
]
