"""Persistence layer for workflow state and worker health."""

from __future__ import annotations

import os
from typing import Optional

from ..config import AgentCoordConfig, load_config
from .inmemory import InMemoryStateStore, InMemoryWorkerHealthStore
from .models import (
    TERMINAL_STATUSES,
    HistoryEntry,
    WorkerRecord,
    WorkerStatus,
    WorkflowStateRecord,
)
from .postgres import PostgresStateStore
from .repository import StateStore, WorkerHealthStore
from .sqlite import SQLiteStateStore


def get_state_store(
    database_url: Optional[str] = None, config: Optional[AgentCoordConfig] = None
) -> StateStore:
    """Build a workflow state store.

    The backend is selected from ``database_url``, then the
    ``AGENTCOORD_DATABASE_URL`` or ``DATABASE_URL`` environment variables,
    then loaded configuration. Without a database an in-memory store is
    returned. Every call returns a new store.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("AGENTCOORD_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryStateStore()
    if database_url.startswith("sqlite://"):
        return SQLiteStateStore(database_url.replace("sqlite://", "", 1))
    if database_url.startswith(("postgres://", "postgresql://")):
        return PostgresStateStore(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def _async_sql_url(database_url: str) -> str:
    if database_url.startswith("sqlite://") and "+" not in database_url.split("://")[0]:
        return "sqlite+aiosqlite://" + database_url[len("sqlite://") :]
    for prefix in ("postgres://", "postgresql://"):
        if database_url.startswith(prefix):
            return "postgresql+asyncpg://" + database_url[len(prefix) :]
    return database_url


def get_health_store(
    database_url: Optional[str] = None, config: Optional[AgentCoordConfig] = None
) -> WorkerHealthStore:
    """Build a worker health store from ``AGENTCOORD_HEALTH_DATABASE_URL`` or config."""

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("AGENTCOORD_HEALTH_DATABASE_URL")
        or config.health_database_url
    )
    if not database_url:
        return InMemoryWorkerHealthStore()

    from ..db import WorkerHealthDB

    return WorkerHealthDB(_async_sql_url(database_url))


__all__ = [
    "TERMINAL_STATUSES",
    "HistoryEntry",
    "WorkerRecord",
    "WorkerStatus",
    "WorkflowStateRecord",
    "StateStore",
    "WorkerHealthStore",
    "InMemoryStateStore",
    "InMemoryWorkerHealthStore",
    "SQLiteStateStore",
    "PostgresStateStore",
    "get_state_store",
    "get_health_store",
]
