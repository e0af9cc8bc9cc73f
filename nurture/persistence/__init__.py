"""Persistence layer for nurture workflows and executions."""

from __future__ import annotations

import os
from typing import Optional

from ..config import NurtureConfig, load_config
from .inmemory import InMemoryExecutionStore
from .models import (
    ACTIVE_STATUSES,
    Execution,
    ExecutionLogEntry,
    ExecutionStatus,
    LogOutcome,
)
from .repository import BaseExecutionStore, ExecutionStore, Lease
from .sqlite import SQLiteExecutionStore


def get_store(
    database_url: Optional[str] = None, config: Optional[NurtureConfig] = None
) -> ExecutionStore:
    """Factory function to build an execution store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``NURTURE_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned. Every call builds a new
    instance; callers hand it to the engine and scheduler.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("NURTURE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryExecutionStore()

    if database_url.startswith("sqlite://"):
        return SQLiteExecutionStore(database_url.replace("sqlite://", "", 1))
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        from .postgres import PostgresExecutionStore

        return PostgresExecutionStore(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "ACTIVE_STATUSES",
    "BaseExecutionStore",
    "Execution",
    "ExecutionLogEntry",
    "ExecutionStatus",
    "ExecutionStore",
    "InMemoryExecutionStore",
    "Lease",
    "LogOutcome",
    "SQLiteExecutionStore",
    "get_store",
]
