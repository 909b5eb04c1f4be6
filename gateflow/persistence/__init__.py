"""Audit persistence for gateflow runs."""

from __future__ import annotations

import os
from typing import Optional

from ..config import GateflowConfig, load_config
from .inmemory import InMemoryRunRepository
from .models import RunRecord, StepRecord
from .repository import RunRepository
from .sqlite import SQLiteRunRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresRunRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresRunRepository = None  # type: ignore

_repository_instance: RunRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[GateflowConfig] = None
) -> RunRepository:
    """Factory function to obtain a run repository.

    The backend is selected from ``database_url``, which can be given
    explicitly, via ``GATEFLOW_DATABASE_URL`` or ``DATABASE_URL``, or from the
    loaded configuration. Without a database the process-wide in-memory
    repository is used, created on first need.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("GATEFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        if not isinstance(_repository_instance, InMemoryRunRepository):
            _repository_instance = InMemoryRunRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteRunRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresRunRepository is None:
            raise RuntimeError("Postgres support not available")
        _repository_instance = PostgresRunRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "RunRecord",
    "StepRecord",
    "RunRepository",
    "SQLiteRunRepository",
    "PostgresRunRepository",
    "InMemoryRunRepository",
    "get_repository",
]
