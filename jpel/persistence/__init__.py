"""Persistence layer for process definitions and instances."""

from __future__ import annotations

import os
from typing import Optional, Tuple

from ..config import JpelConfig, load_config
from .inmemory import InMemoryProcessDefinitionRepository, InMemoryProcessInstanceRepository
from .repository import ProcessDefinitionRepository, ProcessInstanceRepository
from .sqlite import SQLiteProcessDefinitionRepository, SQLiteProcessInstanceRepository

Repositories = Tuple[ProcessDefinitionRepository, ProcessInstanceRepository]

_repositories: Repositories | None = None


def get_repositories(
    database_url: Optional[str] = None, config: Optional[JpelConfig] = None
) -> Repositories:
    """Factory function to obtain the definition and instance repositories.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``JPEL_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, in-memory repositories are returned.
    """

    global _repositories
    if _repositories is not None and database_url is None and config is None:
        return _repositories

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("JPEL_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repositories = (
            InMemoryProcessDefinitionRepository(),
            InMemoryProcessInstanceRepository(),
        )
    elif database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repositories = (
            SQLiteProcessDefinitionRepository(path),
            SQLiteProcessInstanceRepository(path),
        )
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repositories


def reset_repositories() -> None:
    """Forget the cached repositories."""
    global _repositories
    _repositories = None


__all__ = [
    "ProcessDefinitionRepository",
    "ProcessInstanceRepository",
    "InMemoryProcessDefinitionRepository",
    "InMemoryProcessInstanceRepository",
    "SQLiteProcessDefinitionRepository",
    "SQLiteProcessInstanceRepository",
    "get_repositories",
    "reset_repositories",
]
