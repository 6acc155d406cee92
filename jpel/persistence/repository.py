"""Repository abstractions for definitions and instances."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Optional, Protocol

from ..models import (
    ProcessDefinition,
    ProcessInstance,
    ProcessStatus,
    ProcessSummary,
)


class ProcessDefinitionRepository(Protocol):
    """Protocol for process definition stores."""

    async def save(self, definition: ProcessDefinition) -> None:
        """Insert or replace a definition."""

    async def find_by_id(self, process_id: str) -> ProcessDefinition | None:
        """Retrieve a definition by id."""

    async def find_all(self) -> list[ProcessDefinition]:
        """Return every stored definition."""

    async def delete(self, process_id: str) -> bool:
        """Delete a definition, returning ``True`` if it existed."""

    async def exists(self, process_id: str) -> bool:
        """Return ``True`` if a definition with this id is stored."""

    async def find_by_name(self, name: str) -> list[ProcessDefinition]:
        """Definitions whose name contains ``name`` (case-insensitive)."""

    async def find_by_version(self, version: str) -> list[ProcessDefinition]:
        """Definitions with exactly this version."""

    async def count(self) -> int:
        """Number of stored definitions."""

    async def clear(self) -> None:
        """Remove every definition."""

    async def list_available_templates(self) -> list[ProcessSummary]:
        """Lightweight summaries for listings."""


class ProcessInstanceRepository(Protocol):
    """Protocol for process instance stores."""

    async def save(self, instance: ProcessInstance) -> None:
        """Insert or replace an instance."""

    async def find_by_id(self, instance_id: str) -> ProcessInstance | None:
        """Retrieve an instance by id."""

    async def find_all(self) -> list[ProcessInstance]:
        """Return every stored instance."""

    async def delete(self, instance_id: str) -> bool:
        """Delete an instance, returning ``True`` if it existed."""

    async def exists(self, instance_id: str) -> bool:
        """Return ``True`` if the instance is stored."""

    async def find_by_status(self, status: ProcessStatus) -> list[ProcessInstance]:
        """Instances currently in ``status``."""

    async def find_by_process_id(self, process_id: str) -> list[ProcessInstance]:
        """Instances created from one definition."""

    async def find_by_process_id_and_status(
        self, process_id: str, status: ProcessStatus
    ) -> list[ProcessInstance]:
        """Instances of one definition in ``status``."""

    async def find_by_date_range(self, start: datetime, end: datetime) -> list[ProcessInstance]:
        """Instances started within ``[start, end]``."""

    async def find_active_older_than(self, age: timedelta) -> list[ProcessInstance]:
        """Running instances started more than ``age`` ago."""

    async def find_waiting_for_human_task(self) -> list[ProcessInstance]:
        """Running instances whose current activity is a human task."""

    async def find_by_current_activity(self, activity_id: str) -> list[ProcessInstance]:
        """Instances currently pointing at ``activity_id``."""

    async def count(self) -> int:
        """Number of stored instances."""

    async def count_by_status(self) -> Dict[str, int]:
        """Instance counts keyed by status value."""

    async def count_by_process_id(self, process_id: str) -> int:
        """Number of instances of one definition."""

    async def get_average_execution_time(self) -> Optional[float]:
        """Mean seconds from start to completion over completed instances."""

    async def delete_completed_older_than(self, age: timedelta) -> int:
        """Delete finished instances completed more than ``age`` ago."""

    async def clear(self) -> None:
        """Remove every instance."""
