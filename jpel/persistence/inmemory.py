"""In-memory implementations of the process repositories."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Optional

from ..models import (
    ActivityStatus,
    HumanActivityInstance,
    ProcessDefinition,
    ProcessInstance,
    ProcessStatus,
    ProcessSummary,
    utcnow,
)
from .repository import ProcessDefinitionRepository, ProcessInstanceRepository

FINISHED = (ProcessStatus.COMPLETED, ProcessStatus.FAILED, ProcessStatus.CANCELLED)


def is_waiting_for_human_task(instance: ProcessInstance) -> bool:
    if instance.status != ProcessStatus.RUNNING or not instance.current_activity:
        return False
    activity = instance.activity(instance.current_activity)
    return (
        isinstance(activity, HumanActivityInstance)
        and activity.status == ActivityStatus.RUNNING
    )


def average_execution_time(instances: list[ProcessInstance]) -> Optional[float]:
    durations = [
        (instance.completed_at - instance.started_at).total_seconds()
        for instance in instances
        if instance.status == ProcessStatus.COMPLETED and instance.completed_at
    ]
    if not durations:
        return None
    return sum(durations) / len(durations)


class InMemoryProcessDefinitionRepository(ProcessDefinitionRepository):
    """Store definitions in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, ProcessDefinition] = {}

    async def save(self, definition: ProcessDefinition) -> None:
        self._definitions[definition.id] = definition.model_copy(deep=True)

    async def find_by_id(self, process_id: str) -> ProcessDefinition | None:
        definition = self._definitions.get(process_id)
        return definition.model_copy(deep=True) if definition else None

    async def find_all(self) -> list[ProcessDefinition]:
        return [d.model_copy(deep=True) for d in self._definitions.values()]

    async def delete(self, process_id: str) -> bool:
        return self._definitions.pop(process_id, None) is not None

    async def exists(self, process_id: str) -> bool:
        return process_id in self._definitions

    async def find_by_name(self, name: str) -> list[ProcessDefinition]:
        needle = name.lower()
        return [d for d in await self.find_all() if needle in d.name.lower()]

    async def find_by_version(self, version: str) -> list[ProcessDefinition]:
        return [d for d in await self.find_all() if d.version == version]

    async def count(self) -> int:
        return len(self._definitions)

    async def clear(self) -> None:
        self._definitions.clear()

    async def list_available_templates(self) -> list[ProcessSummary]:
        return [d.summary() for d in self._definitions.values()]


class InMemoryProcessInstanceRepository(ProcessInstanceRepository):
    """Store instances in local memory.

    Instances are copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self._instances: Dict[str, ProcessInstance] = {}

    # ------------------------------------------------------------------
    async def save(self, instance: ProcessInstance) -> None:
        self._instances[instance.instance_id] = instance.model_copy(deep=True)

    async def find_by_id(self, instance_id: str) -> ProcessInstance | None:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def find_all(self) -> list[ProcessInstance]:
        return [i.model_copy(deep=True) for i in self._instances.values()]

    async def delete(self, instance_id: str) -> bool:
        return self._instances.pop(instance_id, None) is not None

    async def exists(self, instance_id: str) -> bool:
        return instance_id in self._instances

    # ------------------------------------------------------------------
    # Queries
    async def find_by_status(self, status: ProcessStatus) -> list[ProcessInstance]:
        return [i for i in await self.find_all() if i.status == status]

    async def find_by_process_id(self, process_id: str) -> list[ProcessInstance]:
        return [i for i in await self.find_all() if i.process_id == process_id]

    async def find_by_process_id_and_status(
        self, process_id: str, status: ProcessStatus
    ) -> list[ProcessInstance]:
        return [
            i
            for i in await self.find_all()
            if i.process_id == process_id and i.status == status
        ]

    async def find_by_date_range(self, start: datetime, end: datetime) -> list[ProcessInstance]:
        return [i for i in await self.find_all() if start <= i.started_at <= end]

    async def find_active_older_than(self, age: timedelta) -> list[ProcessInstance]:
        cutoff = utcnow() - age
        return [
            i
            for i in await self.find_all()
            if i.status == ProcessStatus.RUNNING and i.started_at < cutoff
        ]

    async def find_waiting_for_human_task(self) -> list[ProcessInstance]:
        return [i for i in await self.find_all() if is_waiting_for_human_task(i)]

    async def find_by_current_activity(self, activity_id: str) -> list[ProcessInstance]:
        return [i for i in await self.find_all() if i.current_activity == activity_id]

    # ------------------------------------------------------------------
    # Statistics and cleanup
    async def count(self) -> int:
        return len(self._instances)

    async def count_by_status(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for instance in self._instances.values():
            counts[instance.status.value] = counts.get(instance.status.value, 0) + 1
        return counts

    async def count_by_process_id(self, process_id: str) -> int:
        return sum(1 for i in self._instances.values() if i.process_id == process_id)

    async def get_average_execution_time(self) -> Optional[float]:
        return average_execution_time(list(self._instances.values()))

    async def delete_completed_older_than(self, age: timedelta) -> int:
        cutoff = utcnow() - age
        stale = [
            instance_id
            for instance_id, i in self._instances.items()
            if i.status in FINISHED and i.completed_at and i.completed_at < cutoff
        ]
        for instance_id in stale:
            del self._instances[instance_id]
        return len(stale)

    async def clear(self) -> None:
        self._instances.clear()
