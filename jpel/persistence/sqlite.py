"""SQLite implementations of the process repositories."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from ..models import (
    ProcessDefinition,
    ProcessInstance,
    ProcessStatus,
    ProcessSummary,
    utcnow,
)
from .inmemory import average_execution_time, is_waiting_for_human_task
from .repository import ProcessDefinitionRepository, ProcessInstanceRepository


class _SQLiteStore:
    """Connection handling shared by both repositories.

    Documents are stored as JSON next to the columns used for querying.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS process_definitions (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                version TEXT,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS process_instances (
                instance_id TEXT PRIMARY KEY,
                process_id TEXT NOT NULL,
                status TEXT NOT NULL,
                current_activity TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_instances_process ON process_instances (process_id, status)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def close(self) -> None:
        self._conn.close()


class SQLiteProcessDefinitionRepository(_SQLiteStore, ProcessDefinitionRepository):
    """Persist process definitions using SQLite."""

    async def _select(self, where: str = "", *params: Any) -> list[ProcessDefinition]:
        rows = await asyncio.to_thread(
            self._fetchall, f"SELECT document FROM process_definitions {where} ORDER BY id", *params
        )
        return [ProcessDefinition.model_validate_json(row["document"]) for row in rows]

    async def save(self, definition: ProcessDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO process_definitions (id, name, version, document) VALUES (?, ?, ?, ?)",
            definition.id,
            definition.name,
            definition.version,
            definition.model_dump_json(by_alias=True),
        )

    async def find_by_id(self, process_id: str) -> ProcessDefinition | None:
        found = await self._select("WHERE id = ?", process_id)
        return found[0] if found else None

    async def find_all(self) -> list[ProcessDefinition]:
        return await self._select()

    async def delete(self, process_id: str) -> bool:
        deleted = await asyncio.to_thread(
            self._execute, "DELETE FROM process_definitions WHERE id = ?", process_id
        )
        return deleted > 0

    async def exists(self, process_id: str) -> bool:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT 1 FROM process_definitions WHERE id = ?", process_id
        )
        return row is not None

    async def find_by_name(self, name: str) -> list[ProcessDefinition]:
        return await self._select("WHERE lower(name) LIKE ?", f"%{name.lower()}%")

    async def find_by_version(self, version: str) -> list[ProcessDefinition]:
        return await self._select("WHERE version = ?", version)

    async def count(self) -> int:
        row = await asyncio.to_thread(self._fetchone, "SELECT COUNT(*) FROM process_definitions")
        return row[0]

    async def clear(self) -> None:
        await asyncio.to_thread(self._execute, "DELETE FROM process_definitions")

    async def list_available_templates(self) -> list[ProcessSummary]:
        return [definition.summary() for definition in await self.find_all()]


class SQLiteProcessInstanceRepository(_SQLiteStore, ProcessInstanceRepository):
    """Persist process instances using SQLite."""

    async def _select(self, where: str = "", *params: Any) -> list[ProcessInstance]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT document FROM process_instances {where} ORDER BY started_at",
            *params,
        )
        return [ProcessInstance.model_validate_json(row["document"]) for row in rows]

    async def save(self, instance: ProcessInstance) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR REPLACE INTO process_instances
                (instance_id, process_id, status, current_activity, started_at, completed_at, document)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            instance.instance_id,
            instance.process_id,
            instance.status.value,
            instance.current_activity,
            instance.started_at.isoformat(),
            instance.completed_at.isoformat() if instance.completed_at else None,
            instance.model_dump_json(),
        )

    async def find_by_id(self, instance_id: str) -> ProcessInstance | None:
        found = await self._select("WHERE instance_id = ?", instance_id)
        return found[0] if found else None

    async def find_all(self) -> list[ProcessInstance]:
        return await self._select()

    async def delete(self, instance_id: str) -> bool:
        deleted = await asyncio.to_thread(
            self._execute, "DELETE FROM process_instances WHERE instance_id = ?", instance_id
        )
        return deleted > 0

    async def exists(self, instance_id: str) -> bool:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT 1 FROM process_instances WHERE instance_id = ?", instance_id
        )
        return row is not None

    async def find_by_status(self, status: ProcessStatus) -> list[ProcessInstance]:
        return await self._select("WHERE status = ?", ProcessStatus(status).value)

    async def find_by_process_id(self, process_id: str) -> list[ProcessInstance]:
        return await self._select("WHERE process_id = ?", process_id)

    async def find_by_process_id_and_status(
        self, process_id: str, status: ProcessStatus
    ) -> list[ProcessInstance]:
        return await self._select(
            "WHERE process_id = ? AND status = ?", process_id, ProcessStatus(status).value
        )

    async def find_by_date_range(self, start: datetime, end: datetime) -> list[ProcessInstance]:
        return [i for i in await self.find_all() if start <= i.started_at <= end]

    async def find_active_older_than(self, age: timedelta) -> list[ProcessInstance]:
        cutoff = utcnow() - age
        running = await self.find_by_status(ProcessStatus.RUNNING)
        return [i for i in running if i.started_at < cutoff]

    async def find_waiting_for_human_task(self) -> list[ProcessInstance]:
        running = await self.find_by_status(ProcessStatus.RUNNING)
        return [i for i in running if is_waiting_for_human_task(i)]

    async def find_by_current_activity(self, activity_id: str) -> list[ProcessInstance]:
        return await self._select("WHERE current_activity = ?", activity_id)

    async def count(self) -> int:
        row = await asyncio.to_thread(self._fetchone, "SELECT COUNT(*) FROM process_instances")
        return row[0]

    async def count_by_status(self) -> Dict[str, int]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT status, COUNT(*) AS total FROM process_instances GROUP BY status"
        )
        return {row["status"]: row["total"] for row in rows}

    async def count_by_process_id(self, process_id: str) -> int:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT COUNT(*) FROM process_instances WHERE process_id = ?",
            process_id,
        )
        return row[0]

    async def get_average_execution_time(self) -> Optional[float]:
        return average_execution_time(await self.find_by_status(ProcessStatus.COMPLETED))

    async def delete_completed_older_than(self, age: timedelta) -> int:
        cutoff = utcnow() - age
        finished = [
            i
            for i in await self.find_all()
            if i.status != ProcessStatus.RUNNING and i.completed_at and i.completed_at < cutoff
        ]
        for instance in finished:
            await self.delete(instance.instance_id)
        return len(finished)

    async def clear(self) -> None:
        await asyncio.to_thread(self._execute, "DELETE FROM process_instances")
