"""File uploads attached to human-task variables."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field

from .models import utcnow


class FileRecord(BaseModel):
    """An uploaded file bound to one variable of one activity."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    instance_id: str
    activity_id: str
    variable_name: str
    filename: str
    content_type: str = "application/octet-stream"
    size: int = 0
    data: bytes = b""
    uploaded_at: datetime = Field(default_factory=utcnow)


class InMemoryFileStore:
    """Keep uploaded files in local memory, keyed by file id."""

    def __init__(self) -> None:
        self._files: Dict[str, FileRecord] = {}

    async def upload(
        self,
        instance_id: str,
        activity_id: str,
        variable_name: str,
        filename: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> FileRecord:
        record = FileRecord(
            instance_id=instance_id,
            activity_id=activity_id,
            variable_name=variable_name,
            filename=filename,
            content_type=content_type,
            size=len(data),
            data=data,
        )
        self._files[record.id] = record
        return record

    async def get(self, file_id: str) -> Optional[FileRecord]:
        return self._files.get(file_id)

    async def exists(self, file_id: str) -> bool:
        return file_id in self._files

    async def delete(self, file_id: str) -> bool:
        return self._files.pop(file_id, None) is not None

    async def list_for_instance(self, instance_id: str) -> list[FileRecord]:
        return [f for f in self._files.values() if f.instance_id == instance_id]
