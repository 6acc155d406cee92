"""Validation of values submitted to human tasks."""

from __future__ import annotations

import math
import re
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel, Field

from .files import FileRecord
from .models import FieldType, FileUpload, InputField

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


class FieldValidationResult(BaseModel):
    valid: bool = True
    errors: Dict[str, List[str]] = Field(default_factory=dict)
    values: Dict[str, Any] = Field(default_factory=dict)


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "") or value == []


def _label(field: InputField) -> str:
    return field.label or field.name


class FieldValidator:
    """Check submitted values against their field schemas."""

    @staticmethod
    def coerce(field: InputField, value: Any) -> Any:
        """Convert ``value`` into the Python type of ``field``.

        Raises ``ValueError`` when the value cannot represent the type.
        """

        if _is_empty(value):
            return None
        if field.type == FieldType.NUMBER:
            if isinstance(value, bool):
                raise ValueError("not a number")
            if isinstance(value, int):
                return value
            number = value if isinstance(value, float) else float(str(value).strip())
            if math.isnan(number) or math.isinf(number):
                raise ValueError("not a finite number")
            if isinstance(value, float):
                return value
            return int(number) if number.is_integer() and "." not in str(value) else number
        if field.type == FieldType.BOOLEAN:
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE:
                return True
            if text in _FALSE:
                return False
            raise ValueError("not a boolean")
        if field.type == FieldType.DATE:
            if isinstance(value, (date, datetime)):
                return value.isoformat()
            text = str(value).strip()
            datetime.fromisoformat(text.replace("Z", "+00:00"))
            return text
        if field.type == FieldType.SELECT:
            return value
        return value if isinstance(value, str) else str(value)

    @staticmethod
    def validate_field(field: InputField, value: Any) -> List[str]:
        errors: List[str] = []
        label = _label(field)
        if _is_empty(value):
            if field.required:
                errors.append(f"{label} is required")
            return errors

        try:
            coerced = FieldValidator.coerce(field, value)
        except (TypeError, ValueError):
            expected = {
                FieldType.NUMBER: "a number",
                FieldType.BOOLEAN: "true or false",
                FieldType.DATE: "a valid date",
            }.get(field.type, f"of type {field.type.value}")
            return [f"{label} must be {expected}"]

        if field.type == FieldType.TEXT:
            if field.pattern:
                try:
                    matched = re.fullmatch(field.pattern, coerced)
                except re.error:
                    errors.append(f"{label} has an unusable pattern: {field.pattern}")
                else:
                    if not matched:
                        errors.append(field.pattern_description or f"{label} has an invalid format")
            if field.min is not None and len(coerced) < field.min:
                errors.append(f"{label} must be at least {int(field.min)} characters")
            if field.max is not None and len(coerced) > field.max:
                errors.append(f"{label} must be at most {int(field.max)} characters")
        elif field.type == FieldType.NUMBER:
            if field.min is not None and coerced < field.min:
                errors.append(f"{label} must be at least {field.min:g}")
            if field.max is not None and coerced > field.max:
                errors.append(f"{label} must be at most {field.max:g}")
        elif field.type == FieldType.SELECT and field.options:
            allowed = [str(option) for option in field.option_values()]
            chosen = coerced if isinstance(coerced, list) else [coerced]
            for item in chosen:
                if str(item) not in allowed:
                    errors.append(f"{label} must be one of: {', '.join(allowed)}")
                    break
        elif field.type == FieldType.FILE and not isinstance(coerced, str):
            errors.append(f"{label} must be a file id")
        return errors

    @staticmethod
    def validate(
        fields: Sequence[InputField],
        data: Mapping[str, Any],
        current: Optional[Mapping[str, Any]] = None,
    ) -> FieldValidationResult:
        """Validate a whole submission.

        Fields missing from ``data`` are checked using their ``current``
        value (a previous entry or the schema default).
        """

        current = current or {}
        result = FieldValidationResult()
        for field in fields:
            if field.name in data:
                value = data[field.name]
            else:
                value = current.get(field.name, field.default_value)
            errors = FieldValidator.validate_field(field, value)
            if errors:
                result.errors[field.name] = errors
                continue
            result.values[field.name] = FieldValidator.coerce(field, value)
        result.valid = not result.errors
        return result

    @staticmethod
    def check_uploads(upload: FileUpload, records: Sequence[FileRecord]) -> List[str]:
        """Check the files given for one upload slot against its limits."""
        errors: List[str] = []
        if len(records) < upload.min_count:
            errors.append(f"{upload.name} needs at least {upload.min_count} file(s)")
        if upload.max_count is not None and len(records) > upload.max_count:
            errors.append(f"{upload.name} accepts at most {upload.max_count} file(s)")
        for record in records:
            if not upload.accepts(record.content_type, record.filename):
                errors.append(
                    f"{record.filename} is not an allowed type ({', '.join(upload.allowed_types)})"
                )
            if upload.max_bytes is not None and record.size > upload.max_bytes:
                errors.append(f"{record.filename} is larger than {upload.max_bytes} bytes")
        return errors
