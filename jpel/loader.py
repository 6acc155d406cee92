"""Structural validation and normalization of process definitions."""

from __future__ import annotations

import copy
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import DefinitionInvalid
from .expression.references import ACTIVITY_VARIABLE
from .models import ActivityType, ProcessDefinition, extract_activity_id

logger = logging.getLogger(__name__)

FIELD_TYPE_ALIASES = {
    "checkbox": "boolean",
    "bool": "boolean",
    "string": "text",
    "textarea": "text",
    "integer": "number",
    "float": "number",
    "dropdown": "select",
    "enum": "select",
    "datetime": "date",
}

_KNOWN_TYPES = {kind.value for kind in ActivityType}


class ValidationReport(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


def _as_document(definition: Union[Dict[str, Any], ProcessDefinition]) -> Dict[str, Any]:
    if isinstance(definition, ProcessDefinition):
        return definition.model_dump(by_alias=True, exclude_none=True)
    return definition


def _inputs(activity: Dict[str, Any]) -> List[Any]:
    inputs = activity.get("inputs")
    if inputs is None:
        inputs = activity.get("fields")
    return inputs if isinstance(inputs, list) else []


def _code_lines(activity: Dict[str, Any]) -> List[str]:
    code = activity.get("code")
    if isinstance(code, str):
        return code.splitlines()
    if isinstance(code, list):
        return [line for line in code if isinstance(line, str)]
    return []


def _pattern_errors(owner: str, fields: List[Any]) -> List[str]:
    errors = []
    for field in fields:
        pattern = field.get("pattern") if isinstance(field, dict) else None
        if not isinstance(pattern, str) or not pattern:
            continue
        try:
            re.compile(pattern)
        except re.error as exc:
            errors.append(f"{owner} field '{field.get('name')}' has an invalid pattern '{pattern}': {exc}")
    return errors


def validate(definition: Union[Dict[str, Any], ProcessDefinition, None]) -> ValidationReport:
    """Check reference integrity and required fields of a definition."""
    errors: List[str] = []
    warnings: List[str] = []

    if not definition:
        return ValidationReport(valid=False, errors=["Process definition is empty"])
    document = _as_document(definition)
    if not isinstance(document, dict):
        return ValidationReport(valid=False, errors=["Process definition must be an object"])

    if not document.get("id"):
        errors.append("Missing required field: id")
    if not document.get("name"):
        errors.append("Missing required field: name")

    activities = document.get("activities") or {}
    if not isinstance(activities, dict):
        errors.append("Field 'activities' must be an object keyed by activity id")
        activities = {}
    keys = set(activities)

    def resolves(ref: Any) -> bool:
        return isinstance(ref, str) and bool(ref) and extract_activity_id(ref) in keys

    variables = document.get("variables")
    errors.extend(_pattern_errors("Process variable", variables if isinstance(variables, list) else []))

    start = document.get("start")
    if not resolves(start):
        errors.append(f"Start activity reference '{start}' does not point to a valid activity")

    for key, activity in activities.items():
        if not isinstance(activity, dict) or not activity.get("type"):
            errors.append(f"Activity '{key}' missing required field: type")
            continue
        kind = activity["type"]
        if kind not in _KNOWN_TYPES:
            warnings.append(f"Activity '{key}' has unknown type '{kind}'")

        errors.extend(_pattern_errors(f"Activity '{key}'", _inputs(activity)))
        for field in _inputs(activity):
            if isinstance(field, dict) and field.get("type") in FIELD_TYPE_ALIASES:
                warnings.append(
                    f"Activity '{key}' field '{field.get('name')}' uses deprecated type "
                    f"'{field['type']}' (use '{FIELD_TYPE_ALIASES[field['type']]}')"
                )

        if kind in ("sequence", "parallel"):
            members = activity.get("activities")
            if not isinstance(members, list) or not members:
                errors.append(
                    f"Activity '{key}' of type '{kind}' must have a non-empty 'activities' array"
                )
            else:
                for ref in members:
                    if not resolves(ref):
                        errors.append(f"Activity '{key}' references unknown activity '{ref}'")
        elif kind == "branch":
            if not resolves(activity.get("then")):
                errors.append(
                    f"Activity '{key}' branch 'then' reference '{activity.get('then')}' is invalid"
                )
            if activity.get("else") and not resolves(activity["else"]):
                errors.append(
                    f"Activity '{key}' branch 'else' reference '{activity['else']}' is invalid"
                )
        elif kind == "switch":
            cases = activity.get("cases")
            if not isinstance(cases, dict) or not cases:
                errors.append(f"Activity '{key}' of type 'switch' must have a non-empty 'cases' object")
            else:
                for case, ref in cases.items():
                    if not resolves(ref):
                        errors.append(
                            f"Activity '{key}' switch case '{case}' references unknown activity '{ref}'"
                        )
            if activity.get("default") and not resolves(activity["default"]):
                errors.append(
                    f"Activity '{key}' switch default reference '{activity['default']}' is invalid"
                )

        if kind in ("compute", "api"):
            for line in _code_lines(activity):
                for match in ACTIVITY_VARIABLE.finditer(line):
                    target_id, name = match.group("activity"), match.group("name")
                    target = activities.get(target_id)
                    if target is None:
                        errors.append(
                            f"Activity '{key}' code: Activity '{target_id}' referenced in "
                            f"'{match.group(0)}' does not exist"
                        )
                    elif (
                        match.group("scope") == "f"
                        and isinstance(target, dict)
                        and target.get("type") == "human"
                        and name not in {f.get("name") for f in _inputs(target) if isinstance(f, dict)}
                    ):
                        warnings.append(
                            f"Activity '{key}' code: field '{name}' is not declared on '{target_id}'"
                        )

    return ValidationReport(valid=not errors, errors=errors, warnings=warnings)


def _normalize_fields(fields: List[Any]) -> None:
    for field in fields:
        if isinstance(field, dict) and field.get("type") in FIELD_TYPE_ALIASES:
            field["type"] = FIELD_TYPE_ALIASES[field["type"]]


def normalize(definition: Union[Dict[str, Any], ProcessDefinition]) -> Dict[str, Any]:
    """Return a normalized copy of ``definition``.

    Activity ids are forced to their map keys, legacy ``fields`` lists are
    renamed to ``inputs`` and deprecated field types are rewritten.
    Applying it twice gives the same result as applying it once.
    """

    document = copy.deepcopy(_as_document(definition))
    for key, activity in (document.get("activities") or {}).items():
        if not isinstance(activity, dict):
            continue
        if activity.get("id") not in (None, "", key):
            logger.warning(
                f"Activity id '{activity['id']}' does not match its key '{key}'; using '{key}'"
            )
        activity["id"] = key
        if "fields" in activity and "inputs" not in activity:
            activity["inputs"] = activity.pop("fields")
        if isinstance(activity.get("inputs"), list):
            _normalize_fields(activity["inputs"])
    if isinstance(document.get("variables"), list):
        _normalize_fields(document["variables"])
    return document


def load_definition(definition: Union[Dict[str, Any], ProcessDefinition]) -> ProcessDefinition:
    """Validate, normalize and parse a definition document."""
    report = validate(definition)
    for warning in report.warnings:
        logger.warning(warning)
    if not report.valid:
        raise DefinitionInvalid(report.errors)
    try:
        return ProcessDefinition.model_validate(normalize(definition))
    except ValidationError as exc:
        messages = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        ]
        raise DefinitionInvalid(messages) from exc


def read_document(path: Union[str, Path], text: Optional[str] = None) -> Dict[str, Any]:
    """Parse a definition file; ``.json`` as JSON, anything else as YAML."""
    path = Path(path)
    content = path.read_text() if text is None else text
    if path.suffix.lower() == ".json":
        document = json.loads(content)
    else:
        document = yaml.safe_load(content)
    if not isinstance(document, dict):
        raise DefinitionInvalid([f"{path} does not contain a process definition object"])
    return document
