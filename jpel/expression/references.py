"""Textual reference resolution and template substitution."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

from .values import to_string

if TYPE_CHECKING:
    from .interpreter import Scope

logger = logging.getLogger(__name__)

_NAME = r"[A-Za-z0-9_-]+"

ACTIVITY_VARIABLE = re.compile(rf"a:(?P<activity>{_NAME})\.(?P<scope>[vf]):(?P<name>{_NAME})")
ACTIVITY_PROPERTY = re.compile(rf"a:(?P<activity>{_NAME})\.(?P<prop>[A-Za-z_][A-Za-z0-9_]*)")
PROCESS_VARIABLE = re.compile(rf"(?<![A-Za-z0-9_.:-])(?:var|v):(?P<name>{_NAME})")
PROCESS_DOTTED = re.compile(rf"\bprocess\.(?P<name>{_NAME})")
ENVIRONMENT = re.compile(r"(?<![A-Za-z0-9_])env:(?P<name>[A-Za-z_][A-Za-z0-9_]*)")


def resolve_reference(ref: str, scope: "Scope") -> Any:
    """Resolve a single reference token such as ``a:step.v:total``.

    Unknown references resolve to ``None``.
    """

    ref = ref.strip()
    match = ACTIVITY_VARIABLE.fullmatch(ref)
    if match:
        return scope.activity_var(match.group("activity"), match.group("name"))
    match = ACTIVITY_PROPERTY.fullmatch(ref)
    if match:
        return scope.activity_prop(match.group("activity"), match.group("prop"))
    match = PROCESS_VARIABLE.fullmatch(ref) or PROCESS_DOTTED.fullmatch(ref)
    if match:
        return scope.process_var(match.group("name"))
    match = ENVIRONMENT.fullmatch(ref)
    if match:
        return scope.env(match.group("name"))
    return None


def substitute(text: str, scope: "Scope") -> str:
    """Replace every reference embedded in ``text`` with its value.

    References that do not resolve are left untouched.
    """

    def activity_variable(match: re.Match) -> str:
        value = scope.activity_var(match.group("activity"), match.group("name"))
        return match.group(0) if value is None else to_string(value)

    def process_variable(match: re.Match) -> str:
        value = scope.process_var(match.group("name"))
        return match.group(0) if value is None else to_string(value)

    def environment(match: re.Match) -> str:
        value = scope.env(match.group("name"))
        if value is None:
            logger.warning(f"Environment value '{match.group('name')}' is not configured")
            return match.group(0)
        return to_string(value)

    text = ACTIVITY_VARIABLE.sub(activity_variable, text)
    text = PROCESS_DOTTED.sub(process_variable, text)
    text = PROCESS_VARIABLE.sub(process_variable, text)
    return ENVIRONMENT.sub(environment, text)
