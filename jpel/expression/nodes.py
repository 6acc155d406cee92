"""Syntax tree for JPEL scripts and expressions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Tuple


class Node:
    __slots__ = ()


@dataclass(frozen=True)
class Literal(Node):
    value: Any


@dataclass(frozen=True)
class ProcessVar(Node):
    """``v:name`` / ``var:name``."""

    name: str


@dataclass(frozen=True)
class ActivityVar(Node):
    """``a:activity.v:name`` (or the legacy ``a:activity.f:name``)."""

    activity_id: str
    name: str


@dataclass(frozen=True)
class ActivityProp(Node):
    """``a:activity.passFail`` and other activity-level properties."""

    activity_id: str
    prop: str


@dataclass(frozen=True)
class EnvRef(Node):
    name: str


@dataclass(frozen=True)
class Name(Node):
    name: str


@dataclass(frozen=True)
class Member(Node):
    obj: Node
    name: str


@dataclass(frozen=True)
class Index(Node):
    obj: Node
    key: Node


@dataclass(frozen=True)
class Call(Node):
    callee: Node
    args: Tuple[Node, ...]


@dataclass(frozen=True)
class Unary(Node):
    op: str
    operand: Node


@dataclass(frozen=True)
class Binary(Node):
    op: str
    left: Node
    right: Node


@dataclass(frozen=True)
class Logical(Node):
    op: str
    left: Node
    right: Node


@dataclass(frozen=True)
class Conditional(Node):
    test: Node
    then: Node
    otherwise: Node


@dataclass(frozen=True)
class ArrayLit(Node):
    items: Tuple[Node, ...]


@dataclass(frozen=True)
class ObjectLit(Node):
    pairs: Tuple[Tuple[str, Node], ...]


@dataclass(frozen=True)
class Assign(Node):
    target: Node
    op: str
    value: Node


@dataclass(frozen=True)
class Return(Node):
    value: Optional[Node]


@dataclass(frozen=True)
class Script(Node):
    statements: Tuple[Node, ...]
