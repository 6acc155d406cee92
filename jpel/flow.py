"""Routing decisions over a process definition.

Everything here is read-only with respect to the instance: the resolver
computes where execution goes and returns a description of the move, and
the engine applies it. Live stepping and navigation both route through it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .errors import ActivityNotFound, FlowError, JpelError, NoMatchingCase
from .expression import ExpressionEvaluator
from .models import (
    ActivityBase,
    BranchActivity,
    BranchActivityInstance,
    ExecutionFrame,
    ParallelActivity,
    ParallelActivityInstance,
    ProcessDefinition,
    ProcessInstance,
    SequenceActivity,
    SwitchActivity,
    SwitchActivityInstance,
    TerminateActivity,
    extract_activity_id,
)

logger = logging.getLogger(__name__)


@dataclass
class ContainerEntry:
    """A container entered on the way down to a leaf."""

    activity_id: str
    kind: str
    target: Optional[str]
    position: Optional[int] = None
    condition_result: Optional[bool] = None
    expression_value: Optional[str] = None
    matched_case: Optional[str] = None


@dataclass
class Descent:
    leaf: Optional[str]
    entries: List[ContainerEntry] = field(default_factory=list)

    @property
    def fell_through(self) -> Optional[str]:
        """Branch that routed nowhere, when the descent found no leaf."""
        if self.leaf is None and self.entries:
            return self.entries[-1].activity_id
        return None


@dataclass
class Advance:
    next_ref: Optional[str]
    call_stack: List[ExecutionFrame] = field(default_factory=list)
    completed_containers: List[str] = field(default_factory=list)
    positions: Dict[str, int] = field(default_factory=dict)
    parallel_completed: Dict[str, List[str]] = field(default_factory=dict)


@dataclass
class Plan:
    leaf: str
    call_stack: List[ExecutionFrame] = field(default_factory=list)


class FlowResolver:
    """Compute first leaves, successors and fast-forward plans."""

    MAX_PLAN_STEPS = 10_000

    def __init__(
        self, definition: ProcessDefinition, evaluator: Optional[ExpressionEvaluator] = None
    ) -> None:
        self.definition = definition
        self.evaluator = evaluator or ExpressionEvaluator()

    def _activity(self, activity_id: str) -> ActivityBase:
        activity = self.definition.activities.get(extract_activity_id(activity_id))
        if activity is None:
            raise ActivityNotFound(activity_id)
        return activity

    # ------------------------------------------------------------------
    # Descending into containers
    def _evaluated(self, activity_id: str, evaluate: Callable, expression: str, instance: ProcessInstance):
        try:
            return evaluate(expression, instance)
        except JpelError as exc:
            exc.activity_id = exc.activity_id or activity_id
            raise

    def match_case(self, switch_id: str, switch: SwitchActivity, value: str) -> Tuple[str, str]:
        if value in switch.cases:
            return extract_activity_id(switch.cases[value]), value
        if switch.default:
            return extract_activity_id(switch.default), "default"
        raise NoMatchingCase(switch_id, value)

    def descend(self, ref: str, instance: ProcessInstance) -> Descent:
        """Walk from ``ref`` down through containers to the leaf that runs first."""
        entries: List[ContainerEntry] = []
        seen: set[str] = set()
        current = extract_activity_id(ref)
        while True:
            if current in seen:
                raise FlowError(f"Activity '{current}' is reachable from itself")
            seen.add(current)
            activity = self._activity(current)

            if isinstance(activity, (SequenceActivity, ParallelActivity)):
                members = activity.children()
                if not members:
                    raise FlowError(f"Container '{current}' has no activities")
                entries.append(ContainerEntry(current, activity.type, members[0], position=0))
                current = members[0]
            elif isinstance(activity, BranchActivity):
                result = self._evaluated(current, self.evaluator.evaluate_condition, activity.condition, instance)
                chosen = activity.then if result else activity.else_
                target = extract_activity_id(chosen) if chosen else None
                entries.append(
                    ContainerEntry(current, activity.type, target, condition_result=result)
                )
                if target is None:
                    return Descent(None, entries)
                current = target
            elif isinstance(activity, SwitchActivity):
                value = self._evaluated(current, self.evaluator.switch_value, activity.expression, instance)
                target, matched = self.match_case(current, activity, value)
                entries.append(
                    ContainerEntry(
                        current,
                        activity.type,
                        target,
                        expression_value=value,
                        matched_case=matched,
                    )
                )
                current = target
            else:
                return Descent(current, entries)

    def first_leaf(self, ref: str, instance: ProcessInstance) -> Optional[str]:
        return self.descend(ref, instance).leaf

    # ------------------------------------------------------------------
    # Locating a completed activity
    def _routes(
        self, activity_id: str, activity: ActivityBase, instance: ProcessInstance
    ) -> List[Tuple[str, Optional[int]]]:
        if isinstance(activity, (SequenceActivity, ParallelActivity)):
            return [(child, index) for index, child in enumerate(activity.children())]
        if isinstance(activity, (BranchActivity, SwitchActivity)):
            record = instance.activity(activity_id)
            if isinstance(record, (BranchActivityInstance, SwitchActivityInstance)) and record.next_activity:
                return [(extract_activity_id(record.next_activity), None)]
            return [(child, None) for child in activity.children()]
        return []

    def locate(self, activity_id: str, instance: ProcessInstance) -> List[ExecutionFrame]:
        """Rebuild the call stack leading to ``activity_id`` from the definition."""
        target = extract_activity_id(activity_id)

        def search(current: str, frames: List[ExecutionFrame], visiting: frozenset) -> Optional[List[ExecutionFrame]]:
            if current == target:
                return frames
            activity = self.definition.activities.get(current)
            if activity is None or current in visiting:
                return None
            for child, position in self._routes(current, activity, instance):
                frame = ExecutionFrame(
                    activity_id=current,
                    parent_id=frames[-1].activity_id if frames else None,
                    position=position,
                )
                found = search(child, frames + [frame], visiting | {current})
                if found is not None:
                    return found
            return None

        return search(self.definition.start_id, [], frozenset()) or []

    def _holds(self, frame: ExecutionFrame, child: str, instance: ProcessInstance) -> bool:
        container = self.definition.activities.get(frame.activity_id)
        if container is None:
            return False
        return any(route == child for route, _ in self._routes(frame.activity_id, container, instance))

    # ------------------------------------------------------------------
    # Advancing past a completed activity
    def _advance(
        self,
        child: str,
        stack: List[ExecutionFrame],
        completed_children: Callable[[str], List[str]],
    ) -> Advance:
        advance = Advance(next_ref=None, call_stack=stack)
        while stack:
            frame = stack[-1]
            container = self._activity(frame.activity_id)

            if isinstance(container, SequenceActivity):
                members = container.children()
                position = frame.position
                if position is None or not (0 <= position < len(members)) or members[position] != child:
                    if child not in members:
                        raise FlowError(
                            f"Activity '{child}' is not part of sequence '{frame.activity_id}'"
                        )
                    position = members.index(child)
                if position + 1 < len(members):
                    frame.position = position + 1
                    advance.positions[frame.activity_id] = position + 1
                    advance.next_ref = members[position + 1]
                    return advance

            elif isinstance(container, ParallelActivity):
                members = container.children()
                newly = advance.parallel_completed.setdefault(frame.activity_id, [])
                done = list(completed_children(frame.activity_id)) + newly
                if child not in done:
                    newly.append(child)
                    done.append(child)
                remaining = [member for member in members if member not in done]
                if remaining:
                    frame.position = members.index(remaining[0])
                    advance.next_ref = remaining[0]
                    return advance

            stack.pop()
            advance.completed_containers.append(frame.activity_id)
            child = frame.activity_id

        return advance

    def next_after_leaf(
        self,
        completed_id: str,
        instance: ProcessInstance,
        call_stack: Optional[List[ExecutionFrame]] = None,
    ) -> Advance:
        """Decide what runs after ``completed_id`` finished.

        The instance call stack is used when it leads to ``completed_id``;
        otherwise the stack is rebuilt from the definition.
        """

        completed_id = extract_activity_id(completed_id)
        source = instance.execution.call_stack if call_stack is None else call_stack
        stack = [frame.model_copy() for frame in source]
        if not stack or not self._holds(stack[-1], completed_id, instance):
            rebuilt = self.locate(completed_id, instance)
            if stack or rebuilt:
                logger.debug(f"Rebuilt call stack for '{completed_id}' in {instance.instance_id}")
            stack = rebuilt

        def completed_children(parallel_id: str) -> List[str]:
            record = instance.activity(parallel_id)
            if isinstance(record, ParallelActivityInstance):
                return list(record.completed_activities)
            return []

        return self._advance(completed_id, stack, completed_children)

    # ------------------------------------------------------------------
    # Fast-forward planning
    def plan(self, instance: ProcessInstance) -> Optional[Plan]:
        """Replay routing from the start up to the first unfinished leaf.

        Returns ``None`` when every routed activity is already completed.
        """

        stack: List[ExecutionFrame] = []
        parallel_done: Dict[str, List[str]] = {}
        ref = self.definition.start_id
        for _ in range(self.MAX_PLAN_STEPS):
            descent = self.descend(ref, instance)
            for entry in descent.entries:
                if entry.target is None:
                    continue
                stack.append(
                    ExecutionFrame(
                        activity_id=entry.activity_id,
                        parent_id=stack[-1].activity_id if stack else None,
                        position=entry.position,
                    )
                )

            if descent.leaf is not None:
                record = instance.activity(descent.leaf)
                if record is None or not record.is_completed:
                    return Plan(leaf=descent.leaf, call_stack=stack)
                if isinstance(self._activity(descent.leaf), TerminateActivity):
                    return None
                child = descent.leaf
            else:
                child = descent.fell_through

            advance = self._advance(child, stack, lambda pid: parallel_done.get(pid, []))
            for parallel_id, children in advance.parallel_completed.items():
                parallel_done.setdefault(parallel_id, []).extend(children)
            if advance.next_ref is None:
                return None
            stack = advance.call_stack
            ref = advance.next_ref

        raise FlowError(f"Planning did not converge for instance {instance.instance_id}")
