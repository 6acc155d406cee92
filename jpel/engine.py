"""Process execution engine.

The engine owns the single active pointer of every instance. Each public
operation loads the instance, moves it forward through automatic
activities until it reaches a human task or a terminal state, saves it and
reports where it stopped.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from typing import Any, Dict, List, Mapping, Optional

from .api_executor import ApiExecutor
from .config import JpelConfig, load_config
from .errors import (
    ActivityNotFound,
    ActivityNotWaiting,
    DefinitionInvalid,
    FieldValidationFailed,
    InstanceNotFound,
    JpelError,
    ProcessNotFound,
    UnknownActivityType,
)
from .expression import ExpressionEvaluator
from .files import InMemoryFileStore
from .flow import Advance, ContainerEntry, FlowResolver
from .loader import load_definition, normalize
from .models import (
    ActivityStatus,
    AggregatePassFail,
    ApiActivityInstance,
    BaseActivityInstance,
    BranchActivityInstance,
    ComputeActivityInstance,
    ExecutionResult,
    FieldType,
    HumanActivityInstance,
    HumanTask,
    ParallelActivityInstance,
    PassFail,
    ProcessDefinition,
    ProcessInstance,
    ProcessInstanceSummary,
    ProcessStatus,
    ProcessSummary,
    SequenceActivityInstance,
    SwitchActivityInstance,
    TerminateActivityInstance,
    extract_activity_id,
    new_activity_instance,
    utcnow,
)
from .persistence import (
    ProcessDefinitionRepository,
    ProcessInstanceRepository,
    get_repositories,
)
from .validation import FieldValidator

logger = logging.getLogger(__name__)


def aggregate_pass_fail(instance: ProcessInstance) -> Optional[AggregatePassFail]:
    """Combine the pass/fail outcomes reported by activities."""
    reported = [a.pass_fail for a in instance.activities.values() if a.pass_fail is not None]
    if not reported:
        return None
    if PassFail.FAIL in reported:
        return AggregatePassFail.ANY_FAIL
    return AggregatePassFail.ALL_PASS


def human_task(activity: HumanActivityInstance) -> HumanTask:
    """Describe what a waiting human activity asks for.

    Values entered on a previous run are offered as the field defaults.
    """
    fields = [
        variable.model_copy(
            update={
                "default_value": variable.value
                if variable.value is not None
                else variable.default_value
            }
        )
        for variable in activity.variables
    ]
    definition = activity.definition
    return HumanTask(
        activity_id=activity.id,
        name=definition.name or activity.id,
        prompt=definition.prompt,
        fields=fields,
        file_uploads=definition.file_uploads,
        attachments=definition.attachments,
        files=dict(activity.files),
    )


class ProcessEngine:
    """Drive process instances from activity to activity."""

    def __init__(
        self,
        definitions: Optional[ProcessDefinitionRepository] = None,
        instances: Optional[ProcessInstanceRepository] = None,
        evaluator: Optional[ExpressionEvaluator] = None,
        api_executor: Optional[ApiExecutor] = None,
        config: Optional[JpelConfig] = None,
        files: Optional[InMemoryFileStore] = None,
    ) -> None:
        if definitions is None or instances is None:
            shared = get_repositories() if config is None else get_repositories(config=config)
            definitions = definitions if definitions is not None else shared[0]
            instances = instances if instances is not None else shared[1]
        self.config = config or load_config()
        self.definitions = definitions
        self.instances = instances
        self.evaluator = evaluator or ExpressionEvaluator(self.config.environment)
        self.api_executor = api_executor or ApiExecutor(self.evaluator, self.config.http)
        self.files = files or InMemoryFileStore()
        # Entries disappear once no operation holds the lock.
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock(self, instance_id: str) -> asyncio.Lock:
        lock = self._locks.get(instance_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[instance_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Definitions
    async def load_process(self, document: Mapping[str, Any] | ProcessDefinition) -> ProcessDefinition:
        """Validate, normalize and store a definition."""
        definition = load_definition(document)
        await self.definitions.save(definition)
        logger.info(f"Loaded process {definition.id} with {len(definition.activities)} activities")
        return definition

    async def get_process(self, process_id: str) -> Optional[ProcessDefinition]:
        return await self.definitions.find_by_id(process_id)

    async def get_processes(self) -> list[ProcessSummary]:
        return await self.definitions.list_available_templates()

    async def delete_process(self, process_id: str) -> bool:
        return await self.definitions.delete(process_id)

    async def _definition(self, process_id: str) -> ProcessDefinition:
        stored = await self.definitions.find_by_id(process_id)
        if stored is None:
            raise ProcessNotFound(process_id)
        return ProcessDefinition.model_validate(normalize(stored))

    async def _resolver(self, instance: ProcessInstance) -> FlowResolver:
        return FlowResolver(await self._definition(instance.process_id), self.evaluator)

    # ------------------------------------------------------------------
    # Instances
    async def _load(self, instance_id: str) -> ProcessInstance:
        instance = await self.instances.find_by_id(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    async def get_instance(self, instance_id: str) -> ProcessInstance:
        return await self._load(instance_id)

    async def list_instances(
        self, process_id: Optional[str] = None, status: Optional[ProcessStatus] = None
    ) -> list[ProcessInstanceSummary]:
        if process_id and status:
            found = await self.instances.find_by_process_id_and_status(process_id, status)
        elif process_id:
            found = await self.instances.find_by_process_id(process_id)
        elif status:
            found = await self.instances.find_by_status(status)
        else:
            found = await self.instances.find_all()
        return [instance.summary() for instance in found]

    async def create_instance(self, process_id: str, title: Optional[str] = None) -> ExecutionResult:
        """Instantiate a definition and run it up to its first human task."""
        definition = await self._definition(process_id)
        if not definition.has_activity(definition.start):
            raise DefinitionInvalid([f"Start activity '{definition.start}' not found in activities"])

        instance = ProcessInstance(
            process_id=definition.id,
            title=title or definition.name,
            variables={variable.name: variable.default_value for variable in definition.variables},
            activities={
                activity_id: new_activity_instance(activity_id, activity)
                for activity_id, activity in definition.activities.items()
            },
        )
        logger.info(f"Created instance {instance.instance_id} of process {definition.id}")

        async with self._lock(instance.instance_id):
            await self.instances.save(instance)
            resolver = FlowResolver(definition, self.evaluator)
            return await self._start(instance, resolver)

    async def _start(self, instance: ProcessInstance, resolver: FlowResolver) -> ExecutionResult:
        start = resolver.definition.start_id
        try:
            outcome = await self._route_to(instance, resolver, start)
        except JpelError as exc:
            return await self._fail(instance, exc.activity_id or start, exc)
        if outcome is not None:
            return outcome
        return await self._drive(instance, resolver)

    async def step(self, instance_id: str) -> ExecutionResult:
        """Run the current activity and keep going while no input is needed."""
        async with self._lock(instance_id):
            instance = await self._load(instance_id)
            if instance.status != ProcessStatus.RUNNING:
                return self._result(instance, f"Process is {instance.status.value}")
            return await self._drive(instance, await self._resolver(instance))

    async def continue_execution(self, instance_id: str, completed_id: str) -> ExecutionResult:
        """Advance past ``completed_id`` and run on from there."""
        async with self._lock(instance_id):
            instance = await self._load(instance_id)
            if instance.status != ProcessStatus.RUNNING:
                return self._result(instance, f"Process is {instance.status.value}")
            resolver = await self._resolver(instance)
            return await self._proceed(instance, resolver, extract_activity_id(completed_id))

    async def _proceed(
        self, instance: ProcessInstance, resolver: FlowResolver, completed_id: str
    ) -> ExecutionResult:
        try:
            outcome = await self._continue(instance, resolver, completed_id)
        except JpelError as exc:
            return await self._fail(instance, exc.activity_id or completed_id, exc)
        if outcome is not None:
            return outcome
        return await self._drive(instance, resolver)

    async def submit_human_task(
        self,
        instance_id: str,
        activity_id: str,
        data: Mapping[str, Any],
        files: Optional[Mapping[str, Any]] = None,
    ) -> ExecutionResult:
        """Complete a waiting human activity with user input.

        ``files`` maps file-field names to the id of an uploaded file and
        upload-slot names to one id or a list of ids.
        Nothing is saved when validation fails.
        """

        activity_id = extract_activity_id(activity_id)
        async with self._lock(instance_id):
            instance = await self._load(instance_id)
            activity = instance.activity(activity_id)
            if activity is None:
                raise ActivityNotFound(activity_id)
            if (
                instance.status != ProcessStatus.RUNNING
                or not isinstance(activity, HumanActivityInstance)
                or activity.status != ActivityStatus.RUNNING
            ):
                raise ActivityNotWaiting(f"Activity '{activity_id}' is not waiting for input")

            slots = {upload.name: upload for upload in activity.definition.file_uploads}
            given = dict(files or {})
            uploads = {name: given.pop(name) for name in list(given) if name in slots}
            submitted = dict(data)
            submitted.update(given)
            fields = activity.definition.inputs
            report = FieldValidator.validate(fields, submitted, activity.variable_map())
            errors = dict(report.errors)
            for field in fields:
                file_id = report.values.get(field.name)
                if field.type == FieldType.FILE and file_id and not await self.files.exists(file_id):
                    errors.setdefault(field.name, []).append(f"Unknown file id '{file_id}'")
            stored: Dict[str, List[str]] = {}
            for name, upload in slots.items():
                ids = uploads.get(name, activity.files.get(name, []))
                ids = [ids] if isinstance(ids, str) else list(ids)
                records = []
                for file_id in ids:
                    record = await self.files.get(file_id)
                    if record is None:
                        errors.setdefault(name, []).append(f"Unknown file id '{file_id}'")
                    else:
                        records.append(record)
                problems = FieldValidator.check_uploads(upload, records)
                if problems:
                    errors.setdefault(name, []).extend(problems)
                stored[name] = ids
            if errors:
                raise FieldValidationFailed(errors)

            declared = {field.name for field in fields}
            activity.set_variables(report.values)
            activity.set_variables({k: v for k, v in submitted.items() if k not in declared})
            activity.files.update(stored)
            activity.mark_completed()
            await self.instances.save(instance)
            logger.info(f"Human task {activity_id} completed in {instance_id}")

            resolver = await self._resolver(instance)
            return await self._proceed(instance, resolver, activity_id)

    async def get_current_task(self, instance_id: str) -> Optional[HumanTask]:
        instance = await self._load(instance_id)
        activity = instance.activity(instance.current_activity) if instance.current_activity else None
        if isinstance(activity, HumanActivityInstance) and activity.status == ActivityStatus.RUNNING:
            return human_task(activity)
        return None

    async def complete_process(
        self, instance_id: str, reason: str = "Process completed successfully", success: bool = True
    ) -> ExecutionResult:
        async with self._lock(instance_id):
            return await self._finish(await self._load(instance_id), reason, success)

    async def rerun(self, instance_id: str) -> ExecutionResult:
        """Run an instance again from its start activity.

        Statuses and routing state are reset; variable values are kept so
        earlier answers become the defaults of the new run.
        """

        async with self._lock(instance_id):
            instance = await self._load(instance_id)
            resolver = await self._resolver(instance)
            for activity in instance.activities.values():
                activity.reset()
            instance.status = ProcessStatus.RUNNING
            instance.started_at = utcnow()
            instance.completed_at = None
            instance.aggregate_pass_fail = None
            instance.execution.clear()
            await self.instances.save(instance)
            logger.info(f"Rerunning instance {instance_id}")
            return await self._start(instance, resolver)

    async def restart(self, instance_id: str) -> ExecutionResult:
        return await self.rerun(instance_id)

    async def resume(self, instance_id: str) -> ExecutionResult:
        """Re-plan the pointer from completed activities and run on."""
        async with self._lock(instance_id):
            instance = await self._load(instance_id)
            if instance.status != ProcessStatus.RUNNING:
                return self._result(instance, f"Process is {instance.status.value}")
            resolver = await self._resolver(instance)
            try:
                plan = resolver.plan(instance)
            except JpelError as exc:
                fallback = instance.current_activity or resolver.definition.start_id
                return await self._fail(instance, exc.activity_id or fallback, exc)
            if plan is None:
                return await self._finish(instance, "All activities are completed", True)

            for running_id in instance.running_activities():
                if running_id != plan.leaf:
                    instance.activities[running_id].status = ActivityStatus.PENDING
            instance.execution.current_activity = plan.leaf
            instance.execution.call_stack = plan.call_stack
            for frame in plan.call_stack:
                record = instance.activity(frame.activity_id)
                if isinstance(record, SequenceActivityInstance):
                    record.current_index = frame.position
            await self.instances.save(instance)
            logger.info(f"Resumed instance {instance_id} at {plan.leaf}")
            return await self._drive(instance, resolver)

    async def cancel(self, instance_id: str) -> ExecutionResult:
        async with self._lock(instance_id):
            instance = await self._load(instance_id)
            if instance.status != ProcessStatus.RUNNING:
                return self._result(instance, f"Process is {instance.status.value}")
            now = utcnow()
            for running_id in instance.running_activities():
                activity = instance.activities[running_id]
                activity.status = ActivityStatus.CANCELLED
                activity.completed_at = now
            instance.status = ProcessStatus.CANCELLED
            instance.completed_at = now
            instance.execution.clear()
            await self.instances.save(instance)
            logger.info(f"Cancelled instance {instance_id}")
            return self._result(instance, "Process cancelled")

    # ------------------------------------------------------------------
    # Navigation (read-only)
    async def navigate_to_start(self, instance_id: str) -> ExecutionResult:
        instance = await self._load(instance_id)
        resolver = await self._resolver(instance)
        leaf = resolver.first_leaf(resolver.definition.start_id, instance)
        return ExecutionResult(
            instance_id=instance.instance_id,
            status=instance.status,
            current_activity=leaf,
            message=f"Navigated to start activity: {leaf}",
        )

    async def navigate_to_next_pending(self, instance_id: str) -> ExecutionResult:
        instance = await self._load(instance_id)
        resolver = await self._resolver(instance)
        plan = resolver.plan(instance)
        if plan is None:
            return ExecutionResult(
                instance_id=instance.instance_id,
                status=ProcessStatus.COMPLETED,
                message="All activities are completed",
            )
        activity = instance.activity(plan.leaf)
        return ExecutionResult(
            instance_id=instance.instance_id,
            status=instance.status,
            current_activity=plan.leaf,
            message=f"Navigated to next pending activity: {plan.leaf}",
            human_task=human_task(activity) if isinstance(activity, HumanActivityInstance) else None,
        )

    async def get_statistics(self) -> Dict[str, Any]:
        return {
            "processes": await self.definitions.count(),
            "instances": await self.instances.count(),
            "byStatus": await self.instances.count_by_status(),
            "waitingForHumanTask": len(await self.instances.find_waiting_for_human_task()),
            "averageExecutionTime": await self.instances.get_average_execution_time(),
        }

    # ------------------------------------------------------------------
    # Execution loop
    async def _drive(self, instance: ProcessInstance, resolver: FlowResolver) -> ExecutionResult:
        while True:
            if instance.status != ProcessStatus.RUNNING:
                return self._result(instance, f"Process is {instance.status.value}")
            current_id = instance.current_activity
            if current_id is None:
                return await self._finish(instance, "Process completed successfully", True)
            activity = instance.activity(current_id)
            if activity is None:
                raise ActivityNotFound(current_id)
            try:
                outcome = await self._execute(instance, resolver, activity)
            except JpelError as exc:
                return await self._fail(instance, exc.activity_id or current_id, exc)
            if outcome is not None:
                return outcome

    async def _execute(
        self, instance: ProcessInstance, resolver: FlowResolver, activity: BaseActivityInstance
    ) -> Optional[ExecutionResult]:
        """Run one activity; a result means execution stops here."""

        if isinstance(activity, HumanActivityInstance):
            if activity.status != ActivityStatus.RUNNING:
                activity.mark_running()
                await self.instances.save(instance)
                logger.info(f"Waiting for human task {activity.id} in {instance.instance_id}")
            return self._result(instance, f"Waiting for input on {activity.id}")

        if isinstance(activity, ComputeActivityInstance):
            activity.mark_running()
            produced = self.evaluator.execute_script(activity.definition.code, instance, activity.id)
            activity.set_variables(produced)
            return await self._complete_leaf(instance, resolver, activity)

        if isinstance(activity, ApiActivityInstance):
            activity.mark_running()
            await self.instances.save(instance)
            response = await self.api_executor.execute(activity.definition, instance)
            activity.set_variables(response)
            if activity.definition.code:
                activity.set_variables(
                    self.evaluator.execute_script(activity.definition.code, instance, activity.id)
                )
            return await self._complete_leaf(instance, resolver, activity)

        if isinstance(activity, TerminateActivityInstance):
            activity.mark_completed()
            definition = activity.definition
            return await self._finish(
                instance,
                definition.reason or "Process terminated",
                definition.result != "failure",
            )

        if isinstance(
            activity,
            (
                SequenceActivityInstance,
                ParallelActivityInstance,
                BranchActivityInstance,
                SwitchActivityInstance,
            ),
        ):
            return await self._route_to(instance, resolver, activity.id)

        raise UnknownActivityType(activity.id, activity.type)

    async def _complete_leaf(
        self, instance: ProcessInstance, resolver: FlowResolver, activity: BaseActivityInstance
    ) -> Optional[ExecutionResult]:
        activity.mark_completed()
        logger.info(f"Activity {activity.id} completed in {instance.instance_id}")
        return await self._continue(instance, resolver, activity.id)

    async def _continue(
        self, instance: ProcessInstance, resolver: FlowResolver, completed_id: str
    ) -> Optional[ExecutionResult]:
        while True:
            advance = resolver.next_after_leaf(completed_id, instance)
            self._apply_advance(instance, advance)
            if advance.next_ref is None:
                return await self._finish(instance, "Process completed successfully", True)
            fell_through = self._enter(instance, resolver, advance.next_ref)
            if fell_through is None:
                await self.instances.save(instance)
                return None
            completed_id = fell_through

    async def _route_to(
        self, instance: ProcessInstance, resolver: FlowResolver, ref: str
    ) -> Optional[ExecutionResult]:
        fell_through = self._enter(instance, resolver, ref)
        if fell_through is None:
            await self.instances.save(instance)
            return None
        return await self._continue(instance, resolver, fell_through)

    def _enter(self, instance: ProcessInstance, resolver: FlowResolver, ref: str) -> Optional[str]:
        """Point the instance at the first leaf under ``ref``.

        Returns the id of a branch that routed nowhere, if any.
        """
        descent = resolver.descend(ref, instance)
        for entry in descent.entries:
            self._record_entry(instance, entry)
        instance.execution.current_activity = descent.leaf
        return descent.fell_through

    def _record_entry(self, instance: ProcessInstance, entry: ContainerEntry) -> None:
        record = instance.activity(entry.activity_id)
        if isinstance(record, SequenceActivityInstance):
            record.started_at = record.started_at or utcnow()
            record.current_index = entry.position
            record.sequence_activities = record.definition.children()
        elif isinstance(record, ParallelActivityInstance):
            record.started_at = record.started_at or utcnow()
            record.parallel_state = "running"
            record.active_activities = record.definition.children()
            record.completed_activities = []
        elif isinstance(record, BranchActivityInstance):
            record.condition_result = entry.condition_result
            record.next_activity = entry.target
            record.mark_completed()
            logger.debug(f"Branch {entry.activity_id} evaluated to {entry.condition_result}")
        elif isinstance(record, SwitchActivityInstance):
            record.expression_value = entry.expression_value
            record.matched_case = entry.matched_case
            record.next_activity = entry.target
            record.mark_completed()
            logger.debug(f"Switch {entry.activity_id} matched case {entry.matched_case}")
        if entry.target is not None:
            instance.execution.push_frame(entry.activity_id, entry.position)

    def _apply_advance(self, instance: ProcessInstance, advance: Advance) -> None:
        instance.execution.call_stack = advance.call_stack
        for sequence_id, position in advance.positions.items():
            record = instance.activity(sequence_id)
            if isinstance(record, SequenceActivityInstance):
                record.current_index = position
        for parallel_id, children in advance.parallel_completed.items():
            record = instance.activity(parallel_id)
            if isinstance(record, ParallelActivityInstance):
                record.completed_activities.extend(
                    child for child in children if child not in record.completed_activities
                )
        for container_id in advance.completed_containers:
            record = instance.activity(container_id)
            if record is None:
                continue
            if not record.is_completed:
                record.mark_completed()
            if isinstance(record, ParallelActivityInstance):
                record.parallel_state = "completed"

    # ------------------------------------------------------------------
    # Outcomes
    def _result(self, instance: ProcessInstance, message: Optional[str] = None) -> ExecutionResult:
        current = instance.current_activity
        activity = instance.activity(current) if current else None
        task = None
        if (
            instance.status == ProcessStatus.RUNNING
            and isinstance(activity, HumanActivityInstance)
            and activity.status == ActivityStatus.RUNNING
        ):
            task = human_task(activity)
        return ExecutionResult(
            instance_id=instance.instance_id,
            status=instance.status,
            current_activity=current,
            message=message,
            human_task=task,
        )

    async def _finish(self, instance: ProcessInstance, reason: str, success: bool) -> ExecutionResult:
        instance.status = ProcessStatus.COMPLETED if success else ProcessStatus.FAILED
        instance.completed_at = utcnow()
        instance.execution.clear()
        instance.aggregate_pass_fail = aggregate_pass_fail(instance)
        await self.instances.save(instance)
        logger.info(f"Instance {instance.instance_id} finished ({instance.status.value}): {reason}")
        return self._result(instance, reason)

    async def _fail(self, instance: ProcessInstance, activity_id: str, exc: Exception) -> ExecutionResult:
        activity = instance.activity(activity_id)
        if activity is not None:
            activity.mark_failed(str(exc))
        message = f"Activity '{activity_id}' failed: {exc}"
        logger.warning(f"Instance {instance.instance_id}: {message}")
        return await self._finish(instance, message, False)
