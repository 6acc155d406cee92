"""Data model for process definitions and running process instances."""

from __future__ import annotations

import fnmatch
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def extract_activity_id(ref: str) -> str:
    """Strip the optional ``a:`` prefix from an activity reference."""
    return ref[2:] if ref.startswith("a:") else ref


class JpelModel(BaseModel):
    """Base model; documents use camelCase keys, Python uses snake_case."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


# ----------------------------------------------------------------------
# Enumerations


class ActivityType(str, Enum):
    HUMAN = "human"
    COMPUTE = "compute"
    API = "api"
    SEQUENCE = "sequence"
    PARALLEL = "parallel"
    BRANCH = "branch"
    SWITCH = "switch"
    TERMINATE = "terminate"


CONTAINER_TYPES = frozenset(
    {ActivityType.SEQUENCE, ActivityType.PARALLEL, ActivityType.BRANCH, ActivityType.SWITCH}
)


class ActivityStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class ProcessStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PassFail(str, Enum):
    PASS = "pass"
    FAIL = "fail"


class AggregatePassFail(str, Enum):
    ALL_PASS = "all_pass"
    ANY_FAIL = "any_fail"


class FieldType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    SELECT = "select"
    DATE = "date"
    FILE = "file"


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


# ----------------------------------------------------------------------
# Fields and variables


class ValueOption(JpelModel):
    value: Union[bool, int, float, str]
    label: Optional[str] = None


class InputField(JpelModel):
    """Schema of a single human-task input or process variable."""

    name: str
    label: Optional[str] = None
    hint: Optional[str] = None
    type: FieldType = FieldType.TEXT
    required: bool = False
    options: Optional[List[ValueOption]] = None
    min: Optional[float] = None
    max: Optional[float] = None
    units: Optional[str] = None
    default_value: Any = None
    description: Optional[str] = None
    pattern: Optional[str] = None
    pattern_description: Optional[str] = None

    @field_validator("options", mode="before")
    @classmethod
    def wrap_plain_options(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [
                item if isinstance(item, (dict, ValueOption)) else {"value": item}
                for item in value
            ]
        return value

    def option_values(self) -> List[Any]:
        return [option.value for option in self.options or []]


class Variable(InputField):
    """Runtime variable: a field schema carrying its current value."""

    value: Any = None

    @classmethod
    def from_field(cls, field: InputField) -> "Variable":
        data = field.model_dump()
        data["value"] = field.default_value
        return cls.model_validate(data)

    @classmethod
    def infer(cls, name: str, value: Any) -> "Variable":
        if isinstance(value, bool):
            field_type = FieldType.BOOLEAN
        elif isinstance(value, (int, float)):
            field_type = FieldType.NUMBER
        else:
            field_type = FieldType.TEXT
        return cls(name=name, type=field_type, value=value)


# ----------------------------------------------------------------------
# Activity definitions


class ActivityBase(JpelModel):
    id: str = ""
    name: Optional[str] = None
    description: Optional[str] = None
    timeout: Optional[float] = None

    def children(self) -> List[str]:
        """Activity ids this activity can route to."""
        return []


class FileUpload(JpelModel):
    """A slot for files a human task asks its user to upload."""

    name: str
    description: Optional[str] = None
    allowed_types: List[str] = Field(default_factory=list)
    max_bytes: Optional[int] = None
    min_count: int = 0
    max_count: Optional[int] = None

    def accepts(self, content_type: str, filename: str) -> bool:
        """Match a media type pattern (``image/*``) or a file extension (``.pdf``)."""
        if not self.allowed_types:
            return True
        for allowed in self.allowed_types:
            if allowed.startswith("."):
                if filename.lower().endswith(allowed.lower()):
                    return True
            elif fnmatch.fnmatch(content_type.lower(), allowed.lower()):
                return True
        return False


class Attachment(JpelModel):
    """A document shown to the user alongside a human task."""

    name: str
    url: str
    media_type: str
    bytes: Optional[int] = None


class HumanActivity(ActivityBase):
    type: Literal["human"] = "human"
    prompt: Optional[str] = None
    inputs: List[InputField] = Field(default_factory=list)
    file_uploads: List[FileUpload] = Field(default_factory=list)
    attachments: List[Attachment] = Field(default_factory=list)


class ComputeActivity(ActivityBase):
    type: Literal["compute"] = "compute"
    code: List[str] = Field(default_factory=list)

    @field_validator("code", mode="before")
    @classmethod
    def split_code(cls, value: Any) -> Any:
        return value.splitlines() if isinstance(value, str) else value


class ApiActivity(ActivityBase):
    type: Literal["api"] = "api"
    method: HttpMethod = HttpMethod.GET
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    query_params: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    code: List[str] = Field(default_factory=list)

    @field_validator("code", mode="before")
    @classmethod
    def split_code(cls, value: Any) -> Any:
        return value.splitlines() if isinstance(value, str) else value

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class SequenceActivity(ActivityBase):
    type: Literal["sequence"] = "sequence"
    activities: List[str] = Field(default_factory=list)

    def children(self) -> List[str]:
        return [extract_activity_id(ref) for ref in self.activities]


class ParallelActivity(ActivityBase):
    type: Literal["parallel"] = "parallel"
    activities: List[str] = Field(default_factory=list)

    def children(self) -> List[str]:
        return [extract_activity_id(ref) for ref in self.activities]


class BranchActivity(ActivityBase):
    type: Literal["branch"] = "branch"
    condition: str
    then: str
    else_: Optional[str] = Field(default=None, alias="else")

    def children(self) -> List[str]:
        refs = [self.then] + ([self.else_] if self.else_ else [])
        return [extract_activity_id(ref) for ref in refs]


class SwitchActivity(ActivityBase):
    type: Literal["switch"] = "switch"
    expression: str
    cases: Dict[str, str] = Field(default_factory=dict)
    default: Optional[str] = None

    def children(self) -> List[str]:
        refs = list(self.cases.values()) + ([self.default] if self.default else [])
        return [extract_activity_id(ref) for ref in refs]


class TerminateActivity(ActivityBase):
    type: Literal["terminate"] = "terminate"
    result: Literal["success", "failure"] = "success"
    reason: Optional[str] = None


class UnknownActivity(ActivityBase):
    """Activity whose type this runtime does not implement."""

    model_config = ConfigDict(extra="allow")

    type: str


_KNOWN_TYPES = frozenset(kind.value for kind in ActivityType)


def _activity_kind(value: Any) -> str:
    kind = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    if isinstance(kind, ActivityType):
        kind = kind.value
    return kind if kind in _KNOWN_TYPES else "unknown"


ActivityDefinition = Annotated[
    Union[
        Annotated[HumanActivity, Tag("human")],
        Annotated[ComputeActivity, Tag("compute")],
        Annotated[ApiActivity, Tag("api")],
        Annotated[SequenceActivity, Tag("sequence")],
        Annotated[ParallelActivity, Tag("parallel")],
        Annotated[BranchActivity, Tag("branch")],
        Annotated[SwitchActivity, Tag("switch")],
        Annotated[TerminateActivity, Tag("terminate")],
        Annotated[UnknownActivity, Tag("unknown")],
    ],
    Discriminator(_activity_kind),
]


class ProcessDefinition(JpelModel):
    id: str
    name: str
    description: Optional[str] = None
    version: Optional[str] = None
    variables: List[InputField] = Field(default_factory=list)
    start: str
    activities: Dict[str, ActivityDefinition] = Field(default_factory=dict)

    @property
    def start_id(self) -> str:
        return extract_activity_id(self.start)

    def has_activity(self, ref: str) -> bool:
        return extract_activity_id(ref) in self.activities

    def summary(self) -> "ProcessSummary":
        return ProcessSummary(
            id=self.id,
            name=self.name,
            description=self.description,
            version=self.version,
            activity_count=len(self.activities),
        )


class ProcessSummary(JpelModel):
    """Flyweight view of a definition used for listings."""

    id: str
    name: str
    description: Optional[str] = None
    version: Optional[str] = None
    activity_count: int = 0


# ----------------------------------------------------------------------
# Activity instances


class BaseActivityInstance(JpelModel):
    id: str
    status: ActivityStatus = ActivityStatus.PENDING
    pass_fail: Optional[PassFail] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    variables: List[Variable] = Field(default_factory=list)

    def variable_map(self) -> Dict[str, Any]:
        return {variable.name: variable.value for variable in self.variables}

    def get_variable(self, name: str) -> Optional[Variable]:
        for variable in self.variables:
            if variable.name == name:
                return variable
        return None

    def set_variable(self, name: str, value: Any) -> None:
        variable = self.get_variable(name)
        if variable is None:
            self.variables.append(Variable.infer(name, value))
        else:
            variable.value = value

    def set_variables(self, values: Mapping[str, Any]) -> None:
        for name, value in values.items():
            self.set_variable(name, value)

    def mark_running(self) -> None:
        self.status = ActivityStatus.RUNNING
        self.started_at = self.started_at or utcnow()
        self.error = None

    def mark_completed(self) -> None:
        self.status = ActivityStatus.COMPLETED
        self.started_at = self.started_at or utcnow()
        self.completed_at = utcnow()

    def mark_failed(self, error: str) -> None:
        self.status = ActivityStatus.FAILED
        self.error = error
        self.completed_at = utcnow()

    def reset(self) -> None:
        """Return to Pending; variable values are kept."""
        self.status = ActivityStatus.PENDING
        self.pass_fail = None
        self.started_at = None
        self.completed_at = None
        self.error = None

    @property
    def is_completed(self) -> bool:
        return self.status == ActivityStatus.COMPLETED


class HumanActivityInstance(BaseActivityInstance):
    type: Literal["human"] = "human"
    definition: HumanActivity
    #: Uploaded file ids per upload slot; kept across reruns like variables.
    files: Dict[str, List[str]] = Field(default_factory=dict)


class ComputeActivityInstance(BaseActivityInstance):
    type: Literal["compute"] = "compute"
    definition: ComputeActivity


class ApiActivityInstance(BaseActivityInstance):
    type: Literal["api"] = "api"
    definition: ApiActivity


class SequenceActivityInstance(BaseActivityInstance):
    type: Literal["sequence"] = "sequence"
    definition: SequenceActivity
    current_index: Optional[int] = None
    sequence_activities: List[str] = Field(default_factory=list)

    def reset(self) -> None:
        super().reset()
        self.current_index = None
        self.sequence_activities = []


class ParallelActivityInstance(BaseActivityInstance):
    type: Literal["parallel"] = "parallel"
    definition: ParallelActivity
    parallel_state: Optional[Literal["running", "completed"]] = None
    active_activities: List[str] = Field(default_factory=list)
    completed_activities: List[str] = Field(default_factory=list)

    def reset(self) -> None:
        super().reset()
        self.parallel_state = None
        self.active_activities = []
        self.completed_activities = []


class BranchActivityInstance(BaseActivityInstance):
    type: Literal["branch"] = "branch"
    definition: BranchActivity
    condition_result: Optional[bool] = None
    next_activity: Optional[str] = None

    def reset(self) -> None:
        super().reset()
        self.condition_result = None
        self.next_activity = None


class SwitchActivityInstance(BaseActivityInstance):
    type: Literal["switch"] = "switch"
    definition: SwitchActivity
    expression_value: Optional[str] = None
    matched_case: Optional[str] = None
    next_activity: Optional[str] = None

    def reset(self) -> None:
        super().reset()
        self.expression_value = None
        self.matched_case = None
        self.next_activity = None


class TerminateActivityInstance(BaseActivityInstance):
    type: Literal["terminate"] = "terminate"
    definition: TerminateActivity


class UnknownActivityInstance(BaseActivityInstance):
    type: str
    definition: UnknownActivity


ActivityInstance = Annotated[
    Union[
        Annotated[HumanActivityInstance, Tag("human")],
        Annotated[ComputeActivityInstance, Tag("compute")],
        Annotated[ApiActivityInstance, Tag("api")],
        Annotated[SequenceActivityInstance, Tag("sequence")],
        Annotated[ParallelActivityInstance, Tag("parallel")],
        Annotated[BranchActivityInstance, Tag("branch")],
        Annotated[SwitchActivityInstance, Tag("switch")],
        Annotated[TerminateActivityInstance, Tag("terminate")],
        Annotated[UnknownActivityInstance, Tag("unknown")],
    ],
    Discriminator(_activity_kind),
]

_INSTANCE_TYPES = {
    "human": HumanActivityInstance,
    "compute": ComputeActivityInstance,
    "api": ApiActivityInstance,
    "sequence": SequenceActivityInstance,
    "parallel": ParallelActivityInstance,
    "branch": BranchActivityInstance,
    "switch": SwitchActivityInstance,
    "terminate": TerminateActivityInstance,
}


def new_activity_instance(activity_id: str, definition: ActivityBase) -> BaseActivityInstance:
    """Create the Pending runtime counterpart of an activity definition."""
    kind = _activity_kind(definition)
    if kind == "unknown":
        return UnknownActivityInstance(
            id=activity_id, type=str(definition.type), definition=definition
        )
    instance = _INSTANCE_TYPES[kind](id=activity_id, definition=definition)
    if isinstance(instance, HumanActivityInstance):
        instance.variables = [Variable.from_field(field) for field in definition.inputs]
    return instance


# ----------------------------------------------------------------------
# Process instances


class ExecutionFrame(JpelModel):
    """One open container on the call stack."""

    activity_id: str
    parent_id: Optional[str] = None
    position: Optional[int] = None


class ExecutionContext(JpelModel):
    current_activity: Optional[str] = None
    call_stack: List[ExecutionFrame] = Field(default_factory=list)

    def current_frame(self) -> Optional[ExecutionFrame]:
        return self.call_stack[-1] if self.call_stack else None

    def push_frame(self, activity_id: str, position: Optional[int] = None) -> ExecutionFrame:
        parent = self.current_frame()
        frame = ExecutionFrame(
            activity_id=activity_id,
            parent_id=parent.activity_id if parent else None,
            position=position,
        )
        self.call_stack.append(frame)
        return frame

    def clear(self) -> None:
        self.current_activity = None
        self.call_stack = []


class ProcessInstance(JpelModel):
    instance_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    process_id: str
    title: Optional[str] = None
    status: ProcessStatus = ProcessStatus.RUNNING
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    activities: Dict[str, ActivityInstance] = Field(default_factory=dict)
    execution: ExecutionContext = Field(default_factory=ExecutionContext)
    aggregate_pass_fail: Optional[AggregatePassFail] = None

    @property
    def current_activity(self) -> Optional[str]:
        return self.execution.current_activity

    def activity(self, activity_id: str) -> Optional[BaseActivityInstance]:
        return self.activities.get(extract_activity_id(activity_id))

    def running_activities(self) -> List[str]:
        return [
            activity_id
            for activity_id, activity in self.activities.items()
            if activity.status == ActivityStatus.RUNNING
        ]

    def summary(self) -> "ProcessInstanceSummary":
        return ProcessInstanceSummary(
            instance_id=self.instance_id,
            process_id=self.process_id,
            title=self.title,
            status=self.status,
            current_activity=self.current_activity,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )


class ProcessInstanceSummary(JpelModel):
    instance_id: str
    process_id: str
    title: Optional[str] = None
    status: ProcessStatus
    current_activity: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None


class HumanTask(JpelModel):
    """What a waiting human activity asks of its user."""

    activity_id: str
    name: Optional[str] = None
    prompt: Optional[str] = None
    fields: List[Variable] = Field(default_factory=list)
    file_uploads: List[FileUpload] = Field(default_factory=list)
    attachments: List[Attachment] = Field(default_factory=list)
    files: Dict[str, List[str]] = Field(default_factory=dict)


class ExecutionResult(JpelModel):
    instance_id: str
    status: ProcessStatus
    current_activity: Optional[str] = None
    message: Optional[str] = None
    human_task: Optional[HumanTask] = None

    @property
    def is_waiting(self) -> bool:
        return self.human_task is not None


class ApiResponse(JpelModel):
    """Response envelope shared by transport adapters."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def ok(cls, data: Any = None) -> "ApiResponse":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "ApiResponse":
        return cls(success=False, error=error)
