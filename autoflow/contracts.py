"""Core data contracts: workflow graphs, enrollments and their data context."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from .constants import (
    DEFAULT_LOOP_PARALLELISM,
    ERROR,
    LOOP_BODY,
    LOOP_DONE,
    NEXT,
    NO,
    TRY,
    YES,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {EnrollmentStatus.COMPLETED, EnrollmentStatus.FAILED, EnrollmentStatus.CANCELED}
)


class Condition(BaseModel):
    """``left <operator> right`` where both operands may hold placeholders."""

    left: Any
    operator: str
    right: Any = None


class Criteria(BaseModel):
    """A group of conditions combined with AND (``match_all``) or OR."""

    conditions: List[Condition] = Field(default_factory=list)
    match_all: bool = True


# ----------------------------------------------------------------------
# Step configuration variants


class TriggerConfig(BaseModel):
    event_type: str
    entity_type: Optional[str] = None
    filters: List[Condition] = Field(default_factory=list)


class ActionConfig(BaseModel):
    action_type: str
    params: Dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: Optional[float] = None


class DelayConfig(BaseModel):
    mode: Literal["duration", "until_date", "until_time", "until_weekday"] = "duration"
    amount: Optional[float] = None
    unit: Literal["minutes", "hours", "days", "weeks"] = "days"
    on_date: Optional[datetime] = None
    at_time: Optional[str] = None
    weekday: Optional[int] = Field(default=None, ge=0, le=6)

    @model_validator(mode="after")
    def _check_mode_fields(self) -> "DelayConfig":
        if self.mode == "duration" and self.amount is None:
            raise ValueError("duration delays require 'amount'")
        if self.mode == "until_date" and self.on_date is None:
            raise ValueError("until_date delays require 'on_date'")
        if self.mode == "until_time" and not self.at_time:
            raise ValueError("until_time delays require 'at_time'")
        if self.mode == "until_weekday" and self.weekday is None:
            raise ValueError("until_weekday delays require 'weekday'")
        return self


class ConditionConfig(Condition):
    pass


class LoopConfig(BaseModel):
    source: Any
    item_var: str = "item"
    index_var: str = "index"
    mode: Literal["sequential", "parallel"] = "sequential"
    parallelism: int = Field(default=DEFAULT_LOOP_PARALLELISM, ge=1)
    max_iterations: Optional[int] = Field(default=None, ge=1)
    aggregate: bool = False
    result_var: Optional[str] = None
    collect: Optional[str] = None

    @model_validator(mode="after")
    def _check_aggregation(self) -> "LoopConfig":
        if self.aggregate and not self.result_var:
            raise ValueError("aggregating loops require 'result_var'")
        return self


class ParallelConfig(BaseModel):
    branches: List[str]
    join: Literal["wait_all", "first_complete"] = "wait_all"
    result_var: Optional[str] = None

    @field_validator("branches")
    @classmethod
    def _unique_branches(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("parallel steps need at least one branch")
        if len(set(v)) != len(v):
            raise ValueError("parallel branch ids must be unique")
        return v


class TryCatchConfig(BaseModel):
    max_retries: int = Field(default=0, ge=0)
    error_var: str = "error"


class SubWorkflowConfig(BaseModel):
    workflow_id: str
    variables: Dict[str, Any] = Field(default_factory=dict)
    result_var: Optional[str] = None


class AIAgentConfig(BaseModel):
    prompt: str
    include_entity: bool = True
    include_variables: bool = True
    parse_json: bool = False
    result_var: str = "ai_response"
    timeout_seconds: Optional[float] = None


class TransformConfig(BaseModel):
    assignments: Dict[str, Any]


# ----------------------------------------------------------------------
# Step definitions


class _StepBase(BaseModel):
    id: str
    name: Optional[str] = None
    edges: Dict[str, str] = Field(default_factory=dict)

    def target(self, branch: str) -> Optional[str]:
        """Return the step id reached through ``branch``, if any."""
        return self.edges.get(branch)

    def allowed_branches(self) -> set[str]:
        return {NEXT}

    @property
    def label(self) -> str:
        return self.name or self.id


class TriggerStep(_StepBase):
    type: Literal["trigger"] = "trigger"
    config: TriggerConfig


class ActionStep(_StepBase):
    type: Literal["action"] = "action"
    config: ActionConfig


class DelayStep(_StepBase):
    type: Literal["delay"] = "delay"
    config: DelayConfig


class ConditionStep(_StepBase):
    type: Literal["condition"] = "condition"
    config: ConditionConfig

    def allowed_branches(self) -> set[str]:
        return {YES, NO}


class LoopStep(_StepBase):
    type: Literal["loop"] = "loop"
    config: LoopConfig

    def allowed_branches(self) -> set[str]:
        return {LOOP_BODY, LOOP_DONE}


class ParallelStep(_StepBase):
    type: Literal["parallel"] = "parallel"
    config: ParallelConfig

    def allowed_branches(self) -> set[str]:
        return set(self.config.branches) | {NEXT}


class TryCatchStep(_StepBase):
    type: Literal["try_catch"] = "try_catch"
    config: TryCatchConfig = Field(default_factory=TryCatchConfig)

    def allowed_branches(self) -> set[str]:
        return {TRY, ERROR, NEXT}


class SubWorkflowStep(_StepBase):
    type: Literal["sub_workflow"] = "sub_workflow"
    config: SubWorkflowConfig


class AIAgentStep(_StepBase):
    type: Literal["ai_agent"] = "ai_agent"
    config: AIAgentConfig


class TransformStep(_StepBase):
    type: Literal["transform"] = "transform"
    config: TransformConfig


StepDefinition = Annotated[
    Union[
        TriggerStep,
        ActionStep,
        DelayStep,
        ConditionStep,
        LoopStep,
        ParallelStep,
        TryCatchStep,
        SubWorkflowStep,
        AIAgentStep,
        TransformStep,
    ],
    Field(discriminator="type"),
]


class WorkflowDefinition(BaseModel):
    """A graph of steps entered through exactly one trigger step."""

    id: str = Field(default_factory=_new_id)
    name: str
    description: Optional[str] = None
    entity_type: str = "contact"
    status: WorkflowStatus = WorkflowStatus.DRAFT
    steps: List[StepDefinition] = Field(default_factory=list)
    allow_reenrollment: bool = False
    enrollment_criteria: Optional[Criteria] = None
    goal_criteria: Optional[Criteria] = None
    created_at: datetime = Field(default_factory=_utcnow)
    activated_at: Optional[datetime] = None

    def step(self, step_id: str) -> Optional[StepDefinition]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def trigger_step(self) -> Optional[TriggerStep]:
        return next((s for s in self.steps if s.type == "trigger"), None)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "WorkflowDefinition":
        return cls.model_validate_json(data)


# ----------------------------------------------------------------------
# Runtime state


class EntityRef(BaseModel):
    type: str
    id: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.type}:{self.id}"


class DataContext(BaseModel):
    """Variables and recorded step outputs threaded through an enrollment."""

    variables: Dict[str, Any] = Field(default_factory=dict)
    step_outputs: Dict[str, Any] = Field(default_factory=dict)

    def set_variable(self, name: str, value: Any) -> None:
        self.variables[name] = value

    def record_output(self, step_id: str, output: Any) -> None:
        self.step_outputs[step_id] = output

    def merge(self, other: "DataContext") -> None:
        """Overwrite entries with those of ``other``; nothing is deleted."""
        self.variables.update(other.variables)
        self.step_outputs.update(other.step_outputs)

    def isolated_copy(self) -> "DataContext":
        return self.model_copy(deep=True)

    def changes_since(self, base: "DataContext") -> "DataContext":
        """Entries added or changed relative to ``base``, e.g. a pre-fork snapshot."""
        return DataContext(
            variables=_changed(self.variables, base.variables),
            step_outputs=_changed(self.step_outputs, base.step_outputs),
        )


def _changed(current: Dict[str, Any], base: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value
        for key, value in current.items()
        if key not in base or base[key] != value
    }


class ErrorInfo(BaseModel):
    step_id: Optional[str] = None
    kind: str
    message: str
    at: datetime = Field(default_factory=_utcnow)


class StepLogEntry(BaseModel):
    """One executed step, as shown to operators and in simulation traces."""

    step_id: str
    step_type: str
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None
    duration_ms: float = 0.0
    outcome: str = "running"
    input: Any = None
    output: Any = None
    error: Optional[ErrorInfo] = None
    attempt: int = 1
    parent_step_id: Optional[str] = None
    branch: Optional[str] = None
    iteration: Optional[int] = None
    simulated: bool = False


class Enrollment(BaseModel):
    """One execution instance of a workflow against one business record."""

    id: str = Field(default_factory=_new_id)
    workflow_id: str
    entity: EntityRef
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    current_step_id: Optional[str] = None
    data_context: DataContext = Field(default_factory=DataContext)
    log: List[StepLogEntry] = Field(default_factory=list)
    attempts: int = 0
    resume_at: Optional[datetime] = None
    delay_started_at: Optional[datetime] = None
    last_error: Optional[ErrorInfo] = None
    source: Literal["automatic", "manual", "bulk", "sub_workflow", "simulation"] = (
        "automatic"
    )
    parent_enrollment_id: Optional[str] = None
    parent_step_id: Optional[str] = None
    awaiting_enrollment_id: Optional[str] = None
    depth: int = 0
    goal_met: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "Enrollment":
        return cls.model_validate_json(data)


class BusinessEvent(BaseModel):
    """Record lifecycle event consumed by the trigger dispatcher."""

    event_id: str = Field(default_factory=_new_id)
    event_type: str
    entity_type: str
    entity_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "BusinessEvent":
        return cls.model_validate_json(data)
