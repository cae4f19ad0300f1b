"""Simulation runner: executes a workflow against a real record without persisting.

A simulated enrollment lives only in memory. With ``dry_run`` every action is
routed to its executor's ``simulate`` echo and ``ai_agent`` calls are not
sent; with ``fast_forward`` delays resolve to zero wait. Condition, loop and
branch logic still evaluate against the record's real data.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .actions import ActionRegistry
from .config import ExecutionConfig
from .contracts import (
    DataContext,
    Enrollment,
    EnrollmentStatus,
    EntityRef,
    ErrorInfo,
    StepLogEntry,
    SubWorkflowStep,
    WorkflowDefinition,
    WorkflowStatus,
)
from .errors import PermanentError, WorkflowNotFound
from .interpreter import StepInterpreter, StepOutcome
from .persistence import WorkflowRepository
from .reasoning import ReasoningService
from .records import RecordNotFound, RecordStore
from .utils.clock import FrozenClock, utcnow
from .validation import ensure_valid

logger = logging.getLogger(__name__)

_TIMING_FIELDS = {"started_at", "finished_at", "duration_ms"}


class SimulationReport(BaseModel):
    workflow_id: str
    entity: EntityRef
    dry_run: bool
    fast_forward: bool
    status: EnrollmentStatus
    trace: List[StepLogEntry] = Field(default_factory=list)
    final_context: DataContext = Field(default_factory=DataContext)
    error: Optional[ErrorInfo] = None
    resume_at: Optional[datetime] = None
    goal_met: bool = False
    duration_ms: float = 0.0

    def comparable_trace(self) -> List[Dict[str, Any]]:
        """The trace without wall-clock timing, for comparing runs."""
        comparable = []
        for entry in self.trace:
            data = entry.model_dump(mode="json", exclude=_TIMING_FIELDS)
            if data.get("error"):
                data["error"].pop("at", None)
            comparable.append(data)
        return comparable

    @property
    def simulated_steps(self) -> List[str]:
        return [e.step_id for e in self.trace if e.simulated]


class _SimulatedLauncher:
    """Runs sub-workflows as further in-memory simulated enrollments."""

    def __init__(self, runner: "SimulationRunner", interpreter: StepInterpreter) -> None:
        self._runner = runner
        self._interpreter = interpreter
        self._children: Dict[str, Enrollment] = {}

    async def start(
        self, parent: Enrollment, step: SubWorkflowStep, variables: Dict[str, Any]
    ) -> Enrollment:
        workflow = await self._runner.repository.get_workflow(step.config.workflow_id)
        if workflow is None or workflow.status == WorkflowStatus.ARCHIVED:
            raise PermanentError(f"Sub-workflow {step.config.workflow_id} not found", step.id)
        trigger = workflow.trigger_step()
        child = Enrollment(
            id=f"{parent.id}/{step.id}",
            workflow_id=workflow.id,
            entity=parent.entity,
            current_step_id=trigger.id if trigger else None,
            data_context=DataContext(variables=dict(variables)),
            source="simulation",
            parent_enrollment_id=parent.id,
            parent_step_id=step.id,
            depth=parent.depth + 1,
        )
        self._children[child.id] = child
        await self._runner.drive(self._interpreter, workflow, child)
        return child

    async def fetch(self, enrollment_id: str) -> Optional[Enrollment]:
        return self._children.get(enrollment_id)


class SimulationRunner:
    def __init__(
        self,
        repository: WorkflowRepository,
        registry: ActionRegistry,
        records: RecordStore,
        reasoning: Optional[ReasoningService] = None,
        config: Optional[ExecutionConfig] = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.records = records
        self.reasoning = reasoning
        self.config = config or ExecutionConfig()

    async def run(
        self,
        workflow: WorkflowDefinition | str,
        entity_id: str,
        entity_type: Optional[str] = None,
        dry_run: bool = True,
        fast_forward: bool = True,
        variables: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> SimulationReport:
        """Simulate ``workflow`` (a definition or a stored id) for one record.

        ``now`` pins the simulated clock; two runs with the same inputs and
        ``now`` produce identical traces.
        """
        if isinstance(workflow, str):
            found = await self.repository.get_workflow(workflow)
            if found is None:
                raise WorkflowNotFound(workflow)
            workflow = found
        ensure_valid(workflow, self.registry.action_types())

        entity_type = entity_type or workflow.entity_type
        if await self.records.get(entity_type, entity_id) is None:
            raise RecordNotFound(f"{entity_type} {entity_id} not found")

        interpreter = StepInterpreter(
            self.registry,
            self.records,
            reasoning=self.reasoning,
            config=self.config,
            clock=FrozenClock(now or utcnow()),
            dry_run=dry_run,
            fast_forward=fast_forward,
        )
        interpreter.launcher = _SimulatedLauncher(self, interpreter)

        trigger = workflow.trigger_step()
        enrollment = Enrollment(
            id=f"simulation:{workflow.id}:{entity_type}:{entity_id}",
            workflow_id=workflow.id,
            entity=EntityRef(type=entity_type, id=entity_id),
            current_step_id=trigger.id if trigger else None,
            data_context=DataContext(
                variables={
                    **(variables or {}),
                    "trigger": {
                        "event_type": trigger.config.event_type if trigger else None,
                        "simulated": True,
                        "payload": {},
                    },
                }
            ),
            source="simulation",
        )

        started = time.perf_counter()
        await self.drive(interpreter, workflow, enrollment)
        report = SimulationReport(
            workflow_id=workflow.id,
            entity=enrollment.entity,
            dry_run=dry_run,
            fast_forward=fast_forward,
            status=enrollment.status,
            trace=enrollment.log,
            final_context=enrollment.data_context,
            error=enrollment.last_error,
            resume_at=enrollment.resume_at,
            goal_met=enrollment.goal_met,
            duration_ms=round((time.perf_counter() - started) * 1000, 3),
        )
        logger.info(
            f"Simulated {workflow.id} for {enrollment.entity}: {report.status.value} "
            f"after {len(report.trace)} step(s)"
        )
        return report

    async def drive(
        self,
        interpreter: StepInterpreter,
        workflow: WorkflowDefinition,
        enrollment: Enrollment,
    ) -> Enrollment:
        """Advance ``enrollment`` until it stops; failures are not retried."""
        steps = 0
        while steps < self.config.max_steps_per_turn:
            outcome = await interpreter.advance(workflow, enrollment)
            steps += 1
            if outcome.kind == StepOutcome.ADVANCE:
                enrollment.current_step_id = outcome.next_step_id
                enrollment.delay_started_at = None
                continue
            if outcome.kind == StepOutcome.SUSPEND:
                enrollment.status = EnrollmentStatus.WAITING
                enrollment.resume_at = outcome.resume_at
            elif outcome.kind == StepOutcome.COMPLETE:
                enrollment.status = EnrollmentStatus.COMPLETED
                enrollment.goal_met = await interpreter.goal_reached(workflow, enrollment)
            else:
                error = outcome.error
                enrollment.status = EnrollmentStatus.FAILED
                enrollment.last_error = ErrorInfo(
                    step_id=error.step_id, kind=error.kind.value, message=error.message,
                    at=interpreter.clock(),
                )
            return enrollment

        enrollment.status = EnrollmentStatus.FAILED
        enrollment.last_error = ErrorInfo(
            step_id=enrollment.current_step_id,
            kind="iteration_limit",
            message=f"Simulation stopped after {steps} steps",
            at=interpreter.clock(),
        )
        return enrollment
