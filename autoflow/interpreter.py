"""Step interpreter: advances one enrollment through its workflow graph.

``StepInterpreter.advance`` runs exactly one top-level step and reports what
should happen next. Compound steps (loop, parallel, try_catch) run their
nested sub-graphs to completion through the re-entrant ``run_subgraph``
within that single step. The interpreter mutates the enrollment's data
context and log; status transitions are applied by the caller.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    NamedTuple,
    Optional,
    Protocol,
    Tuple,
)

from .actions import ActionRegistry
from .conditions import criteria_met, evaluate_condition
from .config import ExecutionConfig
from .constants import ERROR, LOOP_BODY, LOOP_DONE, MAX_AI_TIMEOUT_SECONDS, NEXT, NO, TRY, YES
from .contracts import (
    ActionStep,
    AIAgentStep,
    ConditionStep,
    DataContext,
    DelayStep,
    Enrollment,
    EnrollmentStatus,
    ErrorInfo,
    LoopStep,
    ParallelStep,
    StepDefinition,
    StepLogEntry,
    SubWorkflowStep,
    TransformStep,
    TriggerStep,
    TryCatchStep,
    WorkflowDefinition,
)
from .delays import compute_wake_time, ensure_utc
from .errors import (
    ConfigurationError,
    IterationLimitError,
    PermanentError,
    StepError,
    TransientError,
    error_from_kind,
)
from .reasoning import ReasoningService
from .records import RecordStore
from .resolver import (
    ResolutionContext,
    require_resolved,
    resolve_structure,
    resolve_template,
    resolve_value,
)
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Outcomes


@dataclass(frozen=True)
class StepOutcome:
    """Result of advancing an enrollment by one step."""

    kind: str
    step_id: str
    next_step_id: Optional[str] = None
    branch: Optional[str] = None
    resume_at: Optional[datetime] = None
    error: Optional[StepError] = None

    ADVANCE = "advance"
    SUSPEND = "suspend"
    COMPLETE = "complete"
    ERROR = "error"

    @classmethod
    def advance(cls, step_id: str, next_step_id: str, branch: str) -> "StepOutcome":
        return cls(cls.ADVANCE, step_id, next_step_id=next_step_id, branch=branch)

    @classmethod
    def suspend(cls, step_id: str, resume_at: Optional[datetime]) -> "StepOutcome":
        return cls(cls.SUSPEND, step_id, resume_at=resume_at)

    @classmethod
    def complete(cls, step_id: str, branch: Optional[str] = None) -> "StepOutcome":
        return cls(cls.COMPLETE, step_id, branch=branch)

    @classmethod
    def failed(cls, step_id: str, error: StepError) -> "StepOutcome":
        return cls(cls.ERROR, step_id, error=error)


class SubgraphResult(NamedTuple):
    last_step_id: Optional[str]
    output: Any


class _Executed(NamedTuple):
    branch: Optional[str]
    input: Any = None
    output: Any = None
    suspend: bool = False
    resume_at: Optional[datetime] = None
    simulated: bool = False


@dataclass
class ExecutionScope:
    """Where a step reads and writes while it runs.

    Top-level steps carry the enrollment; nested steps run against either the
    enrollment's own context (sequential loops) or an isolated copy
    (parallel branches and iterations, try blocks).
    """

    data: DataContext
    log: List[StepLogEntry]
    entity_type: str
    enrollment: Optional[Enrollment] = None
    attempt: int = 1
    parent_step_id: Optional[str] = None
    branch: Optional[str] = None
    iteration: Optional[int] = None

    def child(self, **changes: Any) -> "ExecutionScope":
        changes.setdefault("enrollment", None)
        return dataclasses.replace(self, **changes)


class SubWorkflowLauncher(Protocol):
    """Creates and runs child enrollments for ``sub_workflow`` steps."""

    async def start(
        self,
        parent: Enrollment,
        step: SubWorkflowStep,
        variables: Dict[str, Any],
    ) -> Enrollment:
        """Create the child enrollment, run it as far as it goes, return it."""

    async def fetch(self, enrollment_id: str) -> Optional[Enrollment]:
        """Reload a child enrollment."""


# ----------------------------------------------------------------------
# Interpreter


class StepInterpreter:
    """Executes step definitions against an enrollment.

    ``dry_run`` routes actions to ``simulate`` and echoes ``ai_agent`` calls;
    ``fast_forward`` treats every delay as already elapsed. Both exist for the
    simulation runner.
    """

    def __init__(
        self,
        registry: ActionRegistry,
        records: RecordStore,
        reasoning: Optional[ReasoningService] = None,
        config: Optional[ExecutionConfig] = None,
        launcher: Optional[SubWorkflowLauncher] = None,
        clock: Clock = utcnow,
        dry_run: bool = False,
        fast_forward: bool = False,
    ) -> None:
        self.registry = registry
        self.records = records
        self.reasoning = reasoning
        self.config = config or ExecutionConfig()
        self.launcher = launcher
        self.clock = clock
        self.dry_run = dry_run
        self.fast_forward = fast_forward

    # ------------------------------------------------------------------
    # Entry points

    async def advance(
        self, workflow: WorkflowDefinition, enrollment: Enrollment
    ) -> StepOutcome:
        """Run the enrollment's current step and report the outcome."""
        step_id = enrollment.current_step_id or ""
        step = workflow.step(step_id)
        if step is None:
            return StepOutcome.failed(
                step_id,
                ConfigurationError(f"Step {step_id!r} does not exist in workflow", step_id),
            )

        scope = ExecutionScope(
            data=enrollment.data_context,
            log=enrollment.log,
            entity_type=enrollment.entity.type,
            enrollment=enrollment,
            attempt=enrollment.attempts + 1,
        )
        try:
            entity = await self.load_entity(enrollment)
            executed = await self._run_logged(workflow, step, entity, scope)
        except StepError as exc:
            return StepOutcome.failed(step.id, exc.with_step(step.id))
        except Exception as exc:
            logger.exception(f"Loading {enrollment.entity} for step {step.id} failed")
            return StepOutcome.failed(
                step.id,
                TransientError(f"Record store raised {type(exc).__name__}: {exc}", step.id),
            )

        if executed.suspend:
            return StepOutcome.suspend(step.id, executed.resume_at)
        return self._follow(step, executed.branch)

    async def run_subgraph(
        self,
        workflow: WorkflowDefinition,
        start_step_id: Optional[str],
        entity: Dict[str, Any],
        scope: ExecutionScope,
    ) -> SubgraphResult:
        """Run a nested sub-graph from ``start_step_id`` until it has no next edge."""
        current = start_step_id
        last_step_id: Optional[str] = None
        output: Any = None
        executed_steps = 0
        while current:
            step = workflow.step(current)
            if step is None:
                raise ConfigurationError(f"Edge points to unknown step {current!r}", last_step_id)
            executed_steps += 1
            if executed_steps > self.config.max_steps_per_turn:
                raise IterationLimitError(
                    f"Nested block exceeded {self.config.max_steps_per_turn} steps", step.id
                )
            executed = await self._run_logged(workflow, step, entity, scope)
            last_step_id, output = step.id, executed.output
            current = step.target(executed.branch) if executed.branch else None
        return SubgraphResult(last_step_id, output)

    async def load_entity(self, enrollment: Enrollment) -> Dict[str, Any]:
        """Fresh snapshot of the enrolled record; a missing record is permanent."""
        snapshot = await self.records.get(enrollment.entity.type, enrollment.entity.id)
        if snapshot is None:
            raise PermanentError(f"Record {enrollment.entity} no longer exists")
        return snapshot

    async def goal_reached(
        self, workflow: WorkflowDefinition, enrollment: Enrollment
    ) -> bool:
        criteria = workflow.goal_criteria
        if criteria is None or not criteria.conditions:
            return False
        entity = await self.records.get(enrollment.entity.type, enrollment.entity.id)
        ctx = ResolutionContext.build(entity, enrollment.entity.type, enrollment.data_context)
        try:
            return criteria_met(criteria, ctx)
        except ConfigurationError as exc:
            logger.warning(f"Goal criteria of workflow {workflow.id} not evaluable: {exc}")
            return False

    # ------------------------------------------------------------------
    # Logging wrapper

    async def _run_logged(
        self,
        workflow: WorkflowDefinition,
        step: StepDefinition,
        entity: Dict[str, Any],
        scope: ExecutionScope,
    ) -> _Executed:
        entry = StepLogEntry(
            step_id=step.id,
            step_type=step.type,
            started_at=self.clock(),
            attempt=scope.attempt,
            parent_step_id=scope.parent_step_id,
            branch=scope.branch,
            iteration=scope.iteration,
        )
        scope.log.append(entry)
        started = time.perf_counter()
        try:
            executed = await self._execute_step(workflow, step, entity, scope, entry)
        except StepError as exc:
            self._record_failure(step, entry, exc)
            raise
        except Exception as exc:
            logger.exception(f"Step {step.id} raised unexpectedly")
            error = PermanentError(f"Step raised {type(exc).__name__}: {exc}", step.id)
            self._record_failure(step, entry, error)
            raise error from exc
        finally:
            entry.finished_at = self.clock()
            entry.duration_ms = round((time.perf_counter() - started) * 1000, 3)

        if executed.input is not None:
            entry.input = executed.input
        entry.output = executed.output
        entry.simulated = executed.simulated
        if executed.suspend:
            entry.outcome = "suspended"
        elif executed.simulated:
            entry.outcome = "simulated"
        else:
            entry.outcome = "completed"
        return executed

    def _record_failure(
        self, step: StepDefinition, entry: StepLogEntry, exc: StepError
    ) -> None:
        exc.with_step(step.id)
        entry.outcome = "failed"
        entry.error = ErrorInfo(
            step_id=exc.step_id, kind=exc.kind.value, message=exc.message, at=self.clock()
        )
        logger.debug(f"Step {step.id} failed: {exc.kind.value}: {exc.message}")

    def _follow(self, step: StepDefinition, branch: Optional[str]) -> StepOutcome:
        target = step.target(branch) if branch else None
        if target:
            return StepOutcome.advance(step.id, target, branch)
        return StepOutcome.complete(step.id, branch)

    # ------------------------------------------------------------------
    # Dispatch

    async def _execute_step(
        self,
        workflow: WorkflowDefinition,
        step: StepDefinition,
        entity: Dict[str, Any],
        scope: ExecutionScope,
        entry: StepLogEntry,
    ) -> _Executed:
        ctx = ResolutionContext.build(entity, scope.entity_type, scope.data)
        handlers: Dict[str, Callable[..., Awaitable[_Executed]]] = {
            "trigger": self._run_trigger,
            "action": self._run_action,
            "delay": self._run_delay,
            "condition": self._run_condition,
            "loop": self._run_loop,
            "parallel": self._run_parallel,
            "try_catch": self._run_try_catch,
            "sub_workflow": self._run_sub_workflow,
            "ai_agent": self._run_ai_agent,
            "transform": self._run_transform,
        }
        handler = handlers.get(step.type)
        if handler is None:
            raise ConfigurationError(f"Unsupported step type {step.type!r}", step.id)
        return await handler(workflow, step, entity, scope, ctx, entry)

    async def _run_trigger(
        self,
        workflow: WorkflowDefinition,
        step: TriggerStep,
        entity: Dict[str, Any],
        scope: ExecutionScope,
        ctx: ResolutionContext,
        entry: StepLogEntry,
    ) -> _Executed:
        if scope.enrollment is None:
            raise ConfigurationError("Trigger steps cannot run inside nested blocks", step.id)
        payload = scope.data.variables.get("trigger")
        return _Executed(NEXT, input={"event_type": step.config.event_type}, output=payload)

    async def _run_action(
        self,
        workflow: WorkflowDefinition,
        step: ActionStep,
        entity: Dict[str, Any],
        scope: ExecutionScope,
        ctx: ResolutionContext,
        entry: StepLogEntry,
    ) -> _Executed:
        params = require_resolved(resolve_structure(step.config.params, ctx), step.id)
        entry.input = params
        executor = self.registry.get(step.config.action_type)
        timeout = step.config.timeout_seconds or self.config.action_timeout_seconds
        call = executor.simulate if self.dry_run else executor.execute
        action_entity = {**entity, "_type": scope.entity_type}

        try:
            result = await asyncio.wait_for(
                call(params, action_entity, scope.data), timeout=timeout
            )
        except asyncio.TimeoutError as exc:
            raise TransientError(
                f"Action {step.config.action_type!r} timed out after {timeout:g}s", step.id
            ) from exc
        except StepError:
            raise
        except Exception as exc:
            logger.exception(f"Executor for {step.config.action_type!r} raised unexpectedly")
            raise PermanentError(
                f"Action {step.config.action_type!r} raised {type(exc).__name__}: {exc}",
                step.id,
            ) from exc

        if not result.success:
            error = result.error
            kind = error.kind if error else "permanent"
            message = error.message if error else "Action reported failure"
            raise error_from_kind(kind, message, step.id)

        scope.data.record_output(step.id, result.output)
        return _Executed(NEXT, input=params, output=result.output, simulated=self.dry_run)

    async def _run_delay(
        self,
        workflow: WorkflowDefinition,
        step: DelayStep,
        entity: Dict[str, Any],
        scope: ExecutionScope,
        ctx: ResolutionContext,
        entry: StepLogEntry,
    ) -> _Executed:
        enrollment = scope.enrollment
        if enrollment is None:
            raise ConfigurationError("Delay steps cannot run inside nested blocks", step.id)

        now = ensure_utc(self.clock())
        entered_at = ensure_utc(enrollment.delay_started_at or now)
        wake_at = compute_wake_time(step.config, entered_at)
        details = {"entered_at": entered_at.isoformat(), "wake_at": wake_at.isoformat()}
        entry.input = step.config.model_dump(mode="json", exclude_none=True)

        if self.fast_forward or wake_at <= now:
            enrollment.delay_started_at = None
            return _Executed(NEXT, input=entry.input, output={**details, "elapsed": True})

        enrollment.delay_started_at = entered_at
        return _Executed(
            None,
            input=entry.input,
            output={**details, "elapsed": False},
            suspend=True,
            resume_at=wake_at,
        )

    async def _run_condition(
        self,
        workflow: WorkflowDefinition,
        step: ConditionStep,
        entity: Dict[str, Any],
        scope: ExecutionScope,
        ctx: ResolutionContext,
        entry: StepLogEntry,
    ) -> _Executed:
        evaluated = evaluate_condition(step.config, ctx, step.id)
        branch = YES if evaluated.result else NO
        return _Executed(
            branch,
            input={
                "left": evaluated.left,
                "operator": evaluated.operator,
                "right": evaluated.right,
            },
            output={"result": evaluated.result, "branch": branch},
        )

    # ------------------------------------------------------------------
    # Loops

    def _loop_items(self, step: LoopStep, ctx: ResolutionContext) -> List[Any]:
        source = step.config.source
        if isinstance(source, str):
            source = require_resolved(resolve_value(source, ctx), step.id)
        if source is None:
            return []
        if isinstance(source, dict):
            return [{"key": k, "value": v} for k, v in source.items()]
        if not isinstance(source, (list, tuple)):
            raise ConfigurationError(
                f"Loop source must resolve to a list, got {type(source).__name__}", step.id
            )
        return list(source)

    def _iteration_value(
        self,
        step: LoopStep,
        entity: Dict[str, Any],
        scope: ExecutionScope,
        data: DataContext,
        result: SubgraphResult,
    ) -> Any:
        if not step.config.collect:
            return result.output
        ctx = ResolutionContext.build(entity, scope.entity_type, data)
        return require_resolved(resolve_value(step.config.collect, ctx), step.id)

    async def _run_loop(
        self,
        workflow: WorkflowDefinition,
        step: LoopStep,
        entity: Dict[str, Any],
        scope: ExecutionScope,
        ctx: ResolutionContext,
        entry: StepLogEntry,
    ) -> _Executed:
        config = step.config
        items = self._loop_items(step, ctx)
        limit = config.max_iterations or self.config.max_loop_iterations
        entry.input = {"items": len(items), "mode": config.mode}
        if len(items) > limit:
            raise IterationLimitError(
                f"Loop over {len(items)} items exceeds the limit of {limit} iterations",
                step.id,
            )

        body = step.target(LOOP_BODY)
        if config.mode == "parallel":
            results = await self._loop_parallel(workflow, step, entity, scope, items, body)
        else:
            results = []
            for index, item in enumerate(items):
                scope.data.set_variable(config.item_var, item)
                scope.data.set_variable(config.index_var, index)
                iteration = scope.child(parent_step_id=step.id, iteration=index)
                result = await self.run_subgraph(workflow, body, entity, iteration)
                results.append(
                    self._iteration_value(step, entity, scope, scope.data, result)
                )

        output: Dict[str, Any] = {"iterations": len(items)}
        if config.aggregate:
            scope.data.set_variable(config.result_var, results)
            output["results"] = results
        scope.data.record_output(step.id, output)
        return _Executed(LOOP_DONE, input=entry.input, output=output)

    async def _loop_parallel(
        self,
        workflow: WorkflowDefinition,
        step: LoopStep,
        entity: Dict[str, Any],
        scope: ExecutionScope,
        items: List[Any],
        body: Optional[str],
    ) -> List[Any]:
        config = step.config
        semaphore = asyncio.Semaphore(config.parallelism)
        logs: List[List[StepLogEntry]] = [[] for _ in items]

        async def run_iteration(index: int, item: Any) -> Any:
            async with semaphore:
                data = scope.data.isolated_copy()
                data.set_variable(config.item_var, item)
                data.set_variable(config.index_var, index)
                iteration = scope.child(
                    data=data, log=logs[index], parent_step_id=step.id, iteration=index
                )
                result = await self.run_subgraph(workflow, body, entity, iteration)
                return self._iteration_value(step, entity, scope, data, result)

        try:
            return await _gather_all(
                [run_iteration(i, item) for i, item in enumerate(items)]
            )
        finally:
            for iteration_log in logs:
                scope.log.extend(iteration_log)

    # ------------------------------------------------------------------
    # Parallel branches

    async def _run_parallel(
        self,
        workflow: WorkflowDefinition,
        step: ParallelStep,
        entity: Dict[str, Any],
        scope: ExecutionScope,
        ctx: ResolutionContext,
        entry: StepLogEntry,
    ) -> _Executed:
        config = step.config
        entry.input = {"branches": list(config.branches), "join": config.join}
        logs: Dict[str, List[StepLogEntry]] = {b: [] for b in config.branches}
        contexts: Dict[str, DataContext] = {}
        before_fork = scope.data.isolated_copy()

        async def run_branch(branch: str) -> Tuple[str, SubgraphResult]:
            data = scope.data.isolated_copy()
            contexts[branch] = data
            branch_scope = scope.child(
                data=data, log=logs[branch], parent_step_id=step.id, branch=branch
            )
            result = await self.run_subgraph(
                workflow, step.target(branch), entity, branch_scope
            )
            return branch, result

        if config.join == "first_complete":
            branch, result = await _first_success([run_branch(b) for b in config.branches])
            scope.log.extend(logs[branch])
            scope.data.merge(contexts[branch].changes_since(before_fork))
            outputs = {branch: result.output}
            output: Dict[str, Any] = {"winner": branch, "outputs": outputs}
        else:
            try:
                finished = await _gather_all([run_branch(b) for b in config.branches])
            finally:
                for branch in config.branches:
                    scope.log.extend(logs[branch])
            outputs = {}
            for branch, result in finished:
                scope.data.merge(contexts[branch].changes_since(before_fork))
                outputs[branch] = result.output
            output = {"outputs": outputs}

        if config.result_var:
            scope.data.set_variable(config.result_var, outputs)
        scope.data.record_output(step.id, output)
        return _Executed(NEXT, input=entry.input, output=output)

    # ------------------------------------------------------------------
    # try / catch

    async def _run_try_catch(
        self,
        workflow: WorkflowDefinition,
        step: TryCatchStep,
        entity: Dict[str, Any],
        scope: ExecutionScope,
        ctx: ResolutionContext,
        entry: StepLogEntry,
    ) -> _Executed:
        config = step.config
        body = step.target(TRY)
        allowed = config.max_retries + 1
        last_error: Optional[StepError] = None
        attempt = 0

        while attempt < allowed:
            attempt += 1
            data = scope.data.isolated_copy()
            block = scope.child(data=data, parent_step_id=step.id, branch=TRY, attempt=attempt)
            try:
                result = await self.run_subgraph(workflow, body, entity, block)
            except StepError as exc:
                last_error = exc
                logger.info(
                    f"Try block of {step.id} failed on attempt {attempt}/{allowed}: {exc.message}"
                )
                if not exc.retryable:
                    break
                continue
            scope.data.merge(data)
            output = {"status": "ok", "attempts": attempt, "output": result.output}
            scope.data.record_output(step.id, output)
            return _Executed(NEXT, input={"max_retries": config.max_retries}, output=output)

        caught = {
            "kind": last_error.kind.value,
            "message": last_error.message,
            "step_id": last_error.step_id,
        }
        scope.data.set_variable(config.error_var, caught)
        output = {"status": "error", "attempts": attempt, "error": caught}
        scope.data.record_output(step.id, output)
        branch = ERROR if step.target(ERROR) else NEXT
        return _Executed(branch, input={"max_retries": config.max_retries}, output=output)

    # ------------------------------------------------------------------
    # Sub-workflows

    async def _run_sub_workflow(
        self,
        workflow: WorkflowDefinition,
        step: SubWorkflowStep,
        entity: Dict[str, Any],
        scope: ExecutionScope,
        ctx: ResolutionContext,
        entry: StepLogEntry,
    ) -> _Executed:
        if self.launcher is None:
            raise ConfigurationError("No sub-workflow launcher configured", step.id)
        enrollment = scope.enrollment

        if enrollment is None:
            raise ConfigurationError(
                "Sub-workflow steps cannot run inside nested blocks", step.id
            )

        if enrollment.awaiting_enrollment_id:
            child = await self.launcher.fetch(enrollment.awaiting_enrollment_id)
            if child is None:
                raise PermanentError(
                    f"Sub-workflow enrollment {enrollment.awaiting_enrollment_id} disappeared",
                    step.id,
                )
        else:
            if enrollment.depth + 1 > self.config.max_sub_workflow_depth:
                raise ConfigurationError(
                    f"Sub-workflow nesting exceeds depth {self.config.max_sub_workflow_depth}",
                    step.id,
                )
            variables = require_resolved(resolve_structure(step.config.variables, ctx), step.id)
            entry.input = {"workflow_id": step.config.workflow_id, "variables": variables}
            child = await self.launcher.start(enrollment, step, variables)

        if not child.is_terminal:
            enrollment.awaiting_enrollment_id = child.id
            return _Executed(
                None,
                input=entry.input,
                output={"enrollment_id": child.id, "status": child.status.value},
                suspend=True,
            )

        enrollment.awaiting_enrollment_id = None
        if child.status != EnrollmentStatus.COMPLETED:
            reason = child.last_error.message if child.last_error else child.status.value
            raise PermanentError(
                f"Sub-workflow {step.config.workflow_id} ended {child.status.value}: {reason}",
                step.id,
            )

        output = {
            "enrollment_id": child.id,
            "variables": child.data_context.variables,
            "step_outputs": child.data_context.step_outputs,
        }
        scope.data.record_output(step.id, output)
        if step.config.result_var:
            scope.data.set_variable(step.config.result_var, child.data_context.variables)
        return _Executed(NEXT, input=entry.input, output=output)

    # ------------------------------------------------------------------
    # ai_agent

    async def _run_ai_agent(
        self,
        workflow: WorkflowDefinition,
        step: AIAgentStep,
        entity: Dict[str, Any],
        scope: ExecutionScope,
        ctx: ResolutionContext,
        entry: StepLogEntry,
    ) -> _Executed:
        config = step.config
        prompt = require_resolved(resolve_template(config.prompt, ctx), step.id)
        context: Dict[str, Any] = {}
        if config.include_entity:
            context["entity"] = entity
        if config.include_variables:
            context["variables"] = dict(scope.data.variables)
        timeout = min(
            config.timeout_seconds or self.config.ai_timeout_seconds, MAX_AI_TIMEOUT_SECONDS
        )
        step_input = {"prompt": prompt, "context_keys": sorted(context)}

        if self.dry_run:
            output = {"simulated": True, "prompt": prompt, "context": context}
            scope.data.set_variable(config.result_var, None)
            scope.data.record_output(step.id, output)
            return _Executed(NEXT, input=step_input, output=output, simulated=True)

        if self.reasoning is None:
            raise ConfigurationError("No reasoning service configured", step.id)
        try:
            reply = await asyncio.wait_for(
                self.reasoning.invoke(prompt, context, timeout), timeout=timeout
            )
        except asyncio.TimeoutError as exc:
            raise TransientError(
                f"Reasoning service timed out after {timeout:g}s", step.id
            ) from exc
        except StepError:
            raise
        except Exception as exc:
            logger.exception(f"Reasoning service raised unexpectedly in step {step.id}")
            raise PermanentError(
                f"Reasoning service raised {type(exc).__name__}: {exc}", step.id
            ) from exc

        value: Any = reply.text
        if config.parse_json and reply.parsed is not None:
            value = reply.parsed
        scope.data.set_variable(config.result_var, value)
        output = {"text": reply.text, "parsed": reply.parsed}
        scope.data.record_output(step.id, output)
        return _Executed(NEXT, input=step_input, output=output)

    # ------------------------------------------------------------------
    # transform

    async def _run_transform(
        self,
        workflow: WorkflowDefinition,
        step: TransformStep,
        entity: Dict[str, Any],
        scope: ExecutionScope,
        ctx: ResolutionContext,
        entry: StepLogEntry,
    ) -> _Executed:
        assigned: Dict[str, Any] = {}
        for name, template in step.config.assignments.items():
            # ctx shares the variables mapping, so later assignments see earlier ones
            value = require_resolved(resolve_structure(template, ctx), step.id)
            scope.data.set_variable(name, value)
            assigned[name] = value
        scope.data.record_output(step.id, assigned)
        return _Executed(NEXT, input=dict(step.config.assignments), output=assigned)


# ----------------------------------------------------------------------
# Task helpers


async def _cancel(tasks: List["asyncio.Task[Any]"]) -> None:
    for task in tasks:
        if not task.done():
            task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


async def _gather_all(coros: List[Awaitable[Any]]) -> List[Any]:
    """Await every coroutine in order; on the first failure cancel the rest."""
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        await _cancel(tasks)
        raise


async def _first_success(coros: List[Awaitable[Any]]) -> Any:
    """Return the first result that did not raise; cancel the others.

    When every coroutine fails the first failure is raised.
    """
    tasks = [asyncio.ensure_future(c) for c in coros]
    pending = set(tasks)
    first_error: Optional[BaseException] = None
    try:
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in tasks:
                if task not in done:
                    continue
                if task.exception() is None:
                    return task.result()
                if first_error is None:
                    first_error = task.exception()
        raise first_error
    finally:
        await _cancel(tasks)
