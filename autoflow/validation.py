"""Static validation of workflow graphs before activation."""

from __future__ import annotations

import logging
from collections import Counter, deque
from typing import Dict, Iterable, List, Optional, Set

from .conditions import OPERATORS
from .constants import LOOP_BODY, NEXT, TRY
from .contracts import WorkflowDefinition
from .errors import ValidationIssue, WorkflowValidationError

logger = logging.getLogger(__name__)

# a workflow must contain at least one of these working steps
ACTING_STEP_TYPES = ("action", "ai_agent", "sub_workflow", "transform")


def _nested_entries(workflow: WorkflowDefinition) -> List[str]:
    """Step ids that start a nested sub-graph (loop body, branch, try block)."""
    entries: List[str] = []
    for step in workflow.steps:
        if step.type == "loop" and step.target(LOOP_BODY):
            entries.append(step.target(LOOP_BODY))
        elif step.type == "parallel":
            entries.extend(
                step.target(b) for b in step.config.branches if step.target(b)
            )
        elif step.type == "try_catch" and step.target(TRY):
            entries.append(step.target(TRY))
    return entries


def _reachable(graph: Dict[str, List[str]], starts: Iterable[str]) -> Set[str]:
    seen: Set[str] = set()
    queue = deque(s for s in starts if s in graph)
    while queue:
        node = queue.popleft()
        if node in seen:
            continue
        seen.add(node)
        queue.extend(t for t in graph.get(node, []) if t in graph and t not in seen)
    return seen


def _find_cycles(graph: Dict[str, List[str]]) -> List[List[str]]:
    white, grey, black = 0, 1, 2
    color = {node: white for node in graph}
    cycles: List[List[str]] = []

    def visit(node: str, path: List[str]) -> None:
        color[node] = grey
        path.append(node)
        for nxt in graph.get(node, []):
            if nxt not in color:
                continue
            if color[nxt] == grey:
                cycles.append(path[path.index(nxt):] + [nxt])
            elif color[nxt] == white:
                visit(nxt, path)
        path.pop()
        color[node] = black

    for node in graph:
        if color[node] == white:
            visit(node, [])
    return cycles


def validate_workflow(
    workflow: WorkflowDefinition,
    known_action_types: Optional[Iterable[str]] = None,
) -> List[ValidationIssue]:
    """Return every problem found in ``workflow``; an empty list means valid."""
    issues: List[ValidationIssue] = []
    known = set(known_action_types) if known_action_types is not None else None

    counts = Counter(step.id for step in workflow.steps)
    for step_id, count in counts.items():
        if count > 1:
            issues.append(ValidationIssue(step_id=step_id, message="Duplicate step id"))

    step_ids = set(counts)
    triggers = [s for s in workflow.steps if s.type == "trigger"]
    if not triggers:
        issues.append(ValidationIssue(message="Workflow has no trigger step"))
    for extra in triggers[1:]:
        issues.append(
            ValidationIssue(step_id=extra.id, message="Only one trigger step is allowed")
        )
    if triggers and not triggers[0].target(NEXT):
        issues.append(
            ValidationIssue(
                step_id=triggers[0].id,
                message="Trigger step has no following step",
            )
        )
    if not any(step.type in ACTING_STEP_TYPES for step in workflow.steps):
        issues.append(ValidationIssue(message="Workflow has no action step"))

    trigger_ids = {t.id for t in triggers}
    graph: Dict[str, List[str]] = {step.id: [] for step in workflow.steps}

    for step in workflow.steps:
        allowed = step.allowed_branches()
        for branch, target in step.edges.items():
            if branch not in allowed:
                issues.append(
                    ValidationIssue(
                        step_id=step.id,
                        message=f"Edge label {branch!r} is not valid for a {step.type} step",
                    )
                )
            if target not in step_ids:
                issues.append(
                    ValidationIssue(
                        step_id=step.id,
                        message=f"Edge {branch!r} points to unknown step {target!r}",
                    )
                )
                continue
            if target in trigger_ids:
                issues.append(
                    ValidationIssue(
                        step_id=step.id,
                        message="Edges may not point back to the trigger step",
                    )
                )
            graph[step.id].append(target)

        if step.type == "trigger":
            for condition in step.config.filters:
                if condition.operator not in OPERATORS:
                    issues.append(
                        ValidationIssue(
                            step_id=step.id,
                            message=f"Unknown filter operator {condition.operator!r}",
                        )
                    )
        elif step.type == "condition" and step.config.operator not in OPERATORS:
            issues.append(
                ValidationIssue(
                    step_id=step.id,
                    message=f"Unknown condition operator {step.config.operator!r}",
                )
            )
        elif step.type == "action" and known is not None and step.config.action_type not in known:
            issues.append(
                ValidationIssue(
                    step_id=step.id,
                    message=f"No executor registered for action type {step.config.action_type!r}",
                )
            )
        elif step.type == "loop" and not step.target(LOOP_BODY):
            issues.append(ValidationIssue(step_id=step.id, message="Loop step has no loop-body edge"))
        elif step.type == "parallel":
            for branch in step.config.branches:
                if not step.target(branch):
                    issues.append(
                        ValidationIssue(
                            step_id=step.id,
                            message=f"Parallel branch {branch!r} has no edge",
                        )
                    )
        elif step.type == "try_catch" and not step.target(TRY):
            issues.append(ValidationIssue(step_id=step.id, message="Try/catch step has no try edge"))
        elif step.type == "sub_workflow" and step.config.workflow_id == workflow.id:
            issues.append(
                ValidationIssue(step_id=step.id, message="A workflow cannot invoke itself")
            )

    for criteria in (workflow.enrollment_criteria, workflow.goal_criteria):
        for condition in criteria.conditions if criteria else []:
            if condition.operator not in OPERATORS:
                issues.append(
                    ValidationIssue(message=f"Unknown criteria operator {condition.operator!r}")
                )

    for cycle in _find_cycles(graph):
        issues.append(
            ValidationIssue(
                step_id=cycle[0],
                message="Cycle detected: " + " -> ".join(cycle),
            )
        )

    nested = _reachable(graph, _nested_entries(workflow))
    for step in workflow.steps:
        if step.id in nested and step.type in ("delay", "sub_workflow"):
            issues.append(
                ValidationIssue(
                    step_id=step.id,
                    message=f"{step.type} steps are not allowed inside nested sub-graphs",
                )
            )

    if triggers:
        unreachable = step_ids - _reachable(graph, [triggers[0].id])
        if unreachable:
            logger.debug(
                f"Workflow {workflow.id} has unreachable steps: {sorted(unreachable)}"
            )
    return issues


def ensure_valid(
    workflow: WorkflowDefinition, known_action_types: Optional[Iterable[str]] = None
) -> None:
    """Raise :class:`WorkflowValidationError` listing every offending step."""
    issues = validate_workflow(workflow, known_action_types)
    if issues:
        raise WorkflowValidationError(issues)
