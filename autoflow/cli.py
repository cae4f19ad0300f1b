"""Command line interface for the workflow automation engine."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

import typer
import yaml
from pydantic import ValidationError

from autoflow.config import load_config
from autoflow.contracts import (
    BusinessEvent,
    DelayConfig,
    EnrollmentStatus,
    WorkflowDefinition,
    WorkflowStatus,
)
from autoflow.delays import describe
from autoflow.engine import Engine, build_engine
from autoflow.errors import (
    EnrollmentNotFound,
    WorkflowNotFound,
    WorkflowStateError,
    WorkflowValidationError,
)
from autoflow.records import RecordNotFound

T = TypeVar("T")

app = typer.Typer(help="CLI for autoflow workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
enrollment_app = typer.Typer(help="Commands for managing enrollments")
scheduler_app = typer.Typer(help="Commands for the suspension scheduler")
events_app = typer.Typer(help="Commands for the business event feed")

app.add_typer(workflow_app, name="workflow")
app.add_typer(enrollment_app, name="enrollment")
app.add_typer(scheduler_app, name="scheduler")
app.add_typer(events_app, name="events")

_engine: Optional[Engine] = None
_config_path: Optional[str] = None


def _get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = build_engine(load_config(_config_path))
    return _engine


def _run(coro: Awaitable[T]) -> T:
    """Run ``coro`` and turn engine errors into a non-zero exit."""
    try:
        return asyncio.run(coro)
    except WorkflowValidationError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        for issue in exc.issues:
            typer.echo(f"  - {issue.step_id or '(workflow)'}: {issue.message}")
        raise typer.Exit(code=1)
    except (WorkflowNotFound, EnrollmentNotFound, RecordNotFound) as exc:
        typer.secho(f"Not found: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except WorkflowStateError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_json(value: Optional[str], option: str) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as exc:
        typer.secho(f"{option} is not valid JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    if not isinstance(data, dict):
        typer.secho(f"{option} must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    return data


@app.callback()
def main(
    config: Optional[Path] = typer.Option(
        None, "--config", help="Path to the YAML configuration file"
    ),
    log_level: Optional[str] = typer.Option(None, help="Override the configured log level"),
) -> None:
    """autoflow CLI entry point."""
    global _config_path
    if config is not None:
        _config_path = str(config)
    level = log_level or (
        _engine.config.logging.level if _engine is not None else load_config(_config_path).logging.level
    )
    logging.basicConfig(
        level=level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


# ----------------------------------------------------------------------
# Workflows


@workflow_app.command("save")
def workflow_save(path: Path) -> None:
    """
    Save a workflow definition file (YAML or JSON) as a draft.

    Example:
        autoflow workflow save ./workflows/lead_nurture.yaml
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    try:
        workflow = WorkflowDefinition.model_validate(data)
    except ValidationError as exc:
        typer.secho(f"Invalid workflow definition: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    saved = _run(_get_engine().admin.save_draft(workflow))
    typer.echo(f"Saved draft {saved.id} ({saved.name})")


@workflow_app.command("validate")
def workflow_validate(workflow_id: str) -> None:
    """Report validation issues without activating."""
    issues = _run(_get_engine().admin.validate(workflow_id))
    if not issues:
        typer.echo("Workflow is valid")
        return
    for issue in issues:
        typer.echo(f"- {issue.step_id or '(workflow)'}: {issue.message}")
    raise typer.Exit(code=1)


@workflow_app.command("activate")
def workflow_activate(workflow_id: str) -> None:
    workflow = _run(_get_engine().admin.activate(workflow_id))
    typer.echo(f"Workflow {workflow.id}: {workflow.status.value}")


@workflow_app.command("pause")
def workflow_pause(workflow_id: str) -> None:
    workflow = _run(_get_engine().admin.pause(workflow_id))
    typer.echo(f"Workflow {workflow.id}: {workflow.status.value}")


@workflow_app.command("archive")
def workflow_archive(workflow_id: str) -> None:
    workflow = _run(_get_engine().admin.archive(workflow_id))
    typer.echo(f"Workflow {workflow.id}: {workflow.status.value}")


@workflow_app.command("list")
def workflow_list(
    status: Optional[WorkflowStatus] = typer.Option(None, help="Only list this status"),
) -> None:
    """
    List workflow definitions with their lifecycle status.

    Example:
        autoflow workflow list --status active
        # Output: 4f1c...    active    Lead nurture
    """
    workflows = _run(_get_engine().repository.list_workflows(status))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.status.value}\t{wf.name}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    wf = _run(_get_engine().repository.get_workflow(workflow_id))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.id}: {wf.status.value}")
    typer.echo(f"Name: {wf.name}")
    for step in wf.steps:
        edges = ", ".join(f"{label} -> {target}" for label, target in step.edges.items())
        typer.echo(f"- {step.id} [{step.type}]" + (f" ({edges})" if edges else ""))


@workflow_app.command("retarget-delay")
def workflow_retarget_delay(
    workflow_id: str,
    step_id: str,
    amount: Optional[float] = typer.Option(None, help="Duration amount"),
    unit: str = typer.Option("days", help="minutes, hours, days or weeks"),
    mode: str = typer.Option("duration", help="duration, until_date, until_time or until_weekday"),
    at_time: Optional[str] = typer.Option(None, help="HH:MM for time-of-day delays"),
    weekday: Optional[int] = typer.Option(None, help="0=Monday .. 6=Sunday"),
) -> None:
    """
    Change a delay step of a live workflow and reschedule waiting enrollments.

    Example:
        autoflow workflow retarget-delay 4f1c... wait --amount 1 --unit days
    """
    try:
        config = DelayConfig(
            mode=mode, amount=amount, unit=unit, at_time=at_time, weekday=weekday
        )
    except ValidationError as exc:
        typer.secho(f"Invalid delay: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    rescheduled = _run(_get_engine().admin.retarget_delay(workflow_id, step_id, config))
    typer.echo(f"Delay {step_id} now waits {describe(config)}")
    typer.echo(f"Rescheduled {len(rescheduled)} enrollment(s)")
    for enrollment in rescheduled:
        typer.echo(f"- {enrollment.id}: {enrollment.resume_at.isoformat()}")


# ----------------------------------------------------------------------
# Enrollments


@enrollment_app.command("enroll")
def enrollment_enroll(
    workflow_id: str,
    entity_id: str,
    entity_type: Optional[str] = typer.Option(None, help="Defaults to the workflow's type"),
    variables: Optional[str] = typer.Option(None, "--vars", help="JSON object of variables"),
) -> None:
    """Manually enroll one record in an active workflow."""
    data = _parse_json(variables, "--vars")
    enrollment = _run(
        _get_engine().admin.enroll(workflow_id, entity_id, entity_type, data)
    )
    if enrollment is None:
        typer.echo("Record is already enrolled; skipped")
        return
    typer.echo(f"Enrollment {enrollment.id}: {enrollment.status.value}")


@enrollment_app.command("bulk")
def enrollment_bulk(
    workflow_id: str,
    entity_ids: List[str],
    entity_type: Optional[str] = typer.Option(None, help="Defaults to the workflow's type"),
) -> None:
    result = _run(_get_engine().admin.bulk_enroll(workflow_id, entity_ids, entity_type))
    typer.echo(
        f"Enrolled {len(result.enrolled)}, skipped {len(result.skipped)}, "
        f"missing {len(result.missing)}"
    )
    for entity_id in result.missing:
        typer.echo(f"  missing: {entity_id}")


@enrollment_app.command("cancel")
def enrollment_cancel(enrollment_id: str) -> None:
    enrollment = _run(_get_engine().admin.cancel(enrollment_id))
    typer.echo(f"Enrollment {enrollment.id}: {enrollment.status.value}")


@enrollment_app.command("retry")
def enrollment_retry(
    enrollment_id: str,
    run: bool = typer.Option(True, help="Continue the enrollment right away"),
) -> None:
    """Retry a failed enrollment from the step that failed."""
    enrollment = _run(_get_engine().admin.retry(enrollment_id, run=run))
    typer.echo(f"Enrollment {enrollment.id}: {enrollment.status.value}")


@enrollment_app.command("list")
def enrollment_list(
    workflow_id: Optional[str] = typer.Option(None, help="Only this workflow"),
    status: Optional[EnrollmentStatus] = typer.Option(None, help="Only this status"),
) -> None:
    enrollments = _run(_get_engine().admin.list_enrollments(status, workflow_id))
    if not enrollments:
        typer.echo("No enrollments found")
        return
    for e in enrollments:
        typer.echo(
            f"{e.id}\t{e.workflow_id}\t{e.entity}\t{e.status.value}\t{e.current_step_id or '-'}"
        )


@enrollment_app.command("show")
def enrollment_show(enrollment_id: str) -> None:
    """
    Show an enrollment with its step log.

    Example:
        autoflow enrollment show 7d2e...
        # Output: Enrollment 7d2e...: waiting
        #         - trigger: completed
        #         - wait: suspended
    """
    e = _run(_get_engine().admin.get_enrollment(enrollment_id))
    typer.echo(f"Enrollment {e.id}: {e.status.value}")
    typer.echo(f"Workflow: {e.workflow_id}  Entity: {e.entity}")
    if e.resume_at:
        typer.echo(f"Resumes at: {e.resume_at.isoformat()}")
    if e.last_error:
        typer.echo(f"Last error: [{e.last_error.kind}] {e.last_error.message}")
    if e.data_context.variables:
        typer.echo(f"Variables: {json.dumps(e.data_context.variables, default=str)}")
    for entry in e.log:
        prefix = "  " if entry.parent_step_id else ""
        typer.echo(f"{prefix}- {entry.step_id}: {entry.outcome}")


@enrollment_app.command("stats")
def enrollment_stats(workflow_id: str) -> None:
    stats = _run(_get_engine().admin.stats(workflow_id))
    typer.echo(f"Workflow {stats.workflow_id}: {stats.total_enrolled} enrolled")
    for status, count in sorted(stats.by_status.items()):
        typer.echo(f"  {status}: {count}")
    typer.echo(f"Goals met: {stats.goals_met} ({stats.goal_rate:.0%})")
    for step_id, count in sorted(stats.failures_by_step.items()):
        typer.echo(f"  failures at {step_id}: {count}")


# ----------------------------------------------------------------------
# Simulation


@app.command("simulate")
def simulate(
    workflow_id: str,
    entity_id: str,
    entity_type: Optional[str] = typer.Option(None, help="Defaults to the workflow's type"),
    live: bool = typer.Option(False, help="Execute actions for real instead of echoing"),
    fast_forward: bool = typer.Option(True, help="Resolve delays with zero wait"),
    variables: Optional[str] = typer.Option(None, "--vars", help="JSON object of variables"),
) -> None:
    """
    Run a workflow for one record without creating an enrollment.

    Example:
        autoflow simulate 4f1c... contact-42
    """
    data = _parse_json(variables, "--vars")
    report = _run(
        _get_engine().admin.simulate(
            workflow_id,
            entity_id,
            entity_type=entity_type,
            dry_run=not live,
            fast_forward=fast_forward,
            variables=data,
        )
    )
    typer.echo(f"Simulation of {report.workflow_id} for {report.entity}: {report.status.value}")
    for entry in report.trace:
        prefix = "  " if entry.parent_step_id else ""
        suffix = " (simulated)" if entry.simulated else ""
        typer.echo(f"{prefix}- {entry.step_id} [{entry.step_type}]: {entry.outcome}{suffix}")
    if report.error:
        typer.echo(f"Error: [{report.error.kind}] {report.error.message}")
    typer.echo(f"Variables: {json.dumps(report.final_context.variables, default=str)}")


# ----------------------------------------------------------------------
# Background processes


@scheduler_app.command("run")
def scheduler_run(
    max_sweeps: Optional[int] = typer.Option(None, help="Stop after this many sweeps"),
) -> None:
    """Sweep for due enrollments until interrupted."""
    engine = _get_engine()
    typer.echo(
        f"Starting scheduler (every {engine.config.scheduler.sweep_interval_seconds}s)"
    )
    _run(engine.scheduler.run_forever(max_sweeps=max_sweeps))


@events_app.command("listen")
def events_listen(
    topic: Optional[str] = typer.Option(None, help="Defaults to the configured topic"),
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """Consume business events and enroll matching records."""
    engine = _get_engine()
    topic = topic or engine.config.transport.topic
    transport = engine.get_transport()

    async def listen() -> int:
        await transport.connect()
        try:
            return await engine.dispatcher.listen(transport, topic, lifespan=lifespan)
        finally:
            await transport.disconnect()

    typer.echo(f"Listening on {topic}")
    handled = _run(listen())
    typer.echo(f"Handled {handled} event(s)")


@events_app.command("publish")
def events_publish(
    event_type: str,
    entity_type: str,
    entity_id: str,
    payload: Optional[str] = typer.Option(None, help="JSON object payload"),
    topic: Optional[str] = typer.Option(None, help="Defaults to the configured topic"),
) -> None:
    """Publish a business event onto the feed."""
    engine = _get_engine()
    topic = topic or engine.config.transport.topic
    event = BusinessEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=_parse_json(payload, "--payload"),
    )
    transport = engine.get_transport()

    async def publish() -> None:
        await transport.connect()
        try:
            await transport.publish(topic, event)
        finally:
            await transport.disconnect()

    _run(publish())
    typer.echo(f"Published {event.event_id}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
