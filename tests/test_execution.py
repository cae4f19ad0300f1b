"""Enrollment execution tests: retries, delays, leases, cancellation, sub-workflows."""

import asyncio
from datetime import timedelta

import pytest

from autoflow.config import EngineConfig, ExecutionConfig
from autoflow.contracts import EnrollmentStatus, WorkflowStatus
from autoflow.engine import build_engine
from autoflow.errors import PermanentError, WorkflowStateError, WorkflowValidationError
from autoflow.persistence import InMemoryWorkflowRepository


def delay(step_id: str, amount: float, unit: str = "days", next_step=None) -> dict:
    step = {
        "id": step_id,
        "type": "delay",
        "config": {"mode": "duration", "amount": amount, "unit": unit},
    }
    if next_step:
        step["edges"] = {"next": next_step}
    return step


def tag(step_id: str, value: str, next_step=None) -> dict:
    step = {
        "id": step_id,
        "type": "action",
        "config": {"action_type": "add_tag", "params": {"tag": value}},
    }
    if next_step:
        step["edges"] = {"next": next_step}
    return step


# ----------------------------------------------------------------------
# Retries


@pytest.mark.asyncio
async def test_action_timing_out_every_attempt_fails_enrollment(
    engine, clock, make_workflow, activate
):
    start = clock()
    calls = []

    async def hanging(config, entity, context):
        calls.append(clock())
        await asyncio.sleep(1)

    engine.registry.register_function("crm_sync", hanging)
    await activate(
        make_workflow(
            [
                {
                    "id": "sync",
                    "type": "action",
                    "config": {"action_type": "crm_sync", "timeout_seconds": 0.01},
                }
            ]
        )
    )

    enrollment = await engine.admin.enroll("wf-test", "c1")
    assert enrollment.status == EnrollmentStatus.ACTIVE
    assert enrollment.attempts == 1
    assert enrollment.resume_at == start + timedelta(seconds=60)

    clock.advance(seconds=61)
    await engine.scheduler.sweep()
    enrollment = await engine.admin.get_enrollment(enrollment.id)
    assert enrollment.attempts == 2
    assert enrollment.resume_at == clock() + timedelta(seconds=120)

    clock.advance(seconds=121)
    await engine.scheduler.sweep()
    enrollment = await engine.admin.get_enrollment(enrollment.id)

    assert len(calls) == 3
    assert enrollment.status == EnrollmentStatus.FAILED
    assert enrollment.attempts == 3
    assert enrollment.last_error.kind == "transient"
    assert enrollment.last_error.step_id == "sync"
    assert "timed out" in enrollment.last_error.message
    assert enrollment.resume_at is None


@pytest.mark.asyncio
async def test_unexpected_executor_exception_is_permanent(engine, clock, make_workflow, activate):
    async def down(config, entity, context):
        raise ConnectionError("refused")

    engine.registry.register_function("down", down)
    await activate(
        make_workflow([{"id": "call", "type": "action", "config": {"action_type": "down"}}])
    )

    enrollment = await engine.admin.enroll("wf-test", "c1")

    assert enrollment.status == EnrollmentStatus.FAILED
    assert enrollment.last_error.kind == "permanent"
    report = await engine.scheduler.sweep()
    assert report.selected == 0


@pytest.mark.asyncio
async def test_admin_retry_resumes_from_failed_step(engine, make_workflow, activate):
    calls = []

    async def rejects_once(config, entity, context):
        calls.append(1)
        if len(calls) == 1:
            raise PermanentError("quota exceeded")
        return {"synced": True}

    engine.registry.register_function("sync", rejects_once)
    await activate(
        make_workflow(
            [
                tag("first", "seen", next_step="sync"),
                {"id": "sync", "type": "action", "config": {"action_type": "sync"}},
            ]
        )
    )

    failed = await engine.admin.enroll("wf-test", "c1")
    assert failed.status == EnrollmentStatus.FAILED
    assert failed.current_step_id == "sync"

    retried = await engine.admin.retry(failed.id)

    assert retried.status == EnrollmentStatus.COMPLETED
    assert retried.attempts == 0
    assert [e.step_id for e in retried.log].count("first") == 1
    assert [e.outcome for e in retried.log if e.step_id == "sync"] == ["failed", "completed"]

    with pytest.raises(WorkflowStateError):
        await engine.admin.retry(failed.id)


# ----------------------------------------------------------------------
# Delays and the scheduler


@pytest.mark.asyncio
async def test_delay_suspends_until_wake_time(engine, records, clock, make_workflow, activate):
    start = clock()
    await activate(make_workflow([delay("wait", 2, "hours", next_step="mark"), tag("mark", "nudged")]))

    enrollment = await engine.admin.enroll("wf-test", "c1")
    assert enrollment.status == EnrollmentStatus.WAITING
    assert enrollment.resume_at == start + timedelta(hours=2)
    assert enrollment.delay_started_at == start

    clock.advance(hours=1)
    assert (await engine.scheduler.sweep()).selected == 0

    clock.advance(hours=3)
    report = await engine.scheduler.sweep()
    enrollment = await engine.admin.get_enrollment(enrollment.id)

    assert report.executed == [enrollment.id]
    assert enrollment.status == EnrollmentStatus.COMPLETED
    assert enrollment.delay_started_at is None
    assert (await records.get("contact", "c1"))["tags"] == ["nudged"]
    assert [e.outcome for e in enrollment.log if e.step_id == "wait"] == [
        "suspended",
        "completed",
    ]


@pytest.mark.asyncio
async def test_retargeted_delay_counts_from_original_entry(
    engine, clock, make_workflow, activate
):
    start = clock()
    await activate(make_workflow([delay("wait", 7, next_step="mark"), tag("mark", "late")]))
    enrollment = await engine.admin.enroll("wf-test", "c1")
    assert enrollment.resume_at == start + timedelta(days=7)

    clock.advance(days=2)
    rescheduled = await engine.admin.retarget_delay(
        "wf-test", "wait", {"mode": "duration", "amount": 10, "unit": "days"}
    )
    assert [e.id for e in rescheduled] == [enrollment.id]
    assert rescheduled[0].resume_at == start + timedelta(days=10)

    clock.advance(days=6)
    assert (await engine.scheduler.sweep()).selected == 0
    assert (await engine.admin.get_enrollment(enrollment.id)).status == EnrollmentStatus.WAITING

    clock.advance(days=2)
    await engine.scheduler.sweep()
    assert (await engine.admin.get_enrollment(enrollment.id)).status == EnrollmentStatus.COMPLETED


@pytest.mark.asyncio
async def test_retarget_rejects_non_delay_steps(engine, make_workflow, activate):
    await activate(make_workflow([tag("mark", "x")]))
    with pytest.raises(WorkflowStateError):
        await engine.admin.retarget_delay("wf-test", "mark", {"amount": 1})


@pytest.mark.asyncio
async def test_deleted_record_fails_enrollment_on_resume(
    engine, records, clock, make_workflow, activate
):
    await activate(make_workflow([delay("wait", 1, next_step="mark"), tag("mark", "x")]))
    enrollment = await engine.admin.enroll("wf-test", "c1")
    records.delete("contact", "c1")

    clock.advance(days=2)
    await engine.scheduler.sweep()
    enrollment = await engine.admin.get_enrollment(enrollment.id)

    assert enrollment.status == EnrollmentStatus.FAILED
    assert enrollment.last_error.kind == "permanent"


@pytest.mark.asyncio
async def test_long_walks_yield_to_the_next_sweep(records, reasoning, clock, make_workflow):
    config = EngineConfig(execution=ExecutionConfig(max_steps_per_turn=2))
    engine = build_engine(
        config,
        repository=InMemoryWorkflowRepository(),
        records=records,
        reasoning=reasoning,
        clock=clock,
    )
    workflow = make_workflow(
        [
            {"id": "one", "type": "transform", "config": {"assignments": {"a": 1}}, "edges": {"next": "two"}},
            {"id": "two", "type": "transform", "config": {"assignments": {"b": 2}}, "edges": {"next": "three"}},
            {"id": "three", "type": "transform", "config": {"assignments": {"c": 3}}},
        ]
    )
    await engine.admin.save_draft(workflow)
    await engine.admin.activate(workflow.id)

    enrollment = await engine.admin.enroll(workflow.id, "c1")
    assert enrollment.status == EnrollmentStatus.ACTIVE
    assert enrollment.current_step_id == "two"

    await engine.scheduler.sweep()
    enrollment = await engine.admin.get_enrollment(enrollment.id)
    assert enrollment.status == EnrollmentStatus.COMPLETED
    assert enrollment.data_context.variables == {"a": 1, "b": 2, "c": 3}


# ----------------------------------------------------------------------
# Leases and cancellation


@pytest.mark.asyncio
async def test_leased_enrollment_is_skipped_until_lease_expires(
    engine, clock, make_workflow, activate
):
    await activate(make_workflow([delay("wait", 1, next_step="mark"), tag("mark", "x")]))
    enrollment = await engine.admin.enroll("wf-test", "c1")
    clock.advance(days=1)
    assert await engine.repository.claim_enrollment(enrollment.id, "other-worker", 30, clock())

    report = await engine.scheduler.sweep()
    assert report.skipped == [enrollment.id]
    assert (await engine.admin.get_enrollment(enrollment.id)).status == EnrollmentStatus.WAITING

    clock.advance(seconds=31)
    report = await engine.scheduler.sweep()
    assert report.executed == [enrollment.id]
    assert (await engine.admin.get_enrollment(enrollment.id)).status == EnrollmentStatus.COMPLETED
    assert await engine.repository.lease_owner(enrollment.id, clock()) is None


@pytest.mark.asyncio
async def test_cancel_waiting_enrollment(engine, clock, make_workflow, activate):
    await activate(make_workflow([delay("wait", 1, next_step="mark"), tag("mark", "x")]))
    enrollment = await engine.admin.enroll("wf-test", "c1")

    canceled = await engine.admin.cancel(enrollment.id)

    assert canceled.status == EnrollmentStatus.CANCELED
    assert canceled.resume_at is None
    clock.advance(days=2)
    assert (await engine.scheduler.sweep()).selected == 0
    with pytest.raises(WorkflowStateError):
        await engine.admin.cancel(enrollment.id)


@pytest.mark.asyncio
async def test_cancel_of_leased_enrollment_applies_before_next_step(
    engine, clock, make_workflow, activate
):
    await activate(make_workflow([delay("wait", 1, next_step="mark"), tag("mark", "x")]))
    enrollment = await engine.admin.enroll("wf-test", "c1")
    await engine.repository.claim_enrollment(enrollment.id, "other-worker", 30, clock())

    pending = await engine.admin.cancel(enrollment.id)
    assert pending.status == EnrollmentStatus.WAITING
    assert await engine.repository.cancellation_requested(enrollment.id)

    await engine.repository.release_enrollment(enrollment.id, "other-worker")
    clock.advance(days=2)
    await engine.scheduler.sweep()

    enrollment = await engine.admin.get_enrollment(enrollment.id)
    assert enrollment.status == EnrollmentStatus.CANCELED
    assert "mark" not in [e.step_id for e in enrollment.log]


def slow_workflow(make_workflow):
    return make_workflow(
        [
            delay("wait", 1, next_step="call"),
            {
                "id": "call",
                "type": "action",
                "config": {"action_type": "slow_call"},
                "edges": {"next": "mark"},
            },
            tag("mark", "x"),
        ]
    )


def register_slow_call(engine):
    calls = []
    release = asyncio.Event()

    async def slow_call(config, entity, context):
        calls.append(1)
        await release.wait()
        return {"ok": True}

    engine.registry.register_function("slow_call", slow_call)
    return calls, release


async def until_called(calls):
    while not calls:
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_concurrent_runs_in_one_process_execute_a_step_once(
    engine, clock, make_workflow, activate
):
    calls, release = register_slow_call(engine)
    await activate(slow_workflow(make_workflow))
    enrollment = await engine.admin.enroll("wf-test", "c1")
    clock.advance(days=1)

    first = asyncio.create_task(engine.executor.run(enrollment.id))
    await until_called(calls)
    second = await engine.executor.run(enrollment.id)
    release.set()
    finished = await first

    assert second is None
    assert len(calls) == 1
    assert finished.status == EnrollmentStatus.COMPLETED
    assert await engine.repository.lease_owner(enrollment.id, clock()) is None


@pytest.mark.asyncio
async def test_cancel_during_a_running_step_is_not_overwritten(
    engine, clock, make_workflow, activate
):
    calls, release = register_slow_call(engine)
    await activate(slow_workflow(make_workflow))
    enrollment = await engine.admin.enroll("wf-test", "c1")
    clock.advance(days=1)

    running = asyncio.create_task(engine.executor.run(enrollment.id))
    await until_called(calls)
    pending = await engine.admin.cancel(enrollment.id)
    assert pending.status != EnrollmentStatus.CANCELED
    release.set()
    await running

    stored = await engine.admin.get_enrollment(enrollment.id)
    assert stored.status == EnrollmentStatus.CANCELED
    assert "mark" not in [e.step_id for e in stored.log]
    clock.advance(days=1)
    assert (await engine.scheduler.sweep()).selected == 0


@pytest.mark.asyncio
async def test_retarget_skips_leased_enrollment(engine, clock, make_workflow, activate):
    await activate(make_workflow([delay("wait", 7, next_step="mark"), tag("mark", "late")]))
    enrollment = await engine.admin.enroll("wf-test", "c1")
    await engine.repository.claim_enrollment(enrollment.id, "other-worker", 30, clock())

    rescheduled = await engine.admin.retarget_delay("wf-test", "wait", {"amount": 1})

    assert rescheduled == []
    stored = await engine.admin.get_enrollment(enrollment.id)
    assert stored.resume_at == enrollment.resume_at
    assert await engine.repository.lease_owner(enrollment.id, clock()) == "other-worker"


@pytest.mark.asyncio
async def test_retry_refuses_a_leased_enrollment(engine, clock, make_workflow, activate):
    async def broken(config, entity, context):
        raise PermanentError("rejected")

    engine.registry.register_function("broken", broken)
    await activate(
        make_workflow([{"id": "call", "type": "action", "config": {"action_type": "broken"}}])
    )
    enrollment = await engine.admin.enroll("wf-test", "c1")
    assert enrollment.status == EnrollmentStatus.FAILED
    await engine.repository.claim_enrollment(enrollment.id, "other-worker", 30, clock())

    with pytest.raises(WorkflowStateError):
        await engine.admin.retry(enrollment.id)
    assert (await engine.admin.get_enrollment(enrollment.id)).status == EnrollmentStatus.FAILED


# ----------------------------------------------------------------------
# Sub-workflows


def child_workflow(make_workflow, steps):
    return make_workflow(steps, id="child-wf", name="Child", event_type="sub_workflow")


@pytest.mark.asyncio
async def test_sub_workflow_result_is_bound_in_parent(engine, make_workflow, activate):
    await activate(
        child_workflow(
            make_workflow,
            [
                {
                    "id": "band",
                    "type": "transform",
                    "config": {"assignments": {"band": "{{contact.score | divide(10) | round}}"}},
                }
            ],
        )
    )
    await activate(
        make_workflow(
            [
                {
                    "id": "call_child",
                    "type": "sub_workflow",
                    "config": {
                        "workflow_id": "child-wf",
                        "variables": {"email": "{{contact.email}}"},
                        "result_var": "child",
                    },
                }
            ]
        )
    )

    parent = await engine.admin.enroll("wf-test", "c1")

    assert parent.status == EnrollmentStatus.COMPLETED
    assert parent.data_context.variables["child"] == {"email": "ada@example.com", "band": 8}
    children = await engine.admin.list_enrollments(workflow_id="child-wf")
    assert len(children) == 1
    assert children[0].parent_enrollment_id == parent.id
    assert children[0].source == "sub_workflow"
    assert children[0].depth == 1


@pytest.mark.asyncio
async def test_parent_waits_for_suspended_child(engine, clock, make_workflow, activate):
    await activate(
        child_workflow(make_workflow, [delay("pause", 1, "hours", next_step="mark"), tag("mark", "child")])
    )
    await activate(
        make_workflow(
            [
                {
                    "id": "call_child",
                    "type": "sub_workflow",
                    "config": {"workflow_id": "child-wf"},
                    "edges": {"next": "after"},
                },
                tag("after", "parent"),
            ]
        )
    )

    parent = await engine.admin.enroll("wf-test", "c1")
    assert parent.status == EnrollmentStatus.WAITING
    assert parent.resume_at is None
    assert parent.awaiting_enrollment_id

    clock.advance(hours=2)
    await engine.scheduler.sweep()
    child = await engine.admin.get_enrollment(parent.awaiting_enrollment_id)
    assert child.status == EnrollmentStatus.COMPLETED

    await engine.scheduler.sweep()
    parent = await engine.admin.get_enrollment(parent.id)
    assert parent.status == EnrollmentStatus.COMPLETED
    assert parent.awaiting_enrollment_id is None
    assert parent.data_context.step_outputs["call_child"]["enrollment_id"] == child.id


@pytest.mark.asyncio
async def test_failed_child_fails_parent_step(engine, make_workflow, activate):
    async def broken(config, entity, context):
        raise PermanentError("rejected")

    engine.registry.register_function("broken", broken)
    await activate(
        child_workflow(
            make_workflow, [{"id": "boom", "type": "action", "config": {"action_type": "broken"}}]
        )
    )
    await activate(
        make_workflow(
            [{"id": "call_child", "type": "sub_workflow", "config": {"workflow_id": "child-wf"}}]
        )
    )

    parent = await engine.admin.enroll("wf-test", "c1")

    assert parent.status == EnrollmentStatus.FAILED
    assert parent.last_error.step_id == "call_child"
    assert "rejected" in parent.last_error.message


# ----------------------------------------------------------------------
# Lifecycle, goals and stats


@pytest.mark.asyncio
async def test_workflow_lifecycle_transitions(engine, make_workflow):
    workflow = make_workflow([tag("mark", "x")])
    await engine.admin.save_draft(workflow)

    with pytest.raises(WorkflowStateError):
        await engine.admin.pause(workflow.id)

    active = await engine.admin.activate(workflow.id)
    assert active.status == WorkflowStatus.ACTIVE
    assert active.activated_at is not None
    with pytest.raises(WorkflowStateError):
        await engine.admin.save_draft(workflow)

    assert (await engine.admin.pause(workflow.id)).status == WorkflowStatus.PAUSED
    assert (await engine.admin.activate(workflow.id)).status == WorkflowStatus.ACTIVE
    assert (await engine.admin.archive(workflow.id)).status == WorkflowStatus.ARCHIVED
    with pytest.raises(WorkflowStateError):
        await engine.admin.activate(workflow.id)


@pytest.mark.asyncio
async def test_activation_reports_every_invalid_step(engine, make_workflow):
    workflow = make_workflow(
        [
            {
                "id": "call",
                "type": "action",
                "config": {"action_type": "no_such_action"},
                "edges": {"next": "nowhere"},
            }
        ]
    )
    await engine.admin.save_draft(workflow)

    with pytest.raises(WorkflowValidationError) as excinfo:
        await engine.admin.activate(workflow.id)

    assert excinfo.value.step_ids == ["call"]
    assert len(excinfo.value.issues) == 2
    stored = await engine.repository.get_workflow(workflow.id)
    assert stored.status == WorkflowStatus.DRAFT


@pytest.mark.asyncio
async def test_paused_workflow_keeps_running_existing_enrollments(
    engine, clock, make_workflow, activate
):
    await activate(make_workflow([delay("wait", 1, next_step="mark"), tag("mark", "x")]))
    enrollment = await engine.admin.enroll("wf-test", "c1")
    await engine.admin.pause("wf-test")

    with pytest.raises(WorkflowStateError):
        await engine.admin.enroll("wf-test", "c2")

    clock.advance(days=2)
    await engine.scheduler.sweep()
    assert (await engine.admin.get_enrollment(enrollment.id)).status == EnrollmentStatus.COMPLETED


@pytest.mark.asyncio
async def test_goal_criteria_and_stats(engine, make_workflow, activate):
    await activate(
        make_workflow(
            [
                {
                    "id": "is_hot",
                    "type": "condition",
                    "config": {"left": "{{contact.score}}", "operator": "greater_than", "right": 50},
                    "edges": {"yes": "mark"},
                },
                tag("mark", "hot"),
            ],
            goal_criteria={
                "conditions": [{"left": "{{contact.tags}}", "operator": "contains", "right": "hot"}]
            },
        )
    )

    hot = await engine.admin.enroll("wf-test", "c1")
    cold = await engine.admin.enroll("wf-test", "c2")
    stats = await engine.admin.stats("wf-test")

    assert hot.goal_met is True
    assert cold.goal_met is False
    assert stats.total_enrolled == 2
    assert stats.by_status == {"completed": 2}
    assert stats.goals_met == 1
    assert stats.goal_rate == 0.5
