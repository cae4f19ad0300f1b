from datetime import datetime, timedelta, timezone

import pytest

from autoflow.contracts import (
    DataContext,
    Enrollment,
    EnrollmentStatus,
    EntityRef,
    WorkflowDefinition,
    WorkflowStatus,
)
from autoflow.persistence import (
    InMemoryWorkflowRepository,
    SQLiteWorkflowRepository,
    get_repository,
    reset_repository,
)

NOW = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "inmemory":
        yield InMemoryWorkflowRepository()
    else:
        repository = SQLiteWorkflowRepository(tmp_path / "autoflow.db")
        yield repository
        repository.close()


def workflow(workflow_id="wf-1", status=WorkflowStatus.DRAFT) -> WorkflowDefinition:
    return WorkflowDefinition.model_validate(
        {
            "id": workflow_id,
            "name": "Nurture",
            "status": status,
            "steps": [
                {"id": "start", "type": "trigger", "config": {"event_type": "contact_created"}, "edges": {"next": "wait"}},
                {"id": "wait", "type": "delay", "config": {"amount": 2, "unit": "days"}},
            ],
        }
    )


def enrollment(enrollment_id="e1", entity_id="c1", **kwargs) -> Enrollment:
    return Enrollment(
        id=enrollment_id,
        workflow_id=kwargs.pop("workflow_id", "wf-1"),
        entity=EntityRef(type="contact", id=entity_id),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_workflow_round_trip_and_listing(repo):
    await repo.save_workflow(workflow())
    await repo.save_workflow(workflow("wf-2", WorkflowStatus.ACTIVE))

    stored = await repo.get_workflow("wf-1")
    assert stored.name == "Nurture"
    assert stored.step("wait").config.amount == 2
    assert await repo.get_workflow("missing") is None
    assert [w.id for w in await repo.list_workflows(WorkflowStatus.ACTIVE)] == ["wf-2"]
    assert len(await repo.list_workflows()) == 2

    stored.status = WorkflowStatus.PAUSED
    await repo.save_workflow(stored)
    assert (await repo.get_workflow("wf-1")).status == WorkflowStatus.PAUSED


@pytest.mark.asyncio
async def test_enrollment_round_trip(repo):
    original = enrollment(
        current_step_id="wait",
        data_context=DataContext(variables={"score": 80}, step_outputs={"start": {"x": 1}}),
        resume_at=NOW,
        delay_started_at=NOW,
    )
    await repo.create_enrollment(original)

    loaded = await repo.get_enrollment("e1")
    assert loaded == original

    loaded.status = EnrollmentStatus.COMPLETED
    loaded.resume_at = None
    await repo.save_enrollment(loaded)
    assert (await repo.get_enrollment("e1")).status == EnrollmentStatus.COMPLETED
    assert await repo.get_enrollment("missing") is None


@pytest.mark.asyncio
async def test_list_and_find_active_enrollments(repo):
    await repo.create_enrollment(
        enrollment("e1", "c1", status=EnrollmentStatus.WAITING, created_at=NOW)
    )
    await repo.create_enrollment(
        enrollment(
            "e2", "c2", status=EnrollmentStatus.COMPLETED, created_at=NOW + timedelta(seconds=1)
        )
    )
    await repo.create_enrollment(enrollment("e3", "c1", workflow_id="wf-2"))

    assert [e.id for e in await repo.list_enrollments(workflow_id="wf-1")] == ["e1", "e2"]
    assert [e.id for e in await repo.list_enrollments(status=EnrollmentStatus.COMPLETED)] == ["e2"]

    found = await repo.find_active_enrollment("wf-1", "contact", "c1")
    assert found.id == "e1"
    assert await repo.find_active_enrollment("wf-1", "contact", "c2") is None


@pytest.mark.asyncio
async def test_due_enrollments_by_threshold(repo):
    await repo.create_enrollment(enrollment("late", "c1", status=EnrollmentStatus.WAITING, resume_at=NOW - timedelta(hours=5)))
    await repo.create_enrollment(enrollment("now", "c2", status=EnrollmentStatus.ACTIVE, resume_at=NOW))
    await repo.create_enrollment(enrollment("future", "c3", status=EnrollmentStatus.WAITING, resume_at=NOW + timedelta(minutes=1)))
    await repo.create_enrollment(enrollment("parked", "c4", status=EnrollmentStatus.WAITING))
    await repo.create_enrollment(enrollment("done", "c5", status=EnrollmentStatus.FAILED, resume_at=NOW))

    due = await repo.due_enrollments(NOW, limit=10)
    assert [e.id for e in due] == ["late", "now"]
    assert [e.id for e in await repo.due_enrollments(NOW, limit=1)] == ["late"]


@pytest.mark.asyncio
async def test_leases_are_exclusive_until_expiry(repo):
    await repo.create_enrollment(enrollment())

    assert await repo.claim_enrollment("e1", "worker-a", 60, NOW)
    assert not await repo.claim_enrollment("e1", "worker-b", 60, NOW + timedelta(seconds=30))
    # renewal by the holder
    assert await repo.claim_enrollment("e1", "worker-a", 60, NOW + timedelta(seconds=30))
    assert await repo.lease_owner("e1", NOW + timedelta(seconds=80)) == "worker-a"

    assert await repo.claim_enrollment("e1", "worker-b", 60, NOW + timedelta(seconds=91))
    assert await repo.lease_owner("e1", NOW + timedelta(seconds=91)) == "worker-b"

    await repo.release_enrollment("e1", "worker-a")
    assert await repo.lease_owner("e1", NOW + timedelta(seconds=91)) == "worker-b"
    await repo.release_enrollment("e1", "worker-b")
    assert await repo.lease_owner("e1", NOW + timedelta(seconds=91)) is None
    assert not await repo.claim_enrollment("missing", "worker-a", 60, NOW)


@pytest.mark.asyncio
async def test_saving_enrollment_keeps_lease_and_cancel_flag(repo):
    await repo.create_enrollment(enrollment())
    await repo.claim_enrollment("e1", "worker-a", 60, NOW)
    await repo.request_cancellation("e1")

    loaded = await repo.get_enrollment("e1")
    loaded.current_step_id = "wait"
    await repo.save_enrollment(loaded)

    assert await repo.lease_owner("e1", NOW) == "worker-a"
    assert await repo.cancellation_requested("e1")


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    monkeypatch.delenv("AUTOFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("AUTOFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    reset_repository()
    try:
        assert isinstance(get_repository(), InMemoryWorkflowRepository)
        assert get_repository() is get_repository()

        sqlite_repo = get_repository(f"sqlite://{tmp_path / 'wf.db'}")
        assert isinstance(sqlite_repo, SQLiteWorkflowRepository)
        sqlite_repo.close()

        with pytest.raises(ValueError):
            get_repository("mysql://localhost/db")
    finally:
        reset_repository()
