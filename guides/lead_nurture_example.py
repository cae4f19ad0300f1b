"""Run the lead nurture workflow end to end against in-memory stores.

Usage:
    python guides/lead_nurture_example.py
"""

import asyncio
from pathlib import Path

import yaml

from autoflow import BusinessEvent, WorkflowDefinition, build_engine
from autoflow.config import EngineConfig
from autoflow.persistence import InMemoryWorkflowRepository
from autoflow.records import InMemoryRecordStore
from autoflow.utils.clock import FrozenClock

HERE = Path(__file__).parent


async def main():
    clock = FrozenClock()
    records = InMemoryRecordStore.from_file(HERE / "records.yaml")
    engine = build_engine(
        EngineConfig(),
        repository=InMemoryWorkflowRepository(),
        records=records,
        clock=clock,
    )

    with open(HERE / "workflows" / "lead_nurture.yaml") as f:
        workflow = WorkflowDefinition.model_validate(yaml.safe_load(f))

    # Dry run first: nothing is written
    report = await engine.simulator.run(workflow, "c-200")
    print(f"Simulated {report.entity}: {report.status.value}")
    for entry in report.trace:
        print(f"  - {entry.step_id}: {entry.outcome}")

    await engine.admin.save_draft(workflow)
    await engine.admin.activate(workflow.id)

    for entity_id in ("c-100", "c-200"):
        event = BusinessEvent(
            event_type="contact_created", entity_type="contact", entity_id=entity_id
        )
        for enrollment in await engine.dispatcher.handle_event(event):
            print(f"{entity_id}: {enrollment.status.value} at {enrollment.current_step_id}")

    # Three days later the scheduler picks up the waiting enrollment
    clock.advance(days=3)
    sweep = await engine.scheduler.sweep()
    print(f"Sweep: {sweep}")

    for entity_id in ("c-100", "c-200"):
        print(entity_id, await records.get("contact", entity_id))

    stats = await engine.admin.stats(workflow.id)
    print(f"Enrolled {stats.total_enrolled}, by status {stats.by_status}")


if __name__ == "__main__":
    asyncio.run(main())
