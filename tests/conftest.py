"""Shared fixtures for engine tests."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from autoflow.config import EngineConfig, ExecutionConfig, RetryConfig
from autoflow.contracts import WorkflowDefinition
from autoflow.engine import build_engine
from autoflow.persistence import InMemoryWorkflowRepository
from autoflow.reasoning import ReasoningReply, parse_reply
from autoflow.records import InMemoryRecordStore
from autoflow.utils.clock import FrozenClock

# A Monday morning
START = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)


class FakeReasoning:
    """Reasoning service double returning a canned reply."""

    def __init__(self, text: str = '{"tier": "gold"}') -> None:
        self.text = text
        self.calls: List[Dict[str, Any]] = []

    async def invoke(
        self, prompt: str, context: Dict[str, Any], timeout: float
    ) -> ReasoningReply:
        self.calls.append({"prompt": prompt, "context": context, "timeout": timeout})
        return ReasoningReply(text=self.text, parsed=parse_reply(self.text))


def build_workflow(
    steps: List[Dict[str, Any]],
    event_type: str = "contact_created",
    filters: Optional[List[Dict[str, Any]]] = None,
    **kwargs: Any,
) -> WorkflowDefinition:
    """A workflow whose trigger step leads to the first of ``steps``."""
    trigger = {
        "id": "start",
        "type": "trigger",
        "config": {"event_type": event_type, "filters": filters or []},
        "edges": {"next": steps[0]["id"]},
    }
    data = {
        "id": kwargs.pop("id", "wf-test"),
        "name": kwargs.pop("name", "Test workflow"),
        "steps": [trigger, *steps],
        **kwargs,
    }
    return WorkflowDefinition.model_validate(data)


@pytest.fixture
def make_workflow():
    return build_workflow


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture
def records() -> InMemoryRecordStore:
    store = InMemoryRecordStore()
    store.put("contact", "c1", {"email": "ada@example.com", "score": 80, "tags": []})
    store.put("contact", "c2", {"email": "bob@example.com", "score": 20, "tags": []})
    store.put("contact", "c3", {"email": "eve@example.com", "score": 55, "tags": ["vip"]})
    return store


@pytest.fixture
def reasoning() -> FakeReasoning:
    return FakeReasoning()


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(
        retry=RetryConfig(max_attempts=3, backoff_base=2.0, initial_delay_seconds=60),
        execution=ExecutionConfig(action_timeout_seconds=5),
    )


@pytest.fixture
def engine(engine_config, records, reasoning, clock):
    return build_engine(
        engine_config,
        repository=InMemoryWorkflowRepository(),
        records=records,
        reasoning=reasoning,
        clock=clock,
    )


@pytest.fixture
def activate(engine):
    """Save ``workflow`` as a draft and activate it."""

    async def _activate(workflow: WorkflowDefinition) -> WorkflowDefinition:
        await engine.admin.save_draft(workflow)
        return await engine.admin.activate(workflow.id)

    return _activate
