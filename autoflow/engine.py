"""Wiring of the engine components from an :class:`EngineConfig`."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .actions import ActionRegistry, default_registry
from .admin import WorkflowAdmin
from .config import EngineConfig, load_config
from .dispatch import TriggerDispatcher
from .execute import EnrollmentExecutor
from .failures import RetryManager
from .interpreter import StepInterpreter
from .persistence import WorkflowRepository, get_repository
from .reasoning import PydanticAIReasoningService, ReasoningService
from .records import InMemoryRecordStore, RecordStore
from .scheduler import SuspensionScheduler
from .simulation import SimulationRunner
from .transports import BaseTransport, get_transport
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    config: EngineConfig
    repository: WorkflowRepository
    records: RecordStore
    registry: ActionRegistry
    interpreter: StepInterpreter
    executor: EnrollmentExecutor
    scheduler: SuspensionScheduler
    dispatcher: TriggerDispatcher
    simulator: SimulationRunner
    admin: WorkflowAdmin
    transport: Optional[BaseTransport] = None

    def get_transport(self) -> BaseTransport:
        if self.transport is None:
            self.transport = get_transport(config=self.config)
        return self.transport


def build_engine(
    config: Optional[EngineConfig] = None,
    repository: Optional[WorkflowRepository] = None,
    records: Optional[RecordStore] = None,
    registry: Optional[ActionRegistry] = None,
    reasoning: Optional[ReasoningService] = None,
    transport: Optional[BaseTransport] = None,
    run_immediately: bool = True,
    clock: Clock = utcnow,
) -> Engine:
    """Assemble an engine; any component may be supplied pre-built."""
    config = config or load_config()
    repository = repository or get_repository(config.database_url, config)
    if records is None:
        if config.records_file:
            records = InMemoryRecordStore.from_file(config.records_file)
        else:
            records = InMemoryRecordStore()
    registry = registry or default_registry(records)
    reasoning = reasoning or PydanticAIReasoningService(config.reasoning)

    interpreter = StepInterpreter(
        registry, records, reasoning=reasoning, config=config.execution, clock=clock
    )
    retry_manager = RetryManager(config.retry, clock=clock)
    executor = EnrollmentExecutor(
        repository,
        interpreter,
        retry_manager=retry_manager,
        lease_ttl_seconds=config.scheduler.lease_ttl_seconds,
        clock=clock,
    )
    scheduler = SuspensionScheduler(repository, executor, config.scheduler, clock=clock)
    dispatcher = TriggerDispatcher(
        repository, executor, records, run_immediately=run_immediately, clock=clock
    )
    simulator = SimulationRunner(
        repository, registry, records, reasoning=reasoning, config=config.execution
    )
    admin = WorkflowAdmin(
        repository,
        registry,
        dispatcher,
        executor,
        simulator,
        retry_manager=retry_manager,
        clock=clock,
    )
    logger.debug(
        f"Engine built with {type(repository).__name__} and actions {registry.action_types()}"
    )
    return Engine(
        config=config,
        repository=repository,
        records=records,
        registry=registry,
        interpreter=interpreter,
        executor=executor,
        scheduler=scheduler,
        dispatcher=dispatcher,
        simulator=simulator,
        admin=admin,
        transport=transport,
    )
