"""autoflow: durable workflow automation for business records."""

from .actions import ActionExecutor, ActionRegistry, ActionResult, default_registry
from .admin import WorkflowAdmin
from .contracts import BusinessEvent, Enrollment, EnrollmentStatus, WorkflowDefinition
from .dispatch import TriggerDispatcher
from .engine import Engine, build_engine
from .execute import EnrollmentExecutor
from .interpreter import StepInterpreter
from .persistence import get_repository
from .scheduler import SuspensionScheduler
from .simulation import SimulationRunner
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ActionExecutor",
    "ActionRegistry",
    "ActionResult",
    "BusinessEvent",
    "Engine",
    "Enrollment",
    "EnrollmentExecutor",
    "EnrollmentStatus",
    "SimulationRunner",
    "StepInterpreter",
    "SuspensionScheduler",
    "TriggerDispatcher",
    "WorkflowAdmin",
    "WorkflowDefinition",
    "build_engine",
    "default_registry",
    "get_repository",
    "get_transport",
]
