"""Action executor registry."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from ..contracts import DataContext
from ..errors import ConfigurationError
from ..records import RecordStore
from .base import ActionError, ActionExecutor, ActionResult
from .builtin import (
    AddTagExecutor,
    RemoveTagExecutor,
    UpdateFieldExecutor,
    WebhookExecutor,
)

logger = logging.getLogger(__name__)

ActionFunction = Callable[[Dict[str, Any], Dict[str, Any], DataContext], Awaitable[Any]]


class FunctionExecutor(ActionExecutor):
    """Adapt a plain coroutine function to the executor interface.

    The function's return value becomes the step output; an ``ActionResult``
    return value is passed through unchanged.
    """

    def __init__(self, action_type: str, fn: ActionFunction) -> None:
        self.action_type = action_type
        self._fn = fn

    async def execute(
        self, config: Dict[str, Any], entity: Dict[str, Any], context: DataContext
    ) -> ActionResult:
        result = await self._fn(config, entity, context)
        if isinstance(result, ActionResult):
            return result
        return ActionResult.ok(result)


class ActionRegistry:
    """Maps action-type identifiers to executors."""

    def __init__(self) -> None:
        self._executors: Dict[str, ActionExecutor] = {}

    def register(
        self,
        executor: ActionExecutor,
        action_type: Optional[str] = None,
        replace: bool = False,
    ) -> ActionExecutor:
        name = action_type or executor.action_type
        if not name:
            raise ValueError("executor has no action_type")
        if name in self._executors and not replace:
            raise ValueError(f"Executor already registered for {name!r}")
        self._executors[name] = executor
        logger.debug(f"Registered executor {type(executor).__name__} for {name!r}")
        return executor

    def register_function(
        self, action_type: str, fn: ActionFunction, replace: bool = False
    ) -> ActionExecutor:
        return self.register(FunctionExecutor(action_type, fn), replace=replace)

    def get(self, action_type: str) -> ActionExecutor:
        executor = self._executors.get(action_type)
        if executor is None:
            raise ConfigurationError(f"No executor registered for action type {action_type!r}")
        return executor

    def action_types(self) -> List[str]:
        return sorted(self._executors)

    def __contains__(self, action_type: str) -> bool:
        return action_type in self._executors


def default_registry(
    records: RecordStore, http_client: Optional[httpx.AsyncClient] = None
) -> ActionRegistry:
    """Registry with the built-in record and webhook executors."""
    registry = ActionRegistry()
    registry.register(UpdateFieldExecutor(records))
    registry.register(AddTagExecutor(records))
    registry.register(RemoveTagExecutor(records))
    registry.register(WebhookExecutor(http_client))
    return registry


__all__ = [
    "ActionError",
    "ActionExecutor",
    "ActionRegistry",
    "ActionResult",
    "FunctionExecutor",
    "default_registry",
]
