"""Uniform interface every action executor satisfies."""

from __future__ import annotations

import abc
from typing import Any, ClassVar, Dict, Optional

from pydantic import BaseModel

from ..contracts import DataContext


class ActionError(BaseModel):
    kind: str
    message: str


class ActionResult(BaseModel):
    """Outcome of one executor invocation."""

    success: bool
    output: Any = None
    error: Optional[ActionError] = None

    @classmethod
    def ok(cls, output: Any = None) -> "ActionResult":
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, kind: str, message: str) -> "ActionResult":
        return cls(success=False, error=ActionError(kind=kind, message=message))


class ActionExecutor(metaclass=abc.ABCMeta):
    """Performs the side effect behind one action type.

    Executors report failures either by returning ``ActionResult.fail`` with a
    kind (``transient``, ``timeout``, ``rate_limited``, ``permanent``,
    ``not_found``, ``configuration``) or by raising a ``StepError``.
    """

    action_type: ClassVar[str] = ""

    @abc.abstractmethod
    async def execute(
        self,
        config: Dict[str, Any],
        entity: Dict[str, Any],
        context: DataContext,
    ) -> ActionResult:
        """Run the action with fully resolved ``config``."""
        raise NotImplementedError

    async def simulate(
        self,
        config: Dict[str, Any],
        entity: Dict[str, Any],
        context: DataContext,
    ) -> ActionResult:
        """Echo what ``execute`` would have done without doing it."""
        return ActionResult.ok(
            {"simulated": True, "action_type": self.action_type, "input": config}
        )
