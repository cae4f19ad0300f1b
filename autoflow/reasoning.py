"""Boundary to the external reasoning service used by ``ai_agent`` steps."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Protocol

from pydantic import BaseModel
from pydantic_ai import Agent
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior

from .config import ReasoningConfig
from .errors import PermanentError, TransientError

logger = logging.getLogger(__name__)


class ReasoningReply(BaseModel):
    text: str
    parsed: Optional[Any] = None


class ReasoningService(Protocol):
    async def invoke(
        self, prompt: str, context: Dict[str, Any], timeout: float
    ) -> ReasoningReply:
        """Submit ``prompt`` with ``context``; raise ``TransientError`` on timeout."""


def build_task(prompt: str, context: Dict[str, Any]) -> str:
    """Render the prompt followed by the selected context as JSON."""
    if not context:
        return prompt
    return f"{prompt}\n\nContext:\n{json.dumps(context, indent=2, default=str)}"


def parse_reply(text: str) -> Optional[Any]:
    """Parse a JSON reply, tolerating a fenced code block around it."""
    candidate = text.strip()
    if candidate.startswith("```"):
        candidate = candidate.strip("`")
        if candidate.lower().startswith("json"):
            candidate = candidate[4:]
    try:
        return json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return None


class PydanticAIReasoningService(ReasoningService):
    """Reasoning service backed by a ``pydantic_ai.Agent``.

    The agent is created lazily so constructing the engine never requires
    model credentials.
    """

    def __init__(
        self, config: Optional[ReasoningConfig] = None, agent: Optional[Agent] = None
    ) -> None:
        self._config = config or ReasoningConfig()
        self._agent = agent

    @property
    def agent(self) -> Agent:
        if self._agent is None:
            logger.debug(f"Creating reasoning agent for model {self._config.model}")
            self._agent = Agent(
                self._config.model,
                system_prompt=self._config.system_prompt,
                name="autoflow-reasoning",
            )
        return self._agent

    async def invoke(
        self, prompt: str, context: Dict[str, Any], timeout: float
    ) -> ReasoningReply:
        task = build_task(prompt, context)
        try:
            result = await asyncio.wait_for(self.agent.run(task), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise TransientError(f"Reasoning service timed out after {timeout}s") from exc
        except ModelHTTPError as exc:
            if exc.status_code == 429 or exc.status_code >= 500:
                raise TransientError(f"Reasoning service unavailable: {exc}") from exc
            raise PermanentError(f"Reasoning service rejected the request: {exc}") from exc
        except UnexpectedModelBehavior as exc:
            raise PermanentError(f"Reasoning service misbehaved: {exc}") from exc
        except (ConnectionError, OSError) as exc:
            raise TransientError(f"Reasoning service unavailable: {exc}") from exc

        output = getattr(result, "output", result)
        text = output if isinstance(output, str) else json.dumps(output, default=str)
        return ReasoningReply(text=text, parsed=parse_reply(text))
