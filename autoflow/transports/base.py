"""Base transport for the business-event feed.

Backends only move encoded events between topics. Decoding, the listening
window and dead-lettering live here so every backend treats the feed the
same way.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import AsyncIterator, Optional, Tuple

from pydantic import ValidationError

from ..contracts import BusinessEvent

logger = logging.getLogger(__name__)

DEAD_LETTER_TOPIC = "dead-letter"


class BaseTransport(metaclass=abc.ABCMeta):
    """Abstract event feed carrying JSON-encoded record lifecycle events."""

    dead_letter_topic: str = DEAD_LETTER_TOPIC
    poll_interval: float = 0.05

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def _push(self, topic: str, raw: str) -> None:
        """Append an encoded event to ``topic``."""

    @abc.abstractmethod
    async def _pop(self, topic: str) -> Optional[str]:
        """Remove and return the oldest encoded event, or ``None``."""

    # ------------------------------------------------------------------
    async def publish(self, topic: str, event: BusinessEvent) -> None:
        await self._push(topic, event.to_json())

    @staticmethod
    def decode(raw: str, topic: str) -> Optional[BusinessEvent]:
        try:
            return BusinessEvent.from_json(raw)
        except ValidationError as exc:
            logger.warning(f"Malformed event on {topic}: {exc}")
            return None

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, BusinessEvent]]:
        """Yield ``(raw, event)`` pairs in publish order.

        Malformed messages go straight to the dead-letter topic. ``lifespan``
        bounds the listening window in seconds; ``None`` listens forever.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while lifespan is None or loop.time() - start_time < lifespan:
            raw = await self._pop(topic)
            if raw is None:
                await asyncio.sleep(self.poll_interval)
                continue
            event = self.decode(raw, topic)
            if event is None:
                await self._push(self.dead_letter_topic, raw)
                continue
            yield raw, event

    async def ack(self, raw_message: str) -> None:
        """No-op: a message leaves its topic when it is popped."""
        pass

    async def nack(self, raw_message: str, requeue: bool = True) -> None:
        """Park a message that could not be handled on the dead-letter topic."""
        if requeue:
            await self._push(self.dead_letter_topic, raw_message)
