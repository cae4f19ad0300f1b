"""In-memory event transport for tests and single-process runs."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import Deque, Dict, Optional

from .base import BaseTransport


class InMemoryTransport(BaseTransport):
    """Simple in-process queue per topic.

    Events are stored encoded, so subscribers never share objects with the
    publisher.
    """

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[str]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.poll_interval = poll_interval

    async def _push(self, topic: str, raw: str) -> None:
        async with self._lock:
            self._queues[topic].append(raw)

    async def _pop(self, topic: str) -> Optional[str]:
        async with self._lock:
            if self._queues[topic]:
                return self._queues[topic].popleft()
        return None

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])
