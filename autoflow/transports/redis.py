"""Redis transport for cross-process event delivery."""

from __future__ import annotations

from typing import Any, Optional

import redis.asyncio as redis

from ..config import RedisConfig
from .base import BaseTransport


class RedisTransport(BaseTransport):
    """Redis list used as a FIFO queue (LPUSH / BRPOP)."""

    poll_interval = 0.01

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        block_seconds: int = 1,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.block_seconds = block_seconds
        self._redis: Optional[Any] = None

    @classmethod
    def from_config(cls, config: RedisConfig) -> "RedisTransport":
        return cls(host=config.host, port=config.port, db=config.db, password=config.password)

    @staticmethod
    def queue_name(topic: str) -> str:
        return f"autoflow:{topic}"

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    async def _push(self, topic: str, raw: str) -> None:
        client = await self._client()
        await client.lpush(self.queue_name(topic), raw)

    async def _pop(self, topic: str) -> Optional[str]:
        client = await self._client()
        result = await client.brpop(self.queue_name(topic), timeout=self.block_seconds)
        if not result:
            return None
        _, raw = result
        return raw
