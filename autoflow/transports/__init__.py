"""Event feed transports.

``get_transport`` picks the backend from, in order, its argument, the
``AUTOFLOW_TRANSPORT`` environment variable and ``transport.backend`` in the
engine config.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from ..config import EngineConfig, load_config
from .base import DEAD_LETTER_TOPIC, BaseTransport
from .inmemory import InMemoryTransport

logger = logging.getLogger(__name__)


def get_transport(
    backend: Optional[str] = None, config: Optional[EngineConfig] = None
) -> BaseTransport:
    config = config or load_config()
    name = (backend or os.getenv("AUTOFLOW_TRANSPORT") or config.transport.backend).lower()
    logger.debug(f"Using {name} event transport")

    if name == "inmemory":
        return InMemoryTransport()
    if name == "redis":
        from .redis import RedisTransport

        return RedisTransport.from_config(config.transport.redis)
    raise ValueError(f"Unsupported transport backend: {name}")


__all__ = ["BaseTransport", "DEAD_LETTER_TOPIC", "InMemoryTransport", "get_transport"]
