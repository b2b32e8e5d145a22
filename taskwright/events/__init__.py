"""Where task and step lifecycle events are published.

Every transition the state machines persist is also handed to an event sink.
The in-memory sink keeps events for tests and single-process runs; the Redis
sink makes them visible to other processes.
"""

from __future__ import annotations

import os
from typing import Optional

from ..config import TaskwrightConfig, load_config
from .base import BaseEventSink
from .inmemory import InMemoryEventSink


def get_event_sink(
    backend: Optional[str] = None, config: Optional[TaskwrightConfig] = None
) -> BaseEventSink:
    """Build the sink that receives lifecycle events for dispatched tasks.

    ``backend`` overrides ``TASKWRIGHT_EVENTS`` which overrides
    ``events.backend`` in the config file. Redis connection settings always
    come from ``events.redis``. Unlike :func:`~taskwright.persistence.get_repository`
    each call returns a new sink, and the caller owns its connection.
    """

    config = config or load_config()
    backend = (backend or os.getenv("TASKWRIGHT_EVENTS") or config.events.backend).lower()

    if backend == "inmemory":
        return InMemoryEventSink()
    if backend == "redis":
        from .redis import RedisEventSink

        redis_conf = config.events.redis
        return RedisEventSink(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            channel_prefix=redis_conf.channel_prefix,
        )
    raise ValueError(f"Unsupported event backend: {backend}")


__all__ = ["BaseEventSink", "InMemoryEventSink", "get_event_sink"]
