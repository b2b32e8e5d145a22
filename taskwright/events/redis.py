"""Redis event sink for cross-process lifecycle notifications."""

from __future__ import annotations

from typing import Any, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..contracts import LifecycleEvent
from .base import BaseEventSink


class RedisEventSink(BaseEventSink):
    """Publish events to Redis pub/sub channels and a replayable list.

    Each event goes to ``<prefix>:<event name>`` as a pub/sub message and is
    pushed onto ``<prefix>:events`` so late consumers can drain it.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        channel_prefix: str = "taskwright",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisEventSink")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.channel_prefix = channel_prefix
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Open the client that lifecycle events are published through.

        ``publish`` calls this lazily, so explicit use is only needed to fail
        fast on a bad host or password.
        """
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Close the client; the next ``publish`` reconnects."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, event: LifecycleEvent) -> None:
        if not self._redis:
            await self.connect()

        payload = event.to_json()
        await self._redis.publish(f"{self.channel_prefix}:{event.name}", payload)
        await self._redis.lpush(f"{self.channel_prefix}:events", payload)
