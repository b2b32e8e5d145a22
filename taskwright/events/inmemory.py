"""In-memory event sink for tests and single-process use."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import AsyncIterator, Callable, Dict, List, Optional

from ..contracts import LifecycleEvent
from .base import BaseEventSink

Listener = Callable[[LifecycleEvent], None]


class InMemoryEventSink(BaseEventSink):
    """Keeps every published event and fans out to registered listeners."""

    def __init__(self) -> None:
        self.events: List[LifecycleEvent] = []
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._queues: List[asyncio.Queue[LifecycleEvent]] = []

    def add_listener(self, name: str, listener: Listener) -> None:
        """Call ``listener`` for events named ``name`` (``*`` for all)."""
        self._listeners[name].append(listener)

    async def publish(self, event: LifecycleEvent) -> None:
        self.events.append(event)
        for listener in self._listeners.get(event.name, []) + self._listeners.get("*", []):
            listener(event)
        for queue in self._queues:
            queue.put_nowait(event)

    def named(self, name: str) -> List[LifecycleEvent]:
        return [e for e in self.events if e.name == name]

    def for_entity(self, entity_id: str) -> List[LifecycleEvent]:
        return [e for e in self.events if e.entity_id == entity_id]

    async def subscribe(
        self, lifespan: Optional[float] = None
    ) -> AsyncIterator[LifecycleEvent]:
        """Yield events published after subscription.

        Args:
            lifespan: Maximum time in seconds to keep listening. If None, runs indefinitely.
        """
        queue: asyncio.Queue[LifecycleEvent] = asyncio.Queue()
        self._queues.append(queue)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        try:
            while True:
                timeout = None
                if deadline is not None:
                    timeout = deadline - loop.time()
                    if timeout <= 0:
                        break
                try:
                    yield await asyncio.wait_for(queue.get(), timeout)
                except asyncio.TimeoutError:
                    break
        finally:
            self._queues.remove(queue)
