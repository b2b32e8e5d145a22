"""Base interface for lifecycle notification sinks."""

from __future__ import annotations

import abc

from ..contracts import LifecycleEvent


class BaseEventSink(metaclass=abc.ABCMeta):
    """Abstract destination for task and step lifecycle events."""

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, event: LifecycleEvent) -> None:
        """Deliver one event. Delivery is at-least-once."""
        raise NotImplementedError
