"""Base broker interface for progress subscriptions."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Optional

from ..contracts import ProgressEvent


class ProgressBroker(metaclass=abc.ABCMeta):
    """Abstract fan-out layer between executions and progress subscribers."""

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, event: ProgressEvent) -> None:
        """Append ``event`` to its execution's progress stream."""
        raise NotImplementedError

    @abc.abstractmethod
    async def history(self, execution_id: str) -> list[ProgressEvent]:
        """Return every event published so far for ``execution_id``."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, execution_id: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[ProgressEvent]:
        """Yield prior events for ``execution_id``, then new ones as they arrive.

        Args:
            execution_id: The execution to follow
            lifespan: Maximum time in seconds to keep following. If None, runs indefinitely.
        """
        raise NotImplementedError
