"""In-memory progress broker for tests and single-process workers."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import AsyncIterator, Dict, List, Optional

from ..contracts import ProgressEvent
from .base import ProgressBroker


class InMemoryProgressBroker(ProgressBroker):
    """Keep every execution's progress events in a local list."""

    def __init__(self) -> None:
        self._events: Dict[str, List[ProgressEvent]] = defaultdict(list)
        self._changed: Optional[asyncio.Condition] = None

    def _condition(self) -> asyncio.Condition:
        if self._changed is None:
            self._changed = asyncio.Condition()
        return self._changed

    async def publish(self, event: ProgressEvent) -> None:
        changed = self._condition()
        async with changed:
            self._events[event.execution_id].append(event)
            changed.notify_all()

    async def history(self, execution_id: str) -> list[ProgressEvent]:
        return list(self._events.get(execution_id, []))

    async def subscribe(
        self, execution_id: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[ProgressEvent]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        changed = self._condition()
        position = 0

        while True:
            events = self._events.get(execution_id, [])
            while position < len(events):
                yield events[position]
                position += 1

            timeout = None
            if deadline is not None:
                timeout = deadline - loop.time()
                if timeout <= 0:
                    break
            async with changed:
                if position < len(self._events.get(execution_id, [])):
                    continue
                try:
                    await asyncio.wait_for(changed.wait(), timeout)
                except asyncio.TimeoutError:
                    break
