"""Redis streams progress broker for cross-process subscribers."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..contracts import ProgressEvent
from .base import ProgressBroker

logger = logging.getLogger(__name__)


class RedisProgressBroker(ProgressBroker):
    """Store each execution's progress in a Redis stream.

    Streams keep prior entries, so late subscribers catch up by reading
    from the beginning before blocking for new entries.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        maxlen: Optional[int] = 1000,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisProgressBroker")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.maxlen = maxlen
        self._redis: Optional[Any] = None

    @staticmethod
    def stream_name(execution_id: str) -> str:
        return f"steadfast:progress:{execution_id}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    @staticmethod
    def _decode(fields: dict) -> ProgressEvent:
        return ProgressEvent(
            execution_id=fields["execution_id"],
            step_label=fields["step_label"],
            timestamp=datetime.fromisoformat(fields["timestamp"]),
        )

    async def publish(self, event: ProgressEvent) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.xadd(
            self.stream_name(event.execution_id),
            {
                "execution_id": event.execution_id,
                "step_label": event.step_label,
                "timestamp": event.timestamp.isoformat(),
            },
            maxlen=self.maxlen,
            approximate=True,
        )

    async def history(self, execution_id: str) -> list[ProgressEvent]:
        if not self._redis:
            await self.connect()
        entries = await self._redis.xrange(self.stream_name(execution_id))
        return [self._decode(fields) for _, fields in entries]

    async def subscribe(
        self, execution_id: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[ProgressEvent]:
        if not self._redis:
            await self.connect()

        stream = self.stream_name(execution_id)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        last_id = "0-0"

        while True:
            block_ms = 1000
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                block_ms = max(1, int(min(remaining, 1.0) * 1000))

            response = await self._redis.xread({stream: last_id}, block=block_ms)
            for _, entries in response or []:
                for entry_id, fields in entries:
                    last_id = entry_id
                    try:
                        event = self._decode(fields)
                    except (KeyError, ValueError) as e:
                        logger.warning(f"Skipping malformed progress entry {entry_id}: {e}")
                        continue
                    yield event
