"""Progress broker factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import SteadfastConfig, load_config
from .base import ProgressBroker
from .inmemory import InMemoryProgressBroker
from .publisher import ProgressPublisher, progress_activity


def get_broker(
    backend: Optional[str] = None, config: Optional[SteadfastConfig] = None
) -> ProgressBroker:
    """Factory function to get the configured progress broker."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("STEADFAST_PROGRESS_BACKEND")
        or config.progress.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryProgressBroker()
    elif backend == "redis":
        from .redis import RedisProgressBroker

        redis_conf = config.progress.redis
        return RedisProgressBroker(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported progress backend: {backend}")


__all__ = [
    "InMemoryProgressBroker",
    "ProgressBroker",
    "ProgressPublisher",
    "progress_activity",
    "get_broker",
]
