from __future__ import annotations

import asyncio
import random
from typing import Optional

from ..contracts import RetryPolicy


def compute_backoff(
    attempt: int,
    base: float = 1.0,
    coefficient: float = 2.0,
    maximum: Optional[float] = None,
    jitter: float = 0.0,
) -> float:
    """Compute exponential backoff with jitter for a 1-based ``attempt``."""
    delay = base * coefficient ** (attempt - 1)
    if maximum is not None:
        delay = min(delay, maximum)
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


def policy_backoff(policy: RetryPolicy, attempt: int) -> float:
    """Backoff before the retry that follows ``attempt`` under ``policy``."""
    return compute_backoff(
        attempt,
        base=policy.initial_interval,
        coefficient=policy.backoff_coefficient,
        maximum=policy.maximum_interval,
        jitter=policy.jitter,
    )


async def schedule_retry(policy: RetryPolicy, attempt: int) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = policy_backoff(policy, attempt)
    if delay > 0:
        await asyncio.sleep(delay)
