"""Replay-stable idempotency keys."""

from __future__ import annotations

import uuid
from collections import defaultdict
from typing import Dict

from .constants import IDEMPOTENCY_NAMESPACE


def derive_key(execution_id: str, occurrence: int) -> str:
    """Return the key for the ``occurrence``-th call-site of an execution.

    The key depends only on its arguments, never on the clock or entropy.
    """
    return str(uuid.uuid5(IDEMPOTENCY_NAMESPACE, f"{execution_id}/{occurrence}"))


class IdempotencyKeyGenerator:
    """Hand out keys per execution from a monotonically increasing counter.

    A fresh generator replaying the same sequence of calls reproduces the
    same keys, which is what makes keys stable across crash and replay.
    """

    def __init__(self) -> None:
        self._counters: Dict[str, int] = defaultdict(int)

    def next_key(self, execution_id: str) -> str:
        self._counters[execution_id] += 1
        return derive_key(execution_id, self._counters[execution_id])

    def issued(self, execution_id: str) -> int:
        """Number of keys issued so far for ``execution_id``."""
        return self._counters.get(execution_id, 0)
