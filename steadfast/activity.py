"""Helpers available to code running inside an activity.

Activities are plain ``async def fn(payload)`` callables. While an attempt
runs, :func:`info` exposes its idempotency key and attempt number, and
:func:`heartbeat` reports liveness to the executor::

    @activity.defn(name="poll_job")
    async def poll_job(handle: dict) -> dict:
        while True:
            status = await client.status(handle["job_id"])
            activity.heartbeat(status)
            ...
"""

from __future__ import annotations

import asyncio
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar

F = TypeVar("F", bound=Callable[..., Any])

_current: ContextVar[Optional["ActivityContext"]] = ContextVar(
    "steadfast_activity", default=None
)


@dataclass
class ActivityContext:
    """Runtime information for a single activity attempt."""

    activity: str
    execution_id: str
    command_id: int
    idempotency_key: str
    attempt: int
    heartbeat_details: Any = None
    last_heartbeat: float = field(default=0.0)

    def heartbeat(self, details: Any = None) -> None:
        self.last_heartbeat = asyncio.get_running_loop().time()
        if details is not None:
            self.heartbeat_details = details


def defn(fn: Optional[F] = None, *, name: Optional[str] = None):
    """Mark ``fn`` as an activity, optionally overriding its name."""

    def decorate(func: F) -> F:
        func.__activity_name__ = name or func.__name__  # type: ignore[attr-defined]
        return func

    if fn is not None:
        return decorate(fn)
    return decorate


def activity_name(fn: Callable[..., Any]) -> str:
    """Return the registered name of activity ``fn``."""
    return getattr(fn, "__activity_name__", None) or getattr(fn, "__name__", repr(fn))


def in_activity() -> bool:
    return _current.get() is not None


def info() -> ActivityContext:
    """Return the context of the running attempt."""
    ctx = _current.get()
    if ctx is None:
        raise RuntimeError("Not running inside an activity")
    return ctx


def heartbeat(details: Any = None) -> None:
    """Report that the running attempt is still alive."""
    info().heartbeat(details)


def _bind(ctx: ActivityContext):
    return _current.set(ctx)


def _unbind(token) -> None:
    _current.reset(token)
