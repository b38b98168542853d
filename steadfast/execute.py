"""Activity execution engine for steadfast workflows."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from pydantic_core import PydanticSerializationError

from . import activity as activity_mod
from .activity import ActivityContext, activity_name
from .constants import DEFAULT_ABANDON_GRACE
from .contracts import ActivityOptions, to_jsonable
from .errors import (
    ActivityError,
    ActivityFailed,
    ActivityTimeout,
    HeartbeatTimeout,
    UnserializableResult,
    WorkflowCancelled,
)
from .limiter import ConcurrencyLimiter, LimiterRegistry, get_limiter_registry
from .utils import retry

logger = logging.getLogger(__name__)

ActivityFn = Callable[[Any], Awaitable[Any]]


def _consume_abandoned(task: asyncio.Task) -> None:
    # Retrieve the outcome so abandoned attempts never warn about unretrieved exceptions.
    if not task.cancelled():
        task.exception()


def _release_unclaimed(limiter: ConcurrencyLimiter) -> Callable[[asyncio.Task], None]:
    def release(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is None:
            limiter.release(task.result())

    return release


class ActivityExecutor:
    """Invoke one activity with retries, attempt timeouts and heartbeat checks.

    Transient failures and stuck attempts are absorbed here; the caller only
    sees a result, an :class:`ActivityError`, or :class:`WorkflowCancelled`
    when its cancel signal fires first.
    """

    def __init__(
        self,
        limiters: LimiterRegistry | None = None,
        abandon_grace: float = DEFAULT_ABANDON_GRACE,
    ) -> None:
        self._limiters = limiters or get_limiter_registry()
        self._abandon_grace = abandon_grace
        self.abandoned_attempts = 0

    @property
    def limiters(self) -> LimiterRegistry:
        return self._limiters

    async def invoke(
        self,
        fn: ActivityFn,
        payload: Any,
        options: Optional[ActivityOptions] = None,
        *,
        execution_id: str,
        command_id: int,
        idempotency_key: str,
        cancel: Optional[asyncio.Event] = None,
    ) -> Any:
        """Run ``fn(payload)`` until it succeeds or the retry budget is spent.

        The returned value is already normalized to its JSON form.

        Raises:
            ActivityError: If the final attempt failed or the failure was
                classified as non-retryable.
            WorkflowCancelled: If ``cancel`` was set while waiting for a slot,
                an attempt or a backoff delay.
            PoolNotConfigured: If ``options.pool`` has no concurrency cap.
        """
        options = options or ActivityOptions()
        policy = options.retry_policy
        name = activity_name(fn)
        limiter = None
        if options.pool is not None:
            limiter = self._limiters.get(options.pool, options.max_concurrency)
        attempt = 0
        heartbeat_details: Any = None

        while True:
            attempt += 1
            ctx = ActivityContext(
                activity=name,
                execution_id=execution_id,
                command_id=command_id,
                idempotency_key=idempotency_key,
                attempt=attempt,
                heartbeat_details=heartbeat_details,
            )
            try:
                return await self._gated_attempt(fn, payload, ctx, options, limiter, cancel)
            except HeartbeatTimeout:
                # The remote job is untouched; reschedule the same invocation.
                self.abandoned_attempts += 1
                heartbeat_details = ctx.heartbeat_details
                attempt -= 1
                logger.warning(
                    f"Activity {name} missed its heartbeat for execution_id={execution_id}; "
                    "rescheduling"
                )
                continue
            except WorkflowCancelled:
                logger.info(
                    f"Activity {name} interrupted by cancellation of execution_id={execution_id}"
                )
                raise
            except Exception as exc:
                error_type = type(exc).__name__
                non_retryable = (
                    (isinstance(exc, ActivityFailed) and not exc.retryable)
                    or isinstance(exc, UnserializableResult)
                    or error_type in policy.non_retryable_error_types
                )
                if non_retryable or policy.is_exhausted(attempt):
                    logger.error(
                        f"Activity {name} failed for execution_id={execution_id} "
                        f"after {attempt} attempt(s): {exc}"
                    )
                    raise ActivityError(name, str(exc), error_type, attempt) from exc
                logger.warning(
                    f"Activity {name} attempt {attempt} failed for "
                    f"execution_id={execution_id}: {exc}; retrying"
                )
                await self._until_cancelled(retry.schedule_retry(policy, attempt), cancel)

    async def _until_cancelled(
        self,
        work: Awaitable[Any],
        cancel: Optional[asyncio.Event],
        on_abandoned: Callable[[asyncio.Task], None] = _consume_abandoned,
    ) -> Any:
        """Await ``work`` unless ``cancel`` fires first."""
        if cancel is None:
            return await work
        pending = asyncio.ensure_future(work)
        stop = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({pending, stop}, return_when=asyncio.FIRST_COMPLETED)
            if pending.done():
                return pending.result()
            raise WorkflowCancelled("Cancelled while waiting")
        finally:
            stop.cancel()
            if not pending.done():
                pending.cancel()
                pending.add_done_callback(on_abandoned)

    async def _gated_attempt(
        self,
        fn: ActivityFn,
        payload: Any,
        ctx: ActivityContext,
        options: ActivityOptions,
        limiter: Optional[ConcurrencyLimiter],
        cancel: Optional[asyncio.Event],
    ) -> Any:
        if limiter is None:
            return await self._attempt(fn, payload, ctx, options, cancel)
        slot = await self._until_cancelled(limiter.acquire(), cancel, _release_unclaimed(limiter))
        try:
            return await self._attempt(fn, payload, ctx, options, cancel)
        finally:
            limiter.release(slot)

    async def _attempt(
        self,
        fn: ActivityFn,
        payload: Any,
        ctx: ActivityContext,
        options: ActivityOptions,
        cancel: Optional[asyncio.Event],
    ) -> Any:
        if cancel is not None and cancel.is_set():
            raise WorkflowCancelled(f"Cancelled before dispatching {ctx.activity}")

        loop = asyncio.get_running_loop()
        ctx.last_heartbeat = loop.time()
        task = asyncio.create_task(self._call(fn, payload, ctx))
        stop = asyncio.ensure_future(cancel.wait()) if cancel is not None else None
        watched = {task, stop} if stop is not None else {task}
        deadline = (
            loop.time() + options.start_to_close_timeout
            if options.start_to_close_timeout
            else None
        )

        try:
            while True:
                now = loop.time()
                timeout: Optional[float] = None
                if deadline is not None:
                    if now >= deadline:
                        raise ActivityTimeout(
                            f"attempt exceeded {options.start_to_close_timeout}s"
                        )
                    timeout = deadline - now
                if options.heartbeat_timeout is not None:
                    silent_for = now - ctx.last_heartbeat
                    if silent_for >= options.heartbeat_timeout:
                        raise HeartbeatTimeout(
                            f"no heartbeat for {silent_for:.3f}s "
                            f"(limit {options.heartbeat_timeout}s)"
                        )
                    remaining = options.heartbeat_timeout - silent_for
                    timeout = remaining if timeout is None else min(timeout, remaining)

                done, _ = await asyncio.wait(
                    watched, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )
                if task in done:
                    return task.result()
                if stop is not None and stop in done:
                    raise WorkflowCancelled(f"Cancelled while running {ctx.activity}")
        finally:
            if stop is not None:
                stop.cancel()
            if not task.done():
                await self._abandon(task, ctx)

    async def _abandon(self, task: asyncio.Task, ctx: ActivityContext) -> None:
        # The attempt keeps its pool slot until it has unwound or the grace ends.
        task.cancel()
        await asyncio.wait({task}, timeout=self._abandon_grace)
        if task.done():
            _consume_abandoned(task)
            return
        logger.warning(
            f"Abandoned attempt {ctx.attempt} of {ctx.activity} for "
            f"execution_id={ctx.execution_id} ignored cancellation"
        )
        task.add_done_callback(_consume_abandoned)

    async def _call(self, fn: ActivityFn, payload: Any, ctx: ActivityContext) -> Any:
        token = activity_mod._bind(ctx)
        try:
            result = await fn(payload)
        finally:
            activity_mod._unbind(token)
        try:
            return to_jsonable(result)
        except PydanticSerializationError as exc:
            raise UnserializableResult(
                f"{ctx.activity} returned {type(result).__name__}, which cannot be recorded: {exc}"
            ) from exc
