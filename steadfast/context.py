"""Deterministic workflow context and replay bookkeeping."""

from __future__ import annotations

import asyncio
import logging
import random as _random
import uuid as _uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, Optional

from .activity import activity_name
from .constants import DEFAULT_ALERT_TIMEOUT, DEFAULT_PROGRESS_TIMEOUT
from .contracts import (
    ActivityOptions,
    EventType,
    HistoryEvent,
    RetryPolicy,
    to_jsonable,
    utc_now,
)
from .errors import ActivityError, ActivityFailed, NonDeterminismError, WorkflowCancelled
from .execute import ActivityExecutor, ActivityFn
from .keys import IdempotencyKeyGenerator
from .persistence import HistoryRepository

logger = logging.getLogger(__name__)

PROGRESS_OPTIONS = ActivityOptions(
    retry_policy=RetryPolicy.bounded(1), start_to_close_timeout=DEFAULT_PROGRESS_TIMEOUT
)
ALERT_OPTIONS = ActivityOptions(
    retry_policy=RetryPolicy.bounded(1), start_to_close_timeout=DEFAULT_ALERT_TIMEOUT
)


class _ReplayAwareLogger(logging.LoggerAdapter):
    """Logger that stays silent while history is being replayed."""

    def __init__(self, base: logging.Logger, ctx: "WorkflowContext") -> None:
        super().__init__(base, {})
        self._ctx = ctx

    def isEnabledFor(self, level: int) -> bool:
        return not self._ctx.is_replaying and self.logger.isEnabledFor(level)

    def process(self, msg, kwargs):
        return f"[{self._ctx.execution_id}] {msg}", kwargs


class WorkflowContext:
    """Handle through which workflow logic reaches the outside world.

    Every activity call and every non-deterministic value goes through this
    object so it can be recorded in history and fed back on replay. Workflow
    code must not read the clock, random generators or shared mutable state
    directly.
    """

    def __init__(
        self,
        execution_id: str,
        workflow_name: str,
        history: list[HistoryEvent],
        *,
        repository: HistoryRepository,
        executor: ActivityExecutor,
        progress_activity: ActivityFn,
        alert_activity: ActivityFn,
        history_url: str,
    ) -> None:
        self.execution_id = execution_id
        self.workflow_name = workflow_name
        self.history_url = history_url
        self.history: list[HistoryEvent] = list(history)
        self.charge: Any = None

        self._repository = repository
        self._executor = executor
        self._progress_activity = progress_activity
        self._alert_activity = alert_activity
        self._keys = IdempotencyKeyGenerator()
        self._history_lock = asyncio.Lock()
        self._command_seq = 0
        self._shield = 0

        self._scheduled: Dict[int, HistoryEvent] = {}
        self._outcomes: Dict[int, HistoryEvent] = {}
        self._markers: Dict[int, HistoryEvent] = {}
        self._cancel_requested = False
        self._cancel_signal = asyncio.Event()
        for event in self.history:
            if event.event_type == EventType.ACTIVITY_SCHEDULED:
                self._scheduled[event.command_id] = event
            elif event.event_type in (EventType.ACTIVITY_COMPLETED, EventType.ACTIVITY_FAILED):
                self._outcomes[event.command_id] = event
            elif event.event_type == EventType.MARKER_RECORDED:
                self._markers[event.command_id] = event
            elif event.event_type == EventType.CANCEL_REQUESTED:
                self._cancel_requested = True
        if self._cancel_requested:
            self._cancel_signal.set()
        self._replay_horizon = max([*self._scheduled, *self._markers], default=0)
        self._next_seq = max((event.seq for event in self.history), default=-1) + 1

        self.logger = _ReplayAwareLogger(logging.getLogger(f"steadfast.workflow.{workflow_name}"), self)

    # ------------------------------------------------------------------
    # Replay state
    @property
    def is_replaying(self) -> bool:
        return self._command_seq < self._replay_horizon

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def _next_command(self) -> int:
        self._command_seq += 1
        return self._command_seq

    async def record(self, event_type: EventType, **fields: Any) -> HistoryEvent:
        async with self._history_lock:
            event = HistoryEvent(
                execution_id=self.execution_id,
                seq=self._next_seq,
                event_type=event_type,
                **fields,
            )
            await self._repository.append_event(event)
            self._next_seq += 1
            self.history.append(event)
        return event

    def _checkpoint(self) -> None:
        if self._cancel_requested and not self._shield:
            raise WorkflowCancelled(f"Execution {self.execution_id} was cancelled")

    # ------------------------------------------------------------------
    # Activities
    async def execute_activity(
        self,
        fn: ActivityFn,
        payload: Any = None,
        options: Optional[ActivityOptions] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        """Run activity ``fn`` durably and return its (recorded) output.

        Intent is persisted before dispatch and the outcome before this call
        returns. On replay a recorded outcome is returned without invoking
        ``fn``; an intent without an outcome is dispatched again with the
        recorded input and key.

        Raises:
            ActivityError: If the activity exhausted its retry budget.
            WorkflowCancelled: If cancellation was requested.
            NonDeterminismError: If history recorded a different call here.
        """
        name = activity_name(fn)
        command_id = self._next_command()
        key = idempotency_key or self.next_key()
        scheduled = self._scheduled.get(command_id)

        if scheduled is None:
            if command_id in self._markers:
                raise NonDeterminismError(
                    f"Command {command_id} of {self.execution_id} was recorded as a "
                    f"side effect, not activity {name}"
                )
            self._checkpoint()
            payload = to_jsonable(payload)
            await self.record(
                EventType.ACTIVITY_SCHEDULED,
                command_id=command_id,
                activity=name,
                idempotency_key=key,
                payload=payload,
            )
        else:
            if scheduled.activity != name or scheduled.idempotency_key != key:
                raise NonDeterminismError(
                    f"Command {command_id} of {self.execution_id} replayed as {name} "
                    f"({key}) but history has {scheduled.activity} ({scheduled.idempotency_key})"
                )
            outcome = self._outcomes.get(command_id)
            if outcome is not None:
                self._track_charge(options, outcome)
                return self._replay_outcome(outcome)
            payload = scheduled.payload
            logger.info(
                f"Re-dispatching in-flight activity {name} for execution_id={self.execution_id}"
            )

        try:
            result = await self._executor.invoke(
                fn,
                payload,
                options,
                execution_id=self.execution_id,
                command_id=command_id,
                idempotency_key=key,
                cancel=None if self._shield else self._cancel_signal,
            )
        except WorkflowCancelled:
            self._track_charge(options, None, key=key, error="cancelled while in flight")
            raise
        except ActivityError as exc:
            failed = await self.record(
                EventType.ACTIVITY_FAILED,
                command_id=command_id,
                activity=name,
                idempotency_key=key,
                error=exc.cause_message,
                error_type=exc.error_type,
                attempts=exc.attempts,
            )
            self._track_charge(options, failed)
            raise

        completed = await self.record(
            EventType.ACTIVITY_COMPLETED,
            command_id=command_id,
            activity=name,
            idempotency_key=key,
            payload=result,
        )
        self._track_charge(options, completed)
        return result

    def _track_charge(
        self,
        options: Optional[ActivityOptions],
        outcome: Optional[HistoryEvent],
        *,
        key: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Flag the execution as charged after a charging activity.

        A completed charge records its receipt. Any failure other than an
        ``ActivityFailed`` raised by the activity may still have applied the
        charge, so it is flagged by key for an idempotent refund.
        """
        if options is None or not options.applies_charge:
            return
        if outcome is not None and outcome.event_type == EventType.ACTIVITY_COMPLETED:
            self.mark_charged(outcome.payload)
            return
        if outcome is not None and outcome.error_type == ActivityFailed.__name__:
            return
        if self.charge is None:
            self.charge = {
                "idempotency_key": key or outcome.idempotency_key,
                "status": "unknown",
                "error": error or outcome.error,
            }

    @staticmethod
    def _replay_outcome(outcome: HistoryEvent) -> Any:
        if outcome.event_type == EventType.ACTIVITY_FAILED:
            raise ActivityError(
                outcome.activity or "unknown",
                outcome.error or "",
                outcome.error_type,
                outcome.attempts or 0,
            )
        return outcome.payload

    # ------------------------------------------------------------------
    # Deterministic primitives
    def next_key(self) -> str:
        """Return the next replay-stable idempotency key of this execution."""
        return self._keys.next_key(self.execution_id)

    async def side_effect(self, fn: Callable[[], Any], label: Optional[str] = None) -> Any:
        """Evaluate ``fn`` once and replay the recorded value thereafter."""
        command_id = self._next_command()
        marker = self._markers.get(command_id)
        if marker is not None:
            return marker.payload
        if command_id in self._scheduled:
            raise NonDeterminismError(
                f"Command {command_id} of {self.execution_id} was recorded as activity "
                f"{self._scheduled[command_id].activity}, not a side effect"
            )
        value = to_jsonable(fn())
        await self.record(
            EventType.MARKER_RECORDED,
            command_id=command_id,
            activity=label or "side_effect",
            payload=value,
        )
        return value

    async def now(self) -> datetime:
        return datetime.fromisoformat(
            await self.side_effect(lambda: utc_now().isoformat(), label="now")
        )

    async def uuid4(self) -> _uuid.UUID:
        return _uuid.UUID(await self.side_effect(lambda: str(_uuid.uuid4()), label="uuid4"))

    async def random(self) -> float:
        return await self.side_effect(_random.random, label="random")

    # ------------------------------------------------------------------
    # Compensation support
    def mark_charged(self, receipt: Any = True) -> None:
        """Flag that a charge was applied and must be refunded on failure."""
        self.charge = receipt if receipt is not None else True

    @contextmanager
    def non_cancellable(self) -> Iterator[None]:
        self._shield += 1
        try:
            yield
        finally:
            self._shield -= 1

    async def request_cancel(self) -> None:
        if self._cancel_requested:
            return
        self._cancel_requested = True
        self._cancel_signal.set()
        await self.record(EventType.CANCEL_REQUESTED)

    # ------------------------------------------------------------------
    # Best-effort notifications
    async def publish_progress(self, step_label: str) -> bool:
        """Emit progress for this execution; failures are logged, never raised."""
        try:
            await self.execute_activity(
                self._progress_activity,
                {"execution_id": self.execution_id, "step_label": step_label},
                PROGRESS_OPTIONS,
            )
        except ActivityError as exc:
            self.logger.warning(f"Progress '{step_label}' not delivered: {exc.cause_message}")
            return False
        return True

    async def send_alert(self, message: str, cause: Optional[str] = None) -> bool:
        """Alert the operator channel with a link to this execution's history."""
        try:
            await self.execute_activity(
                self._alert_activity,
                {
                    "execution_id": self.execution_id,
                    "message": message,
                    "link": self.history_url,
                    "cause": cause,
                },
                ALERT_OPTIONS,
            )
        except ActivityError as exc:
            self.logger.error(f"Alert not delivered: {exc.cause_message}")
            return False
        return True
