"""Error taxonomy for steadfast executions."""

from __future__ import annotations

from typing import Optional


class SteadfastError(Exception):
    """Base class for all steadfast errors."""


class ActivityFailed(SteadfastError):
    """Raised by an activity to report a classified failure.

    ``retryable=False`` stops the executor from retrying regardless of the
    remaining retry budget.
    """

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class ActivityTimeout(SteadfastError):
    """A single attempt exceeded its start-to-close timeout."""


class HeartbeatTimeout(SteadfastError):
    """An attempt stopped reporting liveness and was abandoned."""


class ActivityError(SteadfastError):
    """An activity exhausted its retry budget or failed non-retryably.

    This is the only activity failure visible to workflow logic.
    """

    def __init__(
        self,
        activity: str,
        message: str,
        error_type: Optional[str] = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(f"Activity {activity} failed after {attempts} attempt(s): {message}")
        self.activity = activity
        self.cause_message = message
        self.error_type = error_type
        self.attempts = attempts


class WorkflowCancelled(SteadfastError):
    """Cancellation was observed at a suspension point."""


class NonDeterminismError(SteadfastError):
    """Replayed workflow logic diverged from the recorded history."""


class WorkflowFailed(SteadfastError):
    """An execution reached the failed terminal state."""

    def __init__(
        self, execution_id: str, message: str, error_type: Optional[str] = None
    ) -> None:
        super().__init__(f"Execution {execution_id} failed: {message}")
        self.execution_id = execution_id
        self.cause_message = message
        self.error_type = error_type


class ExecutionAlreadyStarted(SteadfastError):
    """An execution with the requested id already exists."""


class ExecutionNotFound(SteadfastError):
    """No execution is persisted under the requested id."""


class HistoryConflictError(SteadfastError):
    """Another writer already recorded an event at this history position."""


class UnserializableResult(SteadfastError):
    """An activity returned a value that cannot be recorded in history.

    The activity's side effect has already happened, so this is never retried.
    """


class PoolNotConfigured(SteadfastError, ValueError):
    """An activity names a concurrency pool that has no cap."""
