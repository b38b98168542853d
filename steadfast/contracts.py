"""Core contracts for steadfast executions."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, TypeAdapter, model_validator

from .constants import (
    DEFAULT_BILLING_ATTEMPTS,
    DEFAULT_INSPECT_URL,
    DEFAULT_START_TO_CLOSE_TIMEOUT,
)

_ANY = TypeAdapter(Any)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_jsonable(value: Any) -> Any:
    """Convert ``value`` to the JSON-compatible form it takes in history.

    Live execution and replay must observe identical values, so payloads and
    results are normalized before they are recorded or returned.
    """
    return _ANY.dump_python(value, mode="json")


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class EventType(str, Enum):
    """Kinds of entries in an execution's append-only history."""

    EXECUTION_STARTED = "execution_started"
    ACTIVITY_SCHEDULED = "activity_scheduled"
    ACTIVITY_COMPLETED = "activity_completed"
    ACTIVITY_FAILED = "activity_failed"
    MARKER_RECORDED = "marker_recorded"
    CANCEL_REQUESTED = "cancel_requested"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"


class RetryPolicy(BaseModel):
    """How often and how quickly a failed activity attempt is retried.

    ``maximum_attempts=None`` retries forever, which is what polling
    activities use. Intervals are in seconds.
    """

    maximum_attempts: Optional[int] = DEFAULT_BILLING_ATTEMPTS
    initial_interval: float = 1.0
    backoff_coefficient: float = 2.0
    maximum_interval: Optional[float] = 60.0
    jitter: float = 0.0
    non_retryable_error_types: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_bounds(self) -> "RetryPolicy":
        if self.maximum_attempts is not None and self.maximum_attempts < 1:
            raise ValueError("maximum_attempts must be at least 1 or None")
        if self.backoff_coefficient < 1:
            raise ValueError("backoff_coefficient must be >= 1")
        return self

    @classmethod
    def bounded(cls, attempts: int, **kwargs: Any) -> "RetryPolicy":
        return cls(maximum_attempts=attempts, **kwargs)

    @classmethod
    def unbounded(cls, **kwargs: Any) -> "RetryPolicy":
        return cls(maximum_attempts=None, **kwargs)

    def is_exhausted(self, attempt: int) -> bool:
        """Return ``True`` when ``attempt`` was the last permitted attempt."""
        return self.maximum_attempts is not None and attempt >= self.maximum_attempts


class ActivityOptions(BaseModel):
    """Per-invocation execution settings for an activity."""

    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    start_to_close_timeout: Optional[float] = DEFAULT_START_TO_CLOSE_TIMEOUT
    heartbeat_timeout: Optional[float] = None
    pool: Optional[str] = None
    max_concurrency: Optional[int] = None
    # Successful or unknown outcomes flag the execution as charged for compensation.
    applies_charge: bool = False


class HistoryEvent(BaseModel):
    """One append-only entry of an execution's durable history."""

    execution_id: str
    seq: int
    event_type: EventType
    command_id: Optional[int] = None
    activity: Optional[str] = None
    idempotency_key: Optional[str] = None
    payload: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    attempts: Optional[int] = None
    timestamp: datetime = Field(default_factory=utc_now)


class ProgressEvent(BaseModel):
    """Progress notification rendered by subscribers."""

    execution_id: str
    step_label: str
    timestamp: datetime = Field(default_factory=utc_now)


class Alert(BaseModel):
    """Operator alert raised when an execution fails."""

    execution_id: str
    message: str
    link: str
    cause: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)

    def render(self) -> str:
        lines = [self.message, f"Execution: {self.execution_id}", f"History: {self.link}"]
        if self.cause:
            lines.append(f"Cause: {self.cause}")
        return "\n".join(lines)


def inspect_link(execution_id: str, template: str = DEFAULT_INSPECT_URL) -> str:
    """Return the history-inspection deep link for ``execution_id``."""
    return template.format(execution_id=execution_id)
