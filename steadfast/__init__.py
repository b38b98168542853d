"""steadfast: Durable execution for pipelines over third-party AI and billing APIs."""

from . import activity
from .compensation import run_with_compensation, with_compensation
from .context import WorkflowContext
from .contracts import ActivityOptions, ExecutionStatus, RetryPolicy
from .engine import WorkflowEngine
from .errors import (
    ActivityError,
    ActivityFailed,
    NonDeterminismError,
    WorkflowCancelled,
    WorkflowFailed,
)
from .execute import ActivityExecutor
from .keys import IdempotencyKeyGenerator
from .limiter import LimiterRegistry, get_limiter_registry
from .persistence import get_repository
from .progress import get_broker

__version__ = "0.1.0"
__all__ = [
    "activity",
    "ActivityError",
    "ActivityExecutor",
    "ActivityFailed",
    "ActivityOptions",
    "ExecutionStatus",
    "IdempotencyKeyGenerator",
    "LimiterRegistry",
    "NonDeterminismError",
    "RetryPolicy",
    "WorkflowCancelled",
    "WorkflowContext",
    "WorkflowEngine",
    "WorkflowFailed",
    "get_broker",
    "get_limiter_registry",
    "get_repository",
    "run_with_compensation",
    "with_compensation",
]
