"""Repository abstraction for durable execution history."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol

from ..contracts import ExecutionStatus, HistoryEvent
from .models import ExecutionRecord


class HistoryRepository(Protocol):
    """Protocol for execution history persistence backends."""

    async def create_execution(
        self, execution_id: str, workflow_name: str, payload: Any = None
    ) -> None:
        """Persist a new running execution.

        Raises:
            ExecutionAlreadyStarted: If ``execution_id`` is already taken.
        """

    async def append_event(self, event: HistoryEvent) -> None:
        """Append ``event`` to its execution's history.

        Raises:
            HistoryConflictError: If an event already exists at ``event.seq``.
        """

    async def get_history(self, execution_id: str) -> list[HistoryEvent]:
        """Return the execution's events ordered by ``seq``."""

    async def close_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        result: Any = None,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> None:
        """Record the terminal state of an execution."""

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        """Retrieve the execution, including its history."""

    async def list_executions(
        self, status: Optional[ExecutionStatus] = None
    ) -> list[ExecutionRecord]:
        """Return persisted executions without their history."""

    async def purge_closed(self, closed_before: datetime) -> int:
        """Delete closed executions older than ``closed_before``."""
