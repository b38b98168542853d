"""In-memory implementation of the history repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from ..contracts import ExecutionStatus, HistoryEvent, utc_now
from ..errors import ExecutionAlreadyStarted, ExecutionNotFound, HistoryConflictError
from .models import ExecutionRecord
from .repository import HistoryRepository


class InMemoryHistoryRepository(HistoryRepository):
    """Store execution history in local memory.

    Useful for tests or when no database is configured. Data survives an
    engine restart within the same process but not a process restart.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, ExecutionRecord] = {}

    def _require(self, execution_id: str) -> ExecutionRecord:
        record = self._executions.get(execution_id)
        if record is None:
            raise ExecutionNotFound(execution_id)
        return record

    # ------------------------------------------------------------------
    async def create_execution(
        self, execution_id: str, workflow_name: str, payload: Any = None
    ) -> None:
        if execution_id in self._executions:
            raise ExecutionAlreadyStarted(execution_id)
        self._executions[execution_id] = ExecutionRecord(
            execution_id=execution_id, workflow_name=workflow_name, payload=payload
        )

    async def append_event(self, event: HistoryEvent) -> None:
        record = self._require(event.execution_id)
        if any(existing.seq == event.seq for existing in record.history):
            raise HistoryConflictError(
                f"Event {event.seq} already recorded for {event.execution_id}"
            )
        record.history.append(event.model_copy(deep=True))
        record.history.sort(key=lambda e: e.seq)

    async def get_history(self, execution_id: str) -> list[HistoryEvent]:
        record = self._require(execution_id)
        return [event.model_copy(deep=True) for event in record.history]

    async def close_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        result: Any = None,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> None:
        record = self._require(execution_id)
        record.status = status
        record.result = result
        record.error = error
        record.error_type = error_type
        record.closed_at = utc_now()

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        record = self._executions.get(execution_id)
        return record.model_copy(deep=True) if record else None

    async def list_executions(
        self, status: Optional[ExecutionStatus] = None
    ) -> list[ExecutionRecord]:
        return [
            record.model_copy(update={"history": []})
            for record in self._executions.values()
            if status is None or record.status == status
        ]

    async def purge_closed(self, closed_before: datetime) -> int:
        expired = [
            execution_id
            for execution_id, record in self._executions.items()
            if record.closed_at is not None and record.closed_at < closed_before
        ]
        for execution_id in expired:
            del self._executions[execution_id]
        return len(expired)
