"""Data models for persisted execution state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import ExecutionStatus, HistoryEvent, utc_now


class ExecutionRecord(BaseModel):
    """Persisted workflow execution and its ordered history."""

    execution_id: str
    workflow_name: str
    payload: Any = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    result: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    closed_at: Optional[datetime] = None
    history: list[HistoryEvent] = Field(default_factory=list)

    @property
    def is_closed(self) -> bool:
        return self.status != ExecutionStatus.RUNNING
