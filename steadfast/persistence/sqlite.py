"""SQLite implementation of the history repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..contracts import ExecutionStatus, HistoryEvent, utc_now
from ..errors import ExecutionAlreadyStarted, ExecutionNotFound, HistoryConflictError
from .models import ExecutionRecord
from .repository import HistoryRepository


class SQLiteHistoryRepository(HistoryRepository):
    """Persist execution history using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                execution_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                payload TEXT,
                status TEXT NOT NULL,
                result TEXT,
                error TEXT,
                error_type TEXT,
                created_at TEXT NOT NULL,
                closed_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS history (
                execution_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                event_type TEXT NOT NULL,
                body TEXT NOT NULL,
                PRIMARY KEY (execution_id, seq)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        try:
            cur.execute(query, params)
            self._conn.commit()
        except sqlite3.Error:
            self._conn.rollback()
            raise
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    async def _run(self, fn, *args):
        async with self._lock:
            return await asyncio.to_thread(fn, *args)

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ExecutionRecord:
        return ExecutionRecord(
            execution_id=row["execution_id"],
            workflow_name=row["workflow_name"],
            payload=json.loads(row["payload"]) if row["payload"] else None,
            status=ExecutionStatus(row["status"]),
            result=json.loads(row["result"]) if row["result"] else None,
            error=row["error"],
            error_type=row["error_type"],
            created_at=datetime.fromisoformat(row["created_at"]),
            closed_at=datetime.fromisoformat(row["closed_at"]) if row["closed_at"] else None,
        )

    # ------------------------------------------------------------------
    # Repository API
    async def create_execution(
        self, execution_id: str, workflow_name: str, payload: Any = None
    ) -> None:
        try:
            await self._run(
                self._execute,
                "INSERT INTO executions (execution_id, workflow_name, payload, status, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                execution_id,
                workflow_name,
                json.dumps(payload),
                ExecutionStatus.RUNNING.value,
                utc_now().isoformat(),
            )
        except sqlite3.IntegrityError as exc:
            raise ExecutionAlreadyStarted(execution_id) from exc

    async def append_event(self, event: HistoryEvent) -> None:
        try:
            await self._run(
                self._execute,
                "INSERT INTO history (execution_id, seq, event_type, body) VALUES (?, ?, ?, ?)",
                event.execution_id,
                event.seq,
                event.event_type.value,
                event.model_dump_json(),
            )
        except sqlite3.IntegrityError as exc:
            raise HistoryConflictError(
                f"Event {event.seq} already recorded for {event.execution_id}"
            ) from exc

    async def get_history(self, execution_id: str) -> list[HistoryEvent]:
        rows = await self._run(
            self._fetchall,
            "SELECT body FROM history WHERE execution_id = ? ORDER BY seq",
            execution_id,
        )
        return [HistoryEvent.model_validate_json(r["body"]) for r in rows]

    async def close_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        result: Any = None,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> None:
        updated = await self._run(
            self._execute,
            """
            UPDATE executions
            SET status = ?, result = ?, error = ?, error_type = ?, closed_at = ?
            WHERE execution_id = ?
            """,
            status.value,
            json.dumps(result),
            error,
            error_type,
            utc_now().isoformat(),
            execution_id,
        )
        if not updated:
            raise ExecutionNotFound(execution_id)

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        row = await self._run(
            self._fetchone,
            "SELECT * FROM executions WHERE execution_id = ?",
            execution_id,
        )
        if not row:
            return None
        record = self._row_to_record(row)
        record.history = await self.get_history(execution_id)
        return record

    async def list_executions(
        self, status: Optional[ExecutionStatus] = None
    ) -> list[ExecutionRecord]:
        if status is None:
            rows = await self._run(
                self._fetchall, "SELECT * FROM executions ORDER BY created_at"
            )
        else:
            rows = await self._run(
                self._fetchall,
                "SELECT * FROM executions WHERE status = ? ORDER BY created_at",
                status.value,
            )
        return [self._row_to_record(row) for row in rows]

    async def purge_closed(self, closed_before: datetime) -> int:
        cutoff = closed_before.isoformat()
        await self._run(
            self._execute,
            """
            DELETE FROM history WHERE execution_id IN (
                SELECT execution_id FROM executions
                WHERE closed_at IS NOT NULL AND closed_at < ?
            )
            """,
            cutoff,
        )
        return await self._run(
            self._execute,
            "DELETE FROM executions WHERE closed_at IS NOT NULL AND closed_at < ?",
            cutoff,
        )
