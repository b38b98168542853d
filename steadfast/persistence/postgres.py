"""PostgreSQL implementation of the history repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

import asyncpg

from ..contracts import ExecutionStatus, HistoryEvent, utc_now
from ..errors import ExecutionAlreadyStarted, ExecutionNotFound, HistoryConflictError
from .models import ExecutionRecord
from .repository import HistoryRepository


class PostgresHistoryRepository(HistoryRepository):
    """Persist execution history using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                execution_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                payload TEXT,
                status TEXT NOT NULL,
                result TEXT,
                error TEXT,
                error_type TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                closed_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
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

    @staticmethod
    def _row_to_record(row: asyncpg.Record) -> ExecutionRecord:
        return ExecutionRecord(
            execution_id=row["execution_id"],
            workflow_name=row["workflow_name"],
            payload=json.loads(row["payload"]) if row["payload"] else None,
            status=ExecutionStatus(row["status"]),
            result=json.loads(row["result"]) if row["result"] else None,
            error=row["error"],
            error_type=row["error_type"],
            created_at=row["created_at"],
            closed_at=row["closed_at"],
        )

    # ------------------------------------------------------------------
    async def create_execution(
        self, execution_id: str, workflow_name: str, payload: Any = None
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO executions (execution_id, workflow_name, payload, status, created_at) "
                "VALUES ($1, $2, $3, $4, $5)",
                execution_id,
                workflow_name,
                json.dumps(payload),
                ExecutionStatus.RUNNING.value,
                utc_now(),
            )
        except asyncpg.UniqueViolationError as exc:
            raise ExecutionAlreadyStarted(execution_id) from exc
        finally:
            await conn.close()

    async def append_event(self, event: HistoryEvent) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO history (execution_id, seq, event_type, body) VALUES ($1, $2, $3, $4)",
                event.execution_id,
                event.seq,
                event.event_type.value,
                event.model_dump_json(),
            )
        except asyncpg.UniqueViolationError as exc:
            raise HistoryConflictError(
                f"Event {event.seq} already recorded for {event.execution_id}"
            ) from exc
        finally:
            await conn.close()

    async def get_history(self, execution_id: str) -> list[HistoryEvent]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT body FROM history WHERE execution_id = $1 ORDER BY seq",
                execution_id,
            )
        finally:
            await conn.close()
        return [HistoryEvent.model_validate_json(r["body"]) for r in rows]

    async def close_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        result: Any = None,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> None:
        conn = await self._connect()
        try:
            outcome = await conn.execute(
                """
                UPDATE executions
                SET status = $1, result = $2, error = $3, error_type = $4, closed_at = $5
                WHERE execution_id = $6
                """,
                status.value,
                json.dumps(result),
                error,
                error_type,
                utc_now(),
                execution_id,
            )
        finally:
            await conn.close()
        if outcome.endswith(" 0"):
            raise ExecutionNotFound(execution_id)

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM executions WHERE execution_id = $1", execution_id
            )
        finally:
            await conn.close()
        if not row:
            return None
        record = self._row_to_record(row)
        record.history = await self.get_history(execution_id)
        return record

    async def list_executions(
        self, status: Optional[ExecutionStatus] = None
    ) -> list[ExecutionRecord]:
        conn = await self._connect()
        try:
            if status is None:
                rows = await conn.fetch("SELECT * FROM executions ORDER BY created_at")
            else:
                rows = await conn.fetch(
                    "SELECT * FROM executions WHERE status = $1 ORDER BY created_at",
                    status.value,
                )
        finally:
            await conn.close()
        return [self._row_to_record(r) for r in rows]

    async def purge_closed(self, closed_before: datetime) -> int:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    """
                    DELETE FROM history WHERE execution_id IN (
                        SELECT execution_id FROM executions
                        WHERE closed_at IS NOT NULL AND closed_at < $1
                    )
                    """,
                    closed_before,
                )
                outcome = await conn.execute(
                    "DELETE FROM executions WHERE closed_at IS NOT NULL AND closed_at < $1",
                    closed_before,
                )
        finally:
            await conn.close()
        return int(outcome.split()[-1])
