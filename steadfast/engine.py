"""Durable workflow engine for steadfast."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from .alerts import AlertSink, alert_activity, get_alert_sink
from .config import SteadfastConfig, load_config
from .context import WorkflowContext
from .contracts import (
    EventType,
    ExecutionStatus,
    HistoryEvent,
    inspect_link,
    to_jsonable,
    utc_now,
)
from .errors import (
    ExecutionNotFound,
    NonDeterminismError,
    SteadfastError,
    WorkflowFailed,
)
from .execute import ActivityExecutor
from .limiter import LimiterRegistry, get_limiter_registry
from .persistence import ExecutionRecord, HistoryRepository, get_repository
from .progress import ProgressBroker, ProgressPublisher, get_broker, progress_activity

logger = logging.getLogger(__name__)

WorkflowFn = Callable[[WorkflowContext, Any], Awaitable[Any]]


def workflow_name(workflow: WorkflowFn) -> str:
    return getattr(workflow, "__workflow_name__", None) or workflow.__name__


class WorkflowEngine:
    """Run workflows as replayable programs over durable history.

    The engine owns the process-local resources (limiter registry, progress
    publisher, alert sink) and passes them to each execution's context; none
    of them is persisted.
    """

    def __init__(
        self,
        repository: HistoryRepository | None = None,
        *,
        limiters: LimiterRegistry | None = None,
        executor: ActivityExecutor | None = None,
        broker: ProgressBroker | None = None,
        alert_sink: AlertSink | None = None,
        config: SteadfastConfig | None = None,
    ) -> None:
        self._config = config or load_config()
        self._repository = repository or get_repository()
        self._limiters = limiters or get_limiter_registry()
        self._limiters.configure(self._config.pools)
        self._executor = executor or ActivityExecutor(self._limiters)
        self._publisher = ProgressPublisher(broker or get_broker(config=self._config))
        self._alert_sink = alert_sink or get_alert_sink(self._config)
        self._progress_activity = progress_activity(self._publisher)
        self._alert_activity = alert_activity(self._alert_sink)
        self._workflows: Dict[str, WorkflowFn] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._contexts: Dict[str, WorkflowContext] = {}

    @property
    def repository(self) -> HistoryRepository:
        return self._repository

    @property
    def limiters(self) -> LimiterRegistry:
        return self._limiters

    @property
    def publisher(self) -> ProgressPublisher:
        return self._publisher

    # ------------------------------------------------------------------
    # Registration
    def register(self, workflow: WorkflowFn, name: Optional[str] = None) -> WorkflowFn:
        """Make ``workflow`` resumable under ``name``."""
        name = name or workflow_name(workflow)
        existing = self._workflows.get(name)
        if existing is not None and existing is not workflow:
            raise ValueError(f"Workflow {name} is already registered")
        self._workflows[name] = workflow
        workflow.__workflow_name__ = name  # type: ignore[attr-defined]
        return workflow

    def is_running(self, execution_id: str) -> bool:
        return execution_id in self._tasks

    def history_url(self, execution_id: str) -> str:
        return inspect_link(execution_id, self._config.alerts.inspect_url)

    # ------------------------------------------------------------------
    # Submission and results
    async def start(
        self,
        workflow: WorkflowFn,
        payload: Any = None,
        execution_id: Optional[str] = None,
    ) -> str:
        """Persist a new execution and run it in the background.

        Returns:
            The execution id, assigned before any workflow logic runs.

        Raises:
            ExecutionAlreadyStarted: If ``execution_id`` is already taken.
        """
        if workflow_name(workflow) not in self._workflows:
            self.register(workflow)
        name = workflow_name(workflow)
        execution_id = execution_id or str(uuid.uuid4())
        payload = to_jsonable(payload)

        await self._repository.create_execution(execution_id, name, payload)
        started = HistoryEvent(
            execution_id=execution_id,
            seq=0,
            event_type=EventType.EXECUTION_STARTED,
            activity=name,
            payload=payload,
        )
        await self._repository.append_event(started)
        logger.info(f"Started workflow {name} execution_id={execution_id}")

        self._launch(execution_id, name, workflow, payload, [started])
        return execution_id

    async def execute(
        self,
        workflow: WorkflowFn,
        payload: Any = None,
        execution_id: Optional[str] = None,
    ) -> Any:
        """Start ``workflow`` and wait for its terminal result.

        Raises:
            WorkflowFailed: If the execution ends in the failed state.
        """
        execution_id = await self.start(workflow, payload, execution_id)
        return await self.result(execution_id)

    async def result(self, execution_id: str) -> Any:
        """Wait for ``execution_id`` to close and return its result."""
        task = self._tasks.get(execution_id)
        if task is not None:
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise
                raise SteadfastError(f"Execution {execution_id} was abandoned by shutdown")

        record = await self._repository.get_execution(execution_id)
        if record is None:
            raise ExecutionNotFound(execution_id)
        if record.status == ExecutionStatus.COMPLETED:
            return record.result
        if record.status == ExecutionStatus.FAILED:
            raise WorkflowFailed(execution_id, record.error or "", record.error_type)
        raise SteadfastError(
            f"Execution {execution_id} is running but not owned by this engine; resume it first"
        )

    async def describe(self, execution_id: str) -> ExecutionRecord:
        record = await self._repository.get_execution(execution_id)
        if record is None:
            raise ExecutionNotFound(execution_id)
        return record

    # ------------------------------------------------------------------
    # Recovery
    async def resume(self, execution_id: str) -> Any:
        """Replay a persisted execution from its history and wait for it."""
        if execution_id not in self._tasks:
            record = await self.describe(execution_id)
            if not record.is_closed:
                self._resume_record(record)
        return await self.result(execution_id)

    async def recover(self) -> list[str]:
        """Resume every running execution not already owned by this engine."""
        resumed: list[str] = []
        for summary in await self._repository.list_executions(ExecutionStatus.RUNNING):
            if summary.execution_id in self._tasks:
                continue
            record = await self.describe(summary.execution_id)
            try:
                self._resume_record(record)
            except SteadfastError as e:
                logger.error(f"Cannot recover execution_id={record.execution_id}: {e}")
                continue
            resumed.append(record.execution_id)
        logger.info(f"Recovered {len(resumed)} running execution(s)")
        return resumed

    def _resume_record(self, record: ExecutionRecord) -> None:
        workflow = self._workflows.get(record.workflow_name)
        if workflow is None:
            raise SteadfastError(f"Workflow {record.workflow_name} is not registered")
        logger.info(
            f"Replaying execution_id={record.execution_id} from "
            f"{len(record.history)} history event(s)"
        )
        self._launch(
            record.execution_id, record.workflow_name, workflow, record.payload, record.history
        )

    # ------------------------------------------------------------------
    # Cancellation and shutdown
    async def cancel(self, execution_id: str) -> None:
        """Request cancellation; it interrupts the running activity or slot wait."""
        ctx = self._contexts.get(execution_id)
        if ctx is not None:
            await ctx.request_cancel()
            logger.info(f"Cancellation requested for execution_id={execution_id}")
            return

        record = await self.describe(execution_id)
        if record.is_closed:
            logger.info(f"Execution {execution_id} already closed; nothing to cancel")
            return
        if any(e.event_type == EventType.CANCEL_REQUESTED for e in record.history):
            return
        await self._repository.append_event(
            HistoryEvent(
                execution_id=execution_id,
                seq=max((e.seq for e in record.history), default=-1) + 1,
                event_type=EventType.CANCEL_REQUESTED,
            )
        )
        logger.info(f"Cancellation recorded for dormant execution_id={execution_id}")

    async def shutdown(self) -> None:
        """Abandon in-flight executions without recording a terminal state.

        Their history stays ``running`` so a later :meth:`recover` picks them up.
        """
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._contexts.clear()

    async def purge_expired(self) -> int:
        """Delete closed executions older than the retention window."""
        cutoff = utc_now() - timedelta(days=self._config.retention_days)
        purged = await self._repository.purge_closed(cutoff)
        if purged:
            logger.info(f"Purged {purged} closed execution(s) older than {cutoff.isoformat()}")
        return purged

    # ------------------------------------------------------------------
    # Execution loop
    def _launch(
        self,
        execution_id: str,
        name: str,
        workflow: WorkflowFn,
        payload: Any,
        history: list[HistoryEvent],
    ) -> None:
        ctx = WorkflowContext(
            execution_id,
            name,
            history,
            repository=self._repository,
            executor=self._executor,
            progress_activity=self._progress_activity,
            alert_activity=self._alert_activity,
            history_url=self.history_url(execution_id),
        )
        task = asyncio.create_task(self._run(ctx, workflow, payload))
        self._contexts[execution_id] = ctx
        self._tasks[execution_id] = task

        def _forget(done: asyncio.Task) -> None:
            if self._tasks.get(execution_id) is done:
                del self._tasks[execution_id]
                self._contexts.pop(execution_id, None)

        task.add_done_callback(_forget)

    async def _run(self, ctx: WorkflowContext, workflow: WorkflowFn, payload: Any) -> None:
        try:
            result = to_jsonable(await workflow(ctx, payload))
        except NonDeterminismError as exc:
            logger.error(f"Non-deterministic replay of execution_id={ctx.execution_id}: {exc}")
            await self._close_failed(ctx, exc)
        except Exception as exc:
            logger.warning(f"Execution {ctx.execution_id} failed: {exc}")
            await self._close_failed(ctx, exc)
        else:
            await ctx.record(EventType.EXECUTION_COMPLETED, payload=result)
            await self._repository.close_execution(
                ctx.execution_id, ExecutionStatus.COMPLETED, result=result
            )
            logger.info(f"Execution {ctx.execution_id} completed")

    async def _close_failed(self, ctx: WorkflowContext, exc: Exception) -> None:
        error_type = type(exc).__name__
        await ctx.record(EventType.EXECUTION_FAILED, error=str(exc), error_type=error_type)
        await self._repository.close_execution(
            ctx.execution_id, ExecutionStatus.FAILED, error=str(exc), error_type=error_type
        )
