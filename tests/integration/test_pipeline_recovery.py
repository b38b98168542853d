"""End-to-end runs of the cartoon-to-video pipeline, including crash recovery."""

import asyncio

import pytest

from steadfast.contracts import ExecutionStatus
from steadfast.errors import WorkflowFailed
from steadfast.execute import ActivityExecutor
from steadfast.limiter import LimiterRegistry
from steadfast.persistence import SQLiteHistoryRepository
from steadfast.progress import InMemoryProgressBroker
from tests.fixtures.engines import make_engine
from tests.fixtures.pipeline import FakeBilling, FakeJobService, build_pipeline

ORDER = {"image": "cat.png", "amount": 5}


@pytest.mark.asyncio
async def test_pipeline_happy_path_publishes_progress():
    billing, jobs = FakeBilling(), FakeJobService()
    pipeline, _ = build_pipeline(billing, jobs)
    broker = InMemoryProgressBroker()
    engine = make_engine(broker=broker)

    result = await engine.execute(pipeline, ORDER, execution_id="exec-happy")

    assert result["video_url"] == "https://cdn.example/job-123.mp4"
    assert result["charge_id"].startswith("ch_")
    labels = [e.step_label for e in await broker.history("exec-happy")]
    assert labels == ["Charging", "Cartoonizing", "Generating video", "Done"]
    assert len(billing.applied_charges("exec-happy")) == 1


@pytest.mark.asyncio
async def test_crash_while_polling_resumes_same_job(tmp_path):
    db_path = tmp_path / "steadfast.db"
    billing, jobs = FakeBilling(), FakeJobService(block_polls=asyncio.Event())

    pipeline, _ = build_pipeline(billing, jobs)
    first = make_engine(SQLiteHistoryRepository(db_path))
    eid = await first.start(pipeline, ORDER, execution_id="exec-crash")
    await asyncio.wait_for(jobs.poll_started.wait(), timeout=5)
    await first.shutdown()

    record = await first.describe(eid)
    assert record.status == ExecutionStatus.RUNNING

    # A new worker process: fresh engine, repository handle and broker.
    restarted_pipeline, _ = build_pipeline(billing, jobs)
    broker = InMemoryProgressBroker()
    second = make_engine(SQLiteHistoryRepository(db_path), broker=broker)
    second.register(restarted_pipeline)
    jobs.block_polls.set()

    assert await second.recover() == [eid]
    result = await second.result(eid)

    assert result["video_url"] == "https://cdn.example/job-123.mp4"
    assert jobs.submit_calls == 1
    assert set(jobs.polls) == {"job-123"}
    assert billing.charge_calls == 1
    assert len(billing.applied_charges(eid)) == 1
    assert [e.step_label for e in await broker.history(eid)] == ["Done"]


@pytest.mark.asyncio
async def test_lost_charge_response_charges_once():
    billing, jobs = FakeBilling(fail_charge_attempts=1), FakeJobService()
    pipeline, _ = build_pipeline(billing, jobs)
    engine = make_engine()

    await engine.execute(pipeline, ORDER, execution_id="exec-lost")

    assert billing.charge_calls == 2
    assert len(billing.applied_charges("exec-lost")) == 1


@pytest.mark.asyncio
async def test_stalled_poll_is_rescheduled_without_resubmitting():
    billing, jobs = FakeBilling(), FakeJobService(stall_first_poll=True)
    pipeline, _ = build_pipeline(billing, jobs)
    limiters = LimiterRegistry()
    executor = ActivityExecutor(limiters)
    engine = make_engine(limiters=limiters, executor=executor)

    result = await engine.execute(pipeline, ORDER)

    assert result["video_url"] == "https://cdn.example/job-123.mp4"
    assert executor.abandoned_attempts == 1
    assert jobs.submit_calls == 1
    assert set(jobs.polls) == {"job-123"}


@pytest.mark.asyncio
async def test_cartoonize_pool_is_shared_across_executions():
    billing, jobs = FakeBilling(), FakeJobService()
    pipeline, _ = build_pipeline(billing, jobs)
    engine = make_engine()

    ok, failed = await asyncio.gather(
        engine.execute(pipeline, ORDER, execution_id="exec-1"),
        engine.execute(pipeline, {"image": "corrupt.png", "amount": 5}, execution_id="exec-2"),
        return_exceptions=True,
    )

    assert ok["video_url"].endswith(".mp4")
    assert isinstance(failed, WorkflowFailed)
    limiter = engine.limiters.get("cartoonize")
    assert limiter.peak == 1
    assert limiter.in_flight == 0
    assert len(billing.refunds) == 1
