import asyncio

import pytest

from steadfast import activity
from steadfast.contracts import ActivityOptions, RetryPolicy
from steadfast.errors import (
    ActivityError,
    ActivityFailed,
    PoolNotConfigured,
    WorkflowCancelled,
)
from steadfast.execute import ActivityExecutor
from steadfast.limiter import LimiterRegistry
from steadfast.utils import retry

FAST = RetryPolicy(initial_interval=0.0, backoff_coefficient=1.0)


def _executor() -> ActivityExecutor:
    return ActivityExecutor(LimiterRegistry())


async def _invoke(executor, fn, payload=None, options=None, key="key-1", cancel=None):
    return await executor.invoke(
        fn,
        payload,
        options,
        execution_id="exec-1",
        command_id=1,
        idempotency_key=key,
        cancel=cancel,
    )


@pytest.mark.asyncio
async def test_transient_failures_are_retried_with_same_key():
    seen = []

    @activity.defn
    async def flaky(payload):
        info = activity.info()
        seen.append((info.attempt, info.idempotency_key))
        if info.attempt < 3:
            raise ConnectionError("try again")
        return {"ok": payload}

    options = ActivityOptions(retry_policy=FAST.model_copy(update={"maximum_attempts": 3}))
    result = await _invoke(_executor(), flaky, 7, options)

    assert result == {"ok": 7}
    assert seen == [(1, "key-1"), (2, "key-1"), (3, "key-1")]


@pytest.mark.asyncio
async def test_exhausted_budget_raises_activity_error():
    calls = 0

    @activity.defn(name="billing.charge")
    async def always_down(payload):
        nonlocal calls
        calls += 1
        raise ConnectionError("billing down")

    options = ActivityOptions(retry_policy=FAST.model_copy(update={"maximum_attempts": 3}))
    with pytest.raises(ActivityError) as exc_info:
        await _invoke(_executor(), always_down, None, options)

    assert calls == 3
    err = exc_info.value
    assert err.activity == "billing.charge"
    assert err.attempts == 3
    assert err.error_type == "ConnectionError"
    assert err.cause_message == "billing down"
    assert isinstance(err.__cause__, ConnectionError)


@pytest.mark.asyncio
async def test_non_retryable_failure_stops_immediately():
    calls = 0

    @activity.defn
    async def reject(payload):
        nonlocal calls
        calls += 1
        raise ActivityFailed("unsupported image", retryable=False)

    with pytest.raises(ActivityError) as exc_info:
        await _invoke(_executor(), reject, None, ActivityOptions(retry_policy=FAST))
    assert calls == 1
    assert exc_info.value.attempts == 1


@pytest.mark.asyncio
async def test_non_retryable_error_types_from_policy():
    calls = 0

    @activity.defn
    async def invalid(payload):
        nonlocal calls
        calls += 1
        raise ValueError("bad input")

    policy = FAST.model_copy(update={"non_retryable_error_types": ["ValueError"]})
    with pytest.raises(ActivityError):
        await _invoke(_executor(), invalid, None, ActivityOptions(retry_policy=policy))
    assert calls == 1


@pytest.mark.asyncio
async def test_backoff_is_requested_between_attempts(monkeypatch):
    delays = []

    async def fake_schedule(policy, attempt):
        delays.append(attempt)

    monkeypatch.setattr(retry, "schedule_retry", fake_schedule)

    @activity.defn
    async def failing(payload):
        raise ConnectionError("down")

    options = ActivityOptions(retry_policy=RetryPolicy.bounded(4, initial_interval=30))
    with pytest.raises(ActivityError):
        await _invoke(_executor(), failing, None, options)
    assert delays == [1, 2, 3]


@pytest.mark.asyncio
async def test_attempt_timeout_counts_as_failure():
    @activity.defn
    async def hangs(payload):
        await asyncio.sleep(10)

    options = ActivityOptions(
        retry_policy=FAST.model_copy(update={"maximum_attempts": 2}),
        start_to_close_timeout=0.05,
    )
    with pytest.raises(ActivityError) as exc_info:
        await _invoke(_executor(), hangs, None, options)
    assert exc_info.value.error_type == "ActivityTimeout"
    assert exc_info.value.attempts == 2


@pytest.mark.asyncio
async def test_missed_heartbeat_reschedules_without_consuming_budget():
    calls = []

    @activity.defn
    async def poll(payload):
        info = activity.info()
        calls.append((info.attempt, info.heartbeat_details))
        if len(calls) == 1:
            activity.heartbeat("progress-10")
            await asyncio.sleep(10)
        return "done"

    executor = _executor()
    options = ActivityOptions(
        retry_policy=FAST.model_copy(update={"maximum_attempts": 1}),
        heartbeat_timeout=0.05,
    )
    result = await _invoke(executor, poll, None, options)

    assert result == "done"
    assert executor.abandoned_attempts == 1
    assert calls == [(1, None), (1, "progress-10")]


@pytest.mark.asyncio
async def test_heartbeating_activity_is_not_interrupted():
    @activity.defn
    async def busy(payload):
        for _ in range(10):
            activity.heartbeat()
            await asyncio.sleep(0.01)
        return "finished"

    executor = _executor()
    options = ActivityOptions(retry_policy=FAST, heartbeat_timeout=0.05)
    assert await _invoke(executor, busy, None, options) == "finished"
    assert executor.abandoned_attempts == 0


@pytest.mark.asyncio
async def test_pool_limits_concurrent_attempts():
    registry = LimiterRegistry()
    executor = ActivityExecutor(registry)
    active = 0
    peak = 0

    @activity.defn
    async def render(payload):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.02)
        active -= 1
        return payload

    options = ActivityOptions(retry_policy=FAST, pool="cartoonize", max_concurrency=1)
    results = await asyncio.gather(
        *(_invoke(executor, render, n, options, key=f"key-{n}") for n in range(3))
    )

    assert sorted(results) == [0, 1, 2]
    assert peak == 1
    assert registry.get("cartoonize").in_flight == 0


@pytest.mark.asyncio
async def test_pool_slot_released_after_failure():
    registry = LimiterRegistry()

    @activity.defn
    async def broken(payload):
        raise ActivityFailed("corrupt", retryable=False)

    options = ActivityOptions(retry_policy=FAST, pool="cartoonize", max_concurrency=1)
    with pytest.raises(ActivityError):
        await _invoke(ActivityExecutor(registry), broken, None, options)
    assert registry.get("cartoonize").in_flight == 0


def test_info_outside_activity_raises():
    assert not activity.in_activity()
    with pytest.raises(RuntimeError):
        activity.info()


class Receipt:
    def __init__(self, charge_id):
        self.charge_id = charge_id


@pytest.mark.asyncio
async def test_unrecordable_result_is_not_retried():
    calls = 0

    @activity.defn(name="charge")
    async def charge(payload):
        nonlocal calls
        calls += 1
        return Receipt("ch_1")

    options = ActivityOptions(retry_policy=FAST.model_copy(update={"maximum_attempts": 3}))
    with pytest.raises(ActivityError) as exc_info:
        await _invoke(_executor(), charge, None, options)

    assert calls == 1
    assert exc_info.value.error_type == "UnserializableResult"
    assert "Receipt" in exc_info.value.cause_message


@pytest.mark.asyncio
async def test_unknown_pool_fails_before_any_attempt():
    calls = 0

    @activity.defn
    async def render(payload):
        nonlocal calls
        calls += 1

    options = ActivityOptions(retry_policy=RetryPolicy.unbounded(), pool="unconfigured")
    with pytest.raises(PoolNotConfigured):
        await asyncio.wait_for(_invoke(_executor(), render, None, options), timeout=1)
    assert calls == 0


@pytest.mark.asyncio
async def test_cancel_interrupts_running_attempt():
    registry = LimiterRegistry()
    cancel = asyncio.Event()
    started = asyncio.Event()
    interrupted = []

    @activity.defn
    async def poll(payload):
        started.set()
        try:
            while True:
                activity.heartbeat()
                await asyncio.sleep(0.01)
        except asyncio.CancelledError:
            interrupted.append(activity.info().attempt)
            raise

    options = ActivityOptions(
        retry_policy=RetryPolicy.unbounded(initial_interval=0),
        heartbeat_timeout=0.2,
        pool="video",
        max_concurrency=1,
    )
    executor = ActivityExecutor(registry)
    call = asyncio.create_task(_invoke(executor, poll, None, options, cancel=cancel))
    await asyncio.wait_for(started.wait(), timeout=1)
    cancel.set()

    with pytest.raises(WorkflowCancelled):
        await asyncio.wait_for(call, timeout=1)
    assert interrupted == [1]
    assert registry.get("video").in_flight == 0


@pytest.mark.asyncio
async def test_cancel_interrupts_wait_for_pool_slot():
    registry = LimiterRegistry()
    held = await registry.acquire("video", 1)
    cancel = asyncio.Event()
    calls = 0

    @activity.defn
    async def render(payload):
        nonlocal calls
        calls += 1

    options = ActivityOptions(retry_policy=FAST, pool="video", max_concurrency=1)
    executor = ActivityExecutor(registry)
    call = asyncio.create_task(_invoke(executor, render, None, options, cancel=cancel))
    await asyncio.sleep(0.01)
    assert not call.done()
    cancel.set()

    with pytest.raises(WorkflowCancelled):
        await asyncio.wait_for(call, timeout=1)
    registry.release(held)
    await asyncio.sleep(0)
    assert calls == 0
    assert registry.get("video").in_flight == 0


@pytest.mark.asyncio
async def test_cancel_interrupts_backoff():
    cancel = asyncio.Event()
    calls = 0

    @activity.defn
    async def failing(payload):
        nonlocal calls
        calls += 1
        cancel.set()
        raise ConnectionError("down")

    options = ActivityOptions(retry_policy=RetryPolicy.bounded(5, initial_interval=30))
    with pytest.raises(WorkflowCancelled):
        await asyncio.wait_for(
            _invoke(_executor(), failing, None, options, cancel=cancel), timeout=1
        )
    assert calls == 1


@pytest.mark.asyncio
async def test_abandoned_attempt_keeps_slot_until_it_unwinds():
    registry = LimiterRegistry()
    active = 0
    peak = 0

    @activity.defn
    async def poll(payload):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        try:
            if activity.info().heartbeat_details is None:
                activity.heartbeat("stalled")
                try:
                    await asyncio.sleep(10)
                except asyncio.CancelledError:
                    # Cleanup after cancellation still occupies the pool.
                    await asyncio.sleep(0.05)
                    raise
            return "done"
        finally:
            active -= 1

    options = ActivityOptions(
        retry_policy=FAST, heartbeat_timeout=0.05, pool="video", max_concurrency=1
    )
    executor = ActivityExecutor(registry)
    assert await _invoke(executor, poll, None, options) == "done"
    assert executor.abandoned_attempts == 1
    assert peak == 1
    assert registry.get("video").in_flight == 0


@pytest.mark.asyncio
async def test_attempt_ignoring_cancellation_is_left_behind_after_grace():
    release = asyncio.Event()
    calls = 0

    @activity.defn
    async def stubborn(payload):
        nonlocal calls
        calls += 1
        if calls == 1:
            activity.heartbeat("stalled")
            while not release.is_set():
                try:
                    await asyncio.sleep(0.01)
                except asyncio.CancelledError:
                    continue
        return "done"

    options = ActivityOptions(retry_policy=FAST, heartbeat_timeout=0.05)
    executor = ActivityExecutor(LimiterRegistry(), abandon_grace=0.02)
    assert await asyncio.wait_for(_invoke(executor, stubborn, None, options), timeout=1) == "done"
    assert calls == 2
    release.set()
    await asyncio.sleep(0.03)
