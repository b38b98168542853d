"""Concurrency limiter tests."""

import asyncio
import logging

import pytest

from steadfast import limiter as limiter_mod
from steadfast.errors import PoolNotConfigured
from steadfast.limiter import ConcurrencyLimiter, LimiterRegistry, get_limiter_registry


@pytest.mark.asyncio
async def test_limiter_never_exceeds_capacity():
    limiter = ConcurrencyLimiter("cartoonize", 2)
    active = 0
    observed = 0

    async def gated():
        nonlocal active, observed
        async with limiter.slot():
            active += 1
            observed = max(observed, active)
            await asyncio.sleep(0.01)
            active -= 1

    await asyncio.gather(*(gated() for _ in range(8)))
    assert observed == 2
    assert limiter.peak == 2
    assert limiter.in_flight == 0


@pytest.mark.asyncio
async def test_slot_released_when_gated_call_raises():
    limiter = ConcurrencyLimiter("billing", 1)

    with pytest.raises(RuntimeError):
        async with limiter.slot():
            raise RuntimeError("boom")

    assert limiter.in_flight == 0
    slot = await asyncio.wait_for(limiter.acquire(), timeout=1)
    limiter.release(slot)


@pytest.mark.asyncio
async def test_release_is_idempotent_per_slot():
    limiter = ConcurrencyLimiter("billing", 1)
    slot = await limiter.acquire()
    limiter.release(slot)
    limiter.release(slot)
    assert limiter.in_flight == 0
    assert slot.released


@pytest.mark.asyncio
async def test_registry_reuses_limiter_per_pool():
    registry = LimiterRegistry()
    first = registry.get("cartoonize", 1)
    again = registry.get("cartoonize", 5)
    assert first is again
    assert again.max_concurrency == 1
    assert "cartoonize" in registry
    assert registry.pools() == ["cartoonize"]


def test_registry_uses_configured_defaults():
    registry = LimiterRegistry({"segmentation": 3})
    assert registry.get("segmentation").max_concurrency == 3
    with pytest.raises(PoolNotConfigured):
        registry.get("unknown")


@pytest.mark.asyncio
async def test_second_holder_waits_for_release():
    registry = LimiterRegistry()
    first = await registry.acquire("video", 1)

    waiter = asyncio.create_task(registry.acquire("video", 1))
    await asyncio.sleep(0.01)
    assert not waiter.done()

    registry.release(first)
    second = await asyncio.wait_for(waiter, timeout=1)
    assert second.pool == "video"
    registry.release(second)


def test_limiter_rejects_zero_capacity():
    with pytest.raises(ValueError):
        ConcurrencyLimiter("broken", 0)


def test_process_registry_merges_later_defaults(monkeypatch):
    monkeypatch.setattr(limiter_mod, "_registry_instance", None)
    first = get_limiter_registry()
    again = get_limiter_registry({"cartoonize": 2})

    assert again is first
    assert again.get("cartoonize").max_concurrency == 2


def test_configure_keeps_existing_limiter_and_warns(caplog):
    registry = LimiterRegistry()
    existing = registry.get("video", 1)

    with caplog.at_level(logging.WARNING, logger="steadfast.limiter"):
        registry.configure({"video": 3, "audio": 2})

    assert registry.get("video") is existing
    assert existing.max_concurrency == 1
    assert registry.get("audio").max_concurrency == 2
    assert "applies after restart" in caplog.text
