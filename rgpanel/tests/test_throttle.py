"""Tests for the coalescing throttle."""

import asyncio
import pytest

from rgpanel.engine.throttle import Throttle


@pytest.mark.asyncio
async def test_burst_coalesces_into_one_run():
    """Many calls before the first run starts produce a single run."""
    runs = []

    async def action():
        runs.append(1)

    throttle = Throttle(action, interval=0.02, initial_delay=0.01)
    for _ in range(10):
        throttle.invoke()

    await throttle.wait_idle()
    assert len(runs) == 1
    assert not throttle.is_running


@pytest.mark.asyncio
async def test_calls_during_run_produce_one_trailing_run():
    started = asyncio.Event()
    release = asyncio.Event()
    runs = []

    async def action():
        runs.append(1)
        started.set()
        await release.wait()

    throttle = Throttle(action, interval=0.01, initial_delay=0.0)
    throttle.invoke()
    await started.wait()

    for _ in range(25):
        throttle.invoke()
    release.set()

    await throttle.wait_idle()
    assert len(runs) == 2


@pytest.mark.asyncio
async def test_action_never_overlaps():
    active = 0
    peak = 0

    async def action():
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1

    throttle = Throttle(action, interval=0.0, initial_delay=0.0)
    for _ in range(5):
        throttle.invoke()
        await asyncio.sleep(0.005)

    await throttle.wait_idle()
    assert peak == 1


@pytest.mark.asyncio
async def test_failing_action_does_not_wedge():
    calls = []

    async def action():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("sink went away")

    throttle = Throttle(action, interval=0.01, initial_delay=0.0)
    throttle.invoke()
    await throttle.wait_idle()
    assert not throttle.is_running

    throttle.invoke()
    await throttle.wait_idle()
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_close_cancels_pending_run():
    runs = []

    async def action():
        runs.append(1)

    throttle = Throttle(action, interval=0.01, initial_delay=0.5)
    throttle.invoke()
    await throttle.close()

    await asyncio.sleep(0.01)
    assert runs == []
    assert not throttle.is_running


@pytest.mark.asyncio
async def test_invoke_after_close_is_ignored():
    runs = []

    async def action():
        runs.append(1)

    throttle = Throttle(action, interval=0, initial_delay=0)
    await throttle.close()
    throttle.invoke()

    await throttle.wait_idle()
    await asyncio.sleep(0.01)
    assert runs == []
    assert not throttle.is_running
