from __future__ import annotations

import asyncio

import pytest

from agentflow_sync.scheduler import DeferredTask, PeriodicTask


@pytest.mark.asyncio
async def test_periodic_task_runs_until_stopped() -> None:
    calls: list[int] = []

    async def tick() -> None:
        calls.append(1)

    task = PeriodicTask("tick", 0.01, tick)
    task.start()
    task.start()
    await asyncio.sleep(0.05)
    await task.stop()
    count = len(calls)
    await asyncio.sleep(0.03)

    assert count >= 2
    assert len(calls) == count
    assert not task.running


@pytest.mark.asyncio
async def test_periodic_task_survives_callback_errors() -> None:
    calls: list[int] = []

    async def flaky() -> None:
        calls.append(1)
        raise RuntimeError("boom")

    task = PeriodicTask("flaky", 0.01, flaky)
    task.start()
    await asyncio.sleep(0.05)
    await task.stop()

    assert len(calls) >= 2
    assert task.runs == len(calls)


@pytest.mark.asyncio
async def test_deferred_task_coalesces_requests() -> None:
    calls: list[int] = []

    async def flush() -> None:
        calls.append(1)

    task = DeferredTask("flush", 0.01, flush)
    assert task.schedule() is True
    assert task.schedule() is False
    assert task.pending
    await task.wait()

    assert calls == [1]
    assert task.schedule() is True
    await task.wait()
    assert calls == [1, 1]


@pytest.mark.asyncio
async def test_deferred_task_cancel() -> None:
    calls: list[int] = []

    async def flush() -> None:
        calls.append(1)

    task = DeferredTask("flush", 0.05, flush)
    task.schedule()
    await task.cancel()
    await asyncio.sleep(0.07)

    assert calls == []
    assert not task.pending
