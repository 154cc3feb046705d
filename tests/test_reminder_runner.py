from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from queueflow.scheduler.runner import ReminderRunner


@pytest.mark.asyncio
async def test_runner_sweeps_until_stopped():
    scheduler = AsyncMock()
    runner = ReminderRunner(scheduler, interval_seconds=0.01)

    runner.start()
    await asyncio.sleep(0.05)
    await runner.stop()

    assert scheduler.sweep.await_count >= 2
    assert not runner.running


@pytest.mark.asyncio
async def test_failed_sweep_does_not_stop_the_loop():
    calls: list[int] = []

    async def sweep():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("db down")

    scheduler = AsyncMock()
    scheduler.sweep.side_effect = sweep
    runner = ReminderRunner(scheduler, interval_seconds=0.01)

    runner.start()
    await asyncio.sleep(0.05)
    await runner.stop()

    assert scheduler.sweep.await_count >= 2


@pytest.mark.asyncio
async def test_disabled_runner_never_starts():
    scheduler = AsyncMock()
    runner = ReminderRunner(scheduler, interval_seconds=0.01, enabled=False)

    runner.start()
    await asyncio.sleep(0.02)
    await runner.stop()

    assert not runner.running
    scheduler.sweep.assert_not_awaited()


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        ReminderRunner(AsyncMock(), interval_seconds=0)
