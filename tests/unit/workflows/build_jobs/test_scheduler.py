"""Unit tests for the in-process wake-up scheduler."""

from __future__ import annotations

import asyncio

import pytest

from nightbuild.workflows.build_jobs.scheduler import AsyncioWakeUpScheduler

pytestmark = [pytest.mark.asyncio]


async def test_schedule_invokes_handler_after_delay() -> None:
    woken: list[str] = []

    async def _handler(job_id: str) -> None:
        woken.append(job_id)

    scheduler = AsyncioWakeUpScheduler(_handler)
    scheduler.schedule("job-1", 0.01)
    scheduler.schedule("job-2", 0)

    assert scheduler.pending == 2
    await asyncio.sleep(0.05)
    await scheduler.drain()

    assert sorted(woken) == ["job-1", "job-2"]
    assert scheduler.pending == 0
    await scheduler.close()


async def test_handler_errors_are_logged_not_raised(caplog) -> None:
    async def _handler(job_id: str) -> None:
        raise RuntimeError("boom")

    scheduler = AsyncioWakeUpScheduler()
    scheduler.attach(_handler)
    scheduler.schedule("job-1", 0)

    await asyncio.sleep(0.01)
    await scheduler.drain()

    assert "Wake-up handler failed for job job-1" in caplog.text
    await scheduler.close()


async def test_schedule_without_handler_raises() -> None:
    scheduler = AsyncioWakeUpScheduler()

    with pytest.raises(RuntimeError):
        scheduler.schedule("job-1", 0)


async def test_close_cancels_pending_timers_and_drops_new_wake_ups() -> None:
    woken: list[str] = []

    async def _handler(job_id: str) -> None:
        woken.append(job_id)

    scheduler = AsyncioWakeUpScheduler(_handler)
    scheduler.schedule("job-1", 0.05)
    await scheduler.close()
    scheduler.schedule("job-2", 0)

    await asyncio.sleep(0.1)

    assert woken == []
    assert scheduler.pending == 0
