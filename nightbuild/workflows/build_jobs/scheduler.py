"""Delayed wake-up scheduling for job owners."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol

logger = logging.getLogger(__name__)

WakeUpHandler = Callable[[str], Awaitable[None]]


class WakeUpScheduler(Protocol):
    """Re-invokes an owner's wake-up handler after a delay."""

    def schedule(self, job_id: str, delay_seconds: float) -> None: ...


class AsyncioWakeUpScheduler:
    """In-process scheduler backed by ``loop.call_later``.

    The handler is attached after construction because the owner registry
    that provides it also needs the scheduler.
    """

    def __init__(
        self,
        handler: Optional[WakeUpHandler] = None,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._handler = handler
        self._loop = loop
        self._timers: set[asyncio.TimerHandle] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    def attach(self, handler: WakeUpHandler) -> None:
        self._handler = handler

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def schedule(self, job_id: str, delay_seconds: float) -> None:
        if self._closed:
            logger.debug("Scheduler closed; dropping wake-up for job %s", job_id)
            return
        if self._handler is None:
            raise RuntimeError("No wake-up handler attached to scheduler")

        timer: Optional[asyncio.TimerHandle] = None

        def _fire() -> None:
            if timer is not None:
                self._timers.discard(timer)
            self._spawn(job_id)

        timer = self._get_loop().call_later(max(0.0, delay_seconds), _fire)
        self._timers.add(timer)

    def _spawn(self, job_id: str) -> None:
        if self._closed or self._handler is None:
            return
        task = self._get_loop().create_task(self._run(job_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job_id: str) -> None:
        assert self._handler is not None
        try:
            await self._handler(job_id)
        except Exception:
            logger.exception(
                "Wake-up handler failed for job %s", job_id, extra={"job_id": job_id}
            )

    @property
    def pending(self) -> int:
        return len(self._timers) + len(self._tasks)

    async def drain(self) -> None:
        """Wait for wake-ups that have already fired to finish."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        self._closed = True
        for timer in list(self._timers):
            timer.cancel()
        self._timers.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
