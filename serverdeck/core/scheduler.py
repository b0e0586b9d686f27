"""PeriodicTask: cancellable fixed-interval scheduling for pollers."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run an async callback every *interval* seconds until stopped.

    ``stop()`` never interrupts a callback that is already running: the
    current tick finishes and no further tick is started. Exceptions from
    the callback are logged and the next tick runs as scheduled.
    """

    def __init__(
        self,
        callback: Callable[[], Awaitable[None]],
        interval: float,
        name: str = "periodic",
        run_immediately: bool = False,
    ) -> None:
        self._callback = callback
        self.interval = interval
        self.name = name
        self._run_immediately = run_immediately
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        # a loop that was asked to stop may still be finishing its last tick
        if self.running and self._stop_event is not None and not self._stop_event.is_set():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._loop(self._stop_event), name=self.name)

    def stop(self) -> None:
        """Request the loop to end. Safe to call repeatedly."""
        if self._stop_event is not None:
            self._stop_event.set()

    async def wait_stopped(self) -> None:
        if self._task is not None:
            await self._task

    async def _loop(self, stop_event: asyncio.Event) -> None:
        if self._run_immediately:
            await self._tick()
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                break
            await self._tick()

    async def _tick(self) -> None:
        self.ticks += 1
        try:
            await self._callback()
        except Exception:
            logger.exception("%s tick failed", self.name)
