from __future__ import annotations

import asyncio
import logging

from .reminders import ReminderScheduler

logger = logging.getLogger(__name__)


class ReminderRunner:
    """Drive :meth:`ReminderScheduler.sweep` on a fixed interval from an asyncio task."""

    def __init__(self, scheduler: ReminderScheduler, *, interval_seconds: float = 60.0, enabled: bool = True) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._scheduler = scheduler
        self._interval = interval_seconds
        self._enabled = enabled
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self._enabled:
            logger.info("Reminder runner disabled by configuration")
            return
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self.run_forever(), name="reminder-runner")
        logger.info("Reminder runner started (every %.0fs)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("Reminder runner stopped")

    async def run_once(self) -> None:
        try:
            await self._scheduler.sweep()
        except Exception:
            logger.exception("Reminder sweep failed; retrying next tick")

    async def run_forever(self) -> None:
        while not self._stopping.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
