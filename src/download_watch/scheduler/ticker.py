from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Iterable, Optional

from download_watch.scheduler.models import SourcePolicy
from download_watch.scheduler.store import ScheduleStore

logger = logging.getLogger(__name__)

IDLE_DELAY_SECONDS = 30 * 24 * 3600.0
OVERDUE_DELAY_SECONDS = 0.1


def compute_delay(
    policies: Iterable[SourcePolicy],
    now: float,
    *,
    idle_delay: float = IDLE_DELAY_SECONDS,
    overdue_delay: float = OVERDUE_DELAY_SECONDS,
) -> float:
    """Seconds until the earliest policy is due, clamped to `overdue_delay` when already overdue."""
    delay = idle_delay
    for policy in policies:
        remaining = policy.next_due_in(now)
        if remaining < delay:
            delay = remaining
    if delay < 0:
        delay = overdue_delay
    return delay


class Ticker:
    """
    Background loop that calls `emit` whenever the next policy becomes due.

    The delay is recomputed from the store after every wakeup. `poke()` cuts the current
    sleep short so a reload is reflected immediately; a poke does not emit by itself.
    """

    def __init__(
        self,
        store: ScheduleStore,
        emit: Callable[[], None],
        *,
        clock: Callable[[], float] = time.monotonic,
        idle_delay: float = IDLE_DELAY_SECONDS,
        overdue_delay: float = OVERDUE_DELAY_SECONDS,
    ) -> None:
        self._store = store
        self._emit = emit
        self._clock = clock
        self._idle_delay = idle_delay
        self._overdue_delay = overdue_delay
        self._wakeup = asyncio.Event()
        self._stopping = False
        self._task: Optional[asyncio.Task] = None

    async def next_delay(self) -> float:
        async with self._store.shared():
            return compute_delay(
                self._store.unsafe_policies().values(),
                self._clock(),
                idle_delay=self._idle_delay,
                overdue_delay=self._overdue_delay,
            )

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run(), name="download-watch-ticker")

    async def stop(self) -> None:
        if not self._task:
            return
        self._stopping = True
        self._wakeup.set()
        await self._task
        self._task = None

    def poke(self) -> None:
        self._wakeup.set()

    async def _run(self) -> None:
        while not self._stopping:
            self._wakeup.clear()
            delay = await self.next_delay()
            logger.debug("Sleeping until next event. delay_seconds=%.3f", delay)
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
            except asyncio.TimeoutError:
                self._emit()
                continue
            logger.debug("Ticker woken early, recomputing delay.")
