"""Periodic ticker driving scheduled sync passes.

The ticker waits on a stop event with a timeout equal to the interval.
When the timeout expires it runs one tick; when the event is set it exits.
Stopping never cancels a tick that is already running, so an in-flight
sync pass always completes.

Usage::

    ticker = PeriodicSync(interval_seconds=1800, on_tick=manager.run_scheduled_pass)
    ticker.start()
    ...
    ticker.stop()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger("healthsync.wearables.sync.scheduler")


class PeriodicSync:
    """Run ``on_tick`` every ``interval_seconds`` until stopped.

    The first tick happens one full interval after ``start()``.

    Args:
        interval_seconds: Delay between ticks.
        on_tick:          Coroutine function called on each tick.
    """

    def __init__(
        self,
        interval_seconds: float,
        on_tick: Callable[[], Awaitable[None]],
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._interval = interval_seconds
        self._on_tick = on_tick
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    @property
    def interval_seconds(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        """True between ``start()`` and ``stop()``."""
        return self._stop_event is not None and not self._stop_event.is_set()

    def start(self) -> None:
        """Start ticking.  Must be called from a running event loop."""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._stop_event), name="healthsync-periodic-sync")
        logger.debug("Periodic sync started (every %.0fs)", self._interval)

    def stop(self) -> None:
        """Stop future ticks.  Idempotent; a running tick is left to finish."""
        if self._stop_event is not None and not self._stop_event.is_set():
            self._stop_event.set()
            logger.debug("Periodic sync stopped")

    async def wait_closed(self) -> None:
        """Wait for the ticker task (and any in-flight tick) to finish."""
        if self._task is not None:
            await self._task

    async def _run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            else:
                break

            try:
                await self._on_tick()
            except Exception:
                # A failing tick must not end the schedule
                logger.exception("Periodic sync tick failed")
