"""Periodic background loop driven by a ticker and a shutdown event."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from src.utils.clock import Clock, SystemClock

LOG = logging.getLogger(__name__)


class PeriodicTask:
    """Run ``fn`` every ``interval`` seconds until ``stop`` is set.

    A failing tick is logged and the loop keeps going; only the stop event
    ends it. The wait between ticks is interruptible so shutdown is prompt.
    """

    def __init__(
        self,
        name: str,
        fn: Callable[[], Awaitable[Any]],
        *,
        interval: float,
        stop: asyncio.Event,
        clock: Clock | None = None,
        run_immediately: bool = True,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self._fn = fn
        self._interval = interval
        self._stop = stop
        self._clock = clock or SystemClock()
        self._run_immediately = run_immediately
        self.ticks = 0

    async def run(self) -> None:
        LOG.info("periodic_task_started", extra={"task": self.name, "interval": self._interval})
        if not self._run_immediately and await self._clock.wait(self._stop, self._interval):
            return
        while not self._stop.is_set():
            try:
                await self._fn()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOG.exception(
                    "periodic_task_failed",
                    extra={"task": self.name, "error": str(exc)},
                )
            self.ticks += 1
            if await self._clock.wait(self._stop, self._interval):
                break
        LOG.info("periodic_task_stopped", extra={"task": self.name, "ticks": self.ticks})


__all__ = ["PeriodicTask"]
