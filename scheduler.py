#!/usr/bin/env python3
"""
Feed polling scheduler.

Runs one ingestion tick immediately, then one per period until a stop event is
set. The scheduler has two states, IDLE between ticks and FETCHING while a tick
is in flight, and never runs two ticks at once: a tick that overruns its period
causes the missed firings to be skipped rather than queued.

Cancellation is cooperative. The stop event is checked at tick boundaries and
while waiting for the next firing; a tick that is already running always
completes. Time is read through an injectable Clock so the loop can be driven
in tests without real waits.
"""

import asyncio
import math
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from config import get_logger
from errors import StoreError
from telemetry import init_telemetry, get_tracer, trace_span
from utils import format_duration

# Module-specific logger
logger = get_logger("scheduler")

init_telemetry("gator-scheduler")
_tracer = get_tracer("scheduler")


class SchedulerState(Enum):
    IDLE = "idle"
    FETCHING = "fetching"


class Clock:
    """Monotonic clock backed by the running event loop."""

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    async def wait(self, seconds: float, stop_event: asyncio.Event) -> bool:
        """Wait up to ``seconds`` or until ``stop_event`` is set.

        Returns:
            True if the stop event was set, False if the time elapsed.
        """
        if stop_event.is_set():
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False


class AggregationScheduler:
    """Drives a tick coroutine on a fixed period until told to stop."""

    def __init__(
        self,
        tick: Callable[[], Awaitable[Any]],
        interval: float,
        clock: Optional[Clock] = None,
    ) -> None:
        """
        Args:
            tick: Coroutine function run once per firing (e.g. FeedAggregator.scrape_feeds)
            interval: Period between firings, in seconds; must be positive
            clock: Time source (default: event loop monotonic clock)

        Raises:
            ValueError: If ``interval`` is not positive.
        """
        if interval is None or interval <= 0:
            raise ValueError(f"Poll interval must be a positive duration, got {interval!r}")
        self.tick = tick
        self.interval = float(interval)
        self.clock = clock or Clock()
        self.state = SchedulerState.IDLE
        self.ticks_run = 0
        self.ticks_failed = 0
        self.ticks_skipped = 0

    def get_status(self) -> Dict[str, Any]:
        """Current scheduler counters, for logging/debugging."""
        return {
            'state': self.state.value,
            'interval': format_duration(self.interval),
            'ticks_run': self.ticks_run,
            'ticks_failed': self.ticks_failed,
            'ticks_skipped': self.ticks_skipped,
        }

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> int:
        """Run ticks until ``stop_event`` is set.

        Returns:
            The number of ticks executed.
        """
        if stop_event is None:
            stop_event = asyncio.Event()

        logger.info(f"Starting scheduler (interval: {format_duration(self.interval)})")
        next_fire = self.clock.now()

        try:
            while not stop_event.is_set():
                await self._run_tick()
                if stop_event.is_set():
                    break

                next_fire += self.interval
                now = self.clock.now()
                if next_fire < now:
                    missed = math.ceil((now - next_fire) / self.interval)
                    self.ticks_skipped += missed
                    logger.warning(f"Tick overran its period; skipping {missed} missed firing(s)")
                    next_fire += missed * self.interval

                if await self.clock.wait(next_fire - now, stop_event):
                    break
        except asyncio.CancelledError:
            logger.info("Scheduler cancelled - shutting down")
            raise

        logger.info(f"Scheduler stopped after {self.ticks_run} ticks")
        return self.ticks_run

    @trace_span("scheduler.tick", tracer_name="scheduler")
    async def _run_tick(self) -> None:
        self.state = SchedulerState.FETCHING
        try:
            await self.tick()
        except StoreError as e:
            self.ticks_failed += 1
            logger.error(f"Store error during tick, continuing with next tick: {e}")
        except Exception as e:
            self.ticks_failed += 1
            logger.exception(f"Unexpected error during tick, continuing with next tick: {e}")
        finally:
            self.state = SchedulerState.IDLE
            self.ticks_run += 1
