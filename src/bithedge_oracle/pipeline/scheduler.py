"""Polling cadence: adaptive spot cycles plus a once-a-day close job."""

from __future__ import annotations

import asyncio
import logging
import time as _time
from collections.abc import Sequence
from datetime import UTC, datetime, time, timedelta

from bithedge_oracle.core.clock import Clock, SystemClock
from bithedge_oracle.core.config import SchedulerConfig
from bithedge_oracle.pipeline.service import OracleService

logger = logging.getLogger(__name__)


class AdaptivePollingPolicy:
    """Picks the next spot interval from short-window volatility.

    When the latest shortest-window estimate exceeds ``turbulence_ratio``
    times its trailing average, the interval shrinks by ``speedup_factor``;
    below ``calm_ratio`` it grows by ``relax_factor``. Otherwise it drifts
    back toward the baseline. The result always stays within the
    configured min/max bounds.
    """

    def __init__(self, config: SchedulerConfig) -> None:
        self._config = config

    @property
    def baseline(self) -> float:
        return self._config.spot_interval_seconds

    def next_interval(
        self, current: float, latest: float | None, trailing: Sequence[float]
    ) -> float:
        cfg = self._config
        if latest is None or not trailing:
            return self.baseline
        average = sum(trailing) / len(trailing)
        if average <= 0:
            return self.baseline

        ratio = latest / average
        if ratio >= cfg.turbulence_ratio:
            proposed = current * cfg.speedup_factor
        elif ratio <= cfg.calm_ratio:
            proposed = current * cfg.relax_factor
        else:
            proposed = self.baseline
        return min(max(proposed, cfg.min_spot_interval_seconds), cfg.max_spot_interval_seconds)


def next_daily_run(now: datetime, close_time: time) -> datetime:
    """Next UTC occurrence of ``close_time`` strictly after ``now``."""
    now = now.astimezone(UTC)
    candidate = datetime.combine(now.date(), close_time, UTC)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class Scheduler:
    """Runs the spot loop and the daily-close loop until stopped.

    The two loops are independent: the daily job fires at
    ``daily_close_time`` UTC whatever the spot cadence is doing.
    Spot cycles start on the interval even while an earlier one is still
    waiting on a slow source. ``stop()`` wakes both loops immediately;
    in-flight cycles are cancelled, which leaves no partial writes behind.
    """

    def __init__(
        self,
        service: OracleService,
        config: SchedulerConfig,
        clock: Clock | None = None,
    ) -> None:
        self._service = service
        self._config = config
        self._clock = clock or SystemClock()
        self._policy = AdaptivePollingPolicy(config)
        self._interval = config.spot_interval_seconds
        self._stop = asyncio.Event()

    @property
    def interval(self) -> float:
        return self._interval

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        """Run until ``stop()`` is called or a loop raises."""
        self._stop.clear()
        loops = [
            asyncio.create_task(self._spot_loop(), name="spot-loop"),
            asyncio.create_task(self._daily_loop(), name="daily-loop"),
        ]
        stopper = asyncio.create_task(self._stop.wait(), name="stop")
        try:
            done, _ = await asyncio.wait([*loops, stopper], return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (*loops, stopper):
                task.cancel()
            await asyncio.gather(*loops, stopper, return_exceptions=True)
        for task in done:
            if task is not stopper:
                task.result()
        logger.info("Scheduler stopped")

    async def spot_once(self) -> float:
        """One collection cycle; returns the interval to wait before the next."""
        await self._service.run_spot_cycle()
        latest, trailing = await self._service.volatility_trend(self._config.trailing_samples)
        interval = self._policy.next_interval(self._interval, latest, trailing)
        if interval != self._interval:
            logger.info("Spot interval %.0fs -> %.0fs", self._interval, interval)
        self._interval = interval
        return interval

    async def _spot_loop(self) -> None:
        # Every tick starts its own cycle task, so a cycle stuck on a slow
        # source never delays the next trigger. A failed cycle ends the loop.
        cycles: set[asyncio.Task] = set()
        try:
            while not self._stop.is_set():
                started = _time.monotonic()
                cycles.add(asyncio.create_task(self.spot_once(), name="spot-cycle"))
                if len(cycles) > 1:
                    logger.warning("%d spot cycles in flight", len(cycles))
                while cycles:
                    remaining = self._interval - (_time.monotonic() - started)
                    if remaining <= 0:
                        break
                    done, cycles = await asyncio.wait(
                        cycles, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                    )
                    for task in done:
                        task.result()
                if await self._sleep(self._interval - (_time.monotonic() - started)):
                    return
        finally:
            for task in cycles:
                task.cancel()
            await asyncio.gather(*cycles, return_exceptions=True)

    async def _daily_loop(self) -> None:
        while not self._stop.is_set():
            now = self._clock.now()
            due = next_daily_run(now, self._config.daily_close_time)
            logger.debug("Next daily close job at %s", due.isoformat())
            if await self._sleep((due - now).total_seconds()):
                return
            counts = await self._service.run_daily_close()
            logger.info("Daily close job: %s", counts)

    async def _sleep(self, seconds: float) -> bool:
        """Wait up to ``seconds``; True when woken by ``stop()``."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=max(seconds, 0.0))
        except TimeoutError:
            return False
        return True
