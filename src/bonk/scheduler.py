"""Timer driver -- fires due deferred triggers into their repository's tracker."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

import structlog

from bonk.config import BonkConfig
from bonk.store import Timer, TrackerStore
from bonk.tracker import TrackerRegistry

log = structlog.get_logger()


class TimerDriver:
    def __init__(
        self,
        config: BonkConfig,
        store: TrackerStore,
        registry: TrackerRegistry,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.store = store
        self.registry = registry
        self._clock = clock
        self._semaphore = asyncio.Semaphore(config.max_concurrent_triggers)
        self._running = True
        self._tasks: set[asyncio.Task] = set()

    async def start(self) -> None:
        log.info("timer_driver_started", tick_s=self.config.timer_tick_s)
        try:
            await self._tick_loop()
        except asyncio.CancelledError:
            log.info("timer_driver_cancelled")
        finally:
            log.info("timer_driver_stopped")

    async def stop(self) -> None:
        self._running = False

    async def tick(self) -> int:
        """Dispatch every due timer once. Returns the number dispatched."""
        due = await self.store.claim_due(self._clock(), lease_s=self.config.timer_lease_s)
        for timer in due:
            task = asyncio.create_task(self._fire_with_semaphore(timer))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return len(due)

    async def drain(self) -> None:
        """Wait for dispatched triggers to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- Main loop --

    async def _tick_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception:
                log.exception("timer_tick_error")
            await asyncio.sleep(self.config.timer_tick_s)

    async def _fire_with_semaphore(self, timer: Timer) -> None:
        try:
            async with self._semaphore:
                tracker = await self.registry.get(timer.repo)
                done = await tracker.fire(timer.trigger, timer.payload)
            if done:
                await self.store.complete(timer.id)
            else:
                log.warning(
                    "trigger_deferred",
                    repo=timer.repo,
                    trigger=timer.trigger,
                    ref=timer.ref,
                    retry_in_s=self.config.timer_lease_s,
                )
        except Exception:
            log.exception("trigger_failed", repo=timer.repo, trigger=timer.trigger, ref=timer.ref)
