"""
Background delivery scheduler.

Runs the webhook delivery worker on a recurring schedule inside the API
process. Each loop iteration:
  1. hands deliveries stuck in DELIVERING (crashed worker) back to the retry queue
  2. runs one delivery pass (pending + due retries)
  3. at most once per hour, purges terminal deliveries past retention

Key features:
- Polling, not push: trigger() wakes the loop early after new events
- A failing pass is logged and the loop keeps going
- Graceful shutdown: the in-flight pass finishes before the loop exits
- Safe to run in several processes; the worker claims rows atomically
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import structlog

from src.services.webhook_delivery import DeliveryPassResult, DeliveryWorker

log = structlog.get_logger(__name__)

PURGE_INTERVAL = timedelta(hours=1)


class DeliveryScheduler:
    """
    Periodic driver for DeliveryWorker passes.

    Example usage:
        scheduler = DeliveryScheduler(worker, interval_seconds=5)
        await scheduler.start()
        ...
        scheduler.trigger()        # run the next pass now
        await scheduler.shutdown()
    """

    def __init__(
        self,
        worker: DeliveryWorker,
        *,
        interval_seconds: float = 5.0,
        retention_days: int = 30,
        stale_after_seconds: int = 300,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            worker: The delivery worker to drive
            interval_seconds: Sleep between passes
            retention_days: Terminal deliveries older than this are purged
            stale_after_seconds: DELIVERING rows older than this are requeued
        """
        self._worker = worker
        self._interval = interval_seconds
        self._retention = timedelta(days=retention_days)
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._wakeup = asyncio.Event()
        self._shutdown_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._last_purge: datetime | None = None
        self._passes = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def passes(self) -> int:
        return self._passes

    async def start(self) -> None:
        """Start the polling loop."""
        if self.running:
            log.warning("delivery_scheduler.already_running")
            return

        self._shutdown_event.clear()
        self._task = asyncio.create_task(self._loop(), name="webhook-delivery-scheduler")
        log.info("delivery_scheduler.started", interval_seconds=self._interval)

    async def shutdown(self, *, timeout: float = 30.0) -> None:
        """
        Stop the loop, letting the current pass finish.

        Args:
            timeout: Seconds to wait for the in-flight pass before cancelling it
        """
        if self._task is None:
            return

        log.info("delivery_scheduler.shutdown_initiated")
        self._shutdown_event.set()
        self._wakeup.set()

        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except TimeoutError:
            log.warning("delivery_scheduler.shutdown_timeout", timeout=timeout)
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)

        self._task = None
        log.info("delivery_scheduler.shutdown_complete", passes=self._passes)

    def trigger(self) -> None:
        """Wake the loop so the next pass runs immediately."""
        self._wakeup.set()

    async def run_once(self, now: datetime | None = None) -> DeliveryPassResult:
        """Recover stale rows, run one pass, purge if due."""
        now = now or datetime.now(UTC)

        await self._worker.recover_stale_deliveries(self._stale_after, now=now)
        result = await self._worker.process_pending_deliveries(now=now)

        if self._last_purge is None or now - self._last_purge >= PURGE_INTERVAL:
            await self._worker.purge_old_deliveries(self._retention, now=now)
            self._last_purge = now

        self._passes += 1
        return result

    async def _loop(self) -> None:
        log.info("delivery_scheduler.loop_started")

        while not self._shutdown_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                log.error(
                    "delivery_scheduler.pass_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=True,
                )

            if self._shutdown_event.is_set():
                break

            try:
                # Wait for the interval or an explicit trigger
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._interval)
            except TimeoutError:
                pass
            self._wakeup.clear()

        log.info("delivery_scheduler.loop_stopped")
