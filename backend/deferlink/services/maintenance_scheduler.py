"""Maintenance scheduler.

WHAT:
    Background loops started with the application:
    - Expiry sweep of the referral store (every CLEANUP_INTERVAL_HOURS, default daily)
    - Rate limiter cleanup of idle keys (every RATE_LIMIT_CLEANUP_SECONDS, default 5 min)

WHY:
    Expired records stay readable on disk until swept, and idle rate-limit
    keys would otherwise accumulate forever.

HOW:
    Each job is an asyncio task that sleeps, then runs the job in a worker
    thread (`asyncio.to_thread`) so the file rewrite never blocks the event
    loop. A failing run is logged and reported; the loop keeps going.

REFERENCES:
    - deferlink/main.py (startup/shutdown hooks)
    - deferlink/services/referral_store.py (sweep_expired)
    - deferlink/services/rate_limiter.py (cleanup)
"""

import asyncio
import logging
from typing import Callable, List, Optional

from ..telemetry import capture_exception
from .referral_store import ReferralStore

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """
    Runs the periodic store sweep and limiter cleanup.

    USAGE:
        scheduler = MaintenanceScheduler(store, limiter, retention_days=30)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        store: ReferralStore,
        limiter,
        retention_days: int,
        sweep_interval_seconds: float = 24 * 60 * 60,
        limiter_cleanup_seconds: float = 300,
    ):
        self.store = store
        self.limiter = limiter
        self.retention_days = retention_days
        self.sweep_interval_seconds = sweep_interval_seconds
        self.limiter_cleanup_seconds = limiter_cleanup_seconds
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def sweep_store(self) -> int:
        """One expiry sweep. Returns the number of deleted records."""
        try:
            return self.store.sweep_expired(self.retention_days)
        except Exception as e:
            logger.error(f"[SCHEDULER] Expiry sweep failed: {e}")
            capture_exception(e, extra={"operation": "expiry_sweep", "path": str(self.store.path)})
            return 0

    def cleanup_limiter(self) -> int:
        """One limiter cleanup pass. Returns the number of evicted keys."""
        try:
            return self.limiter.cleanup()
        except Exception as e:
            logger.error(f"[SCHEDULER] Rate limiter cleanup failed: {e}")
            capture_exception(e, extra={"operation": "rate_limiter_cleanup"})
            return 0

    async def _run_every(self, name: str, interval: float, job: Callable[[], int]) -> None:
        logger.info(f"[SCHEDULER] {name} every {interval}s")
        while True:
            await asyncio.sleep(interval)
            result = await asyncio.to_thread(job)
            logger.debug(f"[SCHEDULER] {name} run finished: {result}")

    async def start(self) -> None:
        if self.running:
            return
        # Sweep once at startup so records expired while the process was down go away
        await asyncio.to_thread(self.sweep_store)
        self._tasks = [
            asyncio.create_task(
                self._run_every("expiry_sweep", self.sweep_interval_seconds, self.sweep_store)
            ),
            asyncio.create_task(
                self._run_every("rate_limiter_cleanup", self.limiter_cleanup_seconds, self.cleanup_limiter)
            ),
        ]

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("[SCHEDULER] Stopped maintenance loops")
