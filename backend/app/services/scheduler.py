"""
Overdue scan scheduler.

Fires TripLifecycleEngine.scan() on a fixed interval. Ticks are
single-flight: while a scan runs, further ticks are skipped instead of
queued, so two sweeps never race each other. With several application
instances a short Redis lease keeps the sweep to one instance per tick.
"""

import asyncio
import logging
import uuid
from typing import Optional, Set

from redis.exceptions import RedisError

from backend.app.services.trip_engine import TripLifecycleEngine

logger = logging.getLogger(__name__)

LEASE_KEY = "guardian:overdue-scan:lease"

# Delete the lease only while it still holds this instance's token
RELEASE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


class OverdueScanScheduler:

    def __init__(self, engine: TripLifecycleEngine, interval_seconds: float = 60, redis=None):
        self._engine = engine
        self._interval = interval_seconds
        self._redis = redis
        self._instance_id = uuid.uuid4().hex
        self.scan_in_progress = False
        self._timer: Optional[asyncio.Task] = None
        self._ticks: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def start(self) -> None:
        if self.running:
            return
        self._timer = asyncio.create_task(self._run(), name="overdue-scan-timer")
        logger.info("Overdue scan scheduler started (every %ss)", self._interval)

    async def stop(self) -> None:
        """Stop the timer and let an in-flight scan finish."""
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
        if self._ticks:
            await asyncio.gather(*self._ticks, return_exceptions=True)
        logger.info("Overdue scan scheduler stopped")

    async def tick(self) -> bool:
        """
        Run one scan unless one is already running.

        Returns:
            True if a scan completed, False if the tick was skipped or the
            scan failed
        """
        if self.scan_in_progress:
            logger.warning("Previous overdue scan still running, skipping tick")
            return False

        self.scan_in_progress = True
        try:
            if not await self._acquire_lease():
                logger.debug("Overdue scan lease held by another instance, skipping tick")
                return False
            try:
                await self._engine.scan()
            finally:
                await self._release_lease()
        except Exception:
            # Next tick tries again
            logger.exception("Overdue scan failed")
            return False
        finally:
            self.scan_in_progress = False
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            # Each tick runs as its own task so a slow scan does not delay the timer
            task = asyncio.create_task(self.tick())
            self._ticks.add(task)
            task.add_done_callback(self._ticks.discard)

    async def _acquire_lease(self) -> bool:
        if self._redis is None:
            return True
        try:
            acquired = await self._redis.set(
                LEASE_KEY, self._instance_id, nx=True, ex=max(1, int(self._interval))
            )
        except RedisError:
            logger.warning("Redis unavailable, relying on local single-flight for overdue scan")
            return True
        return bool(acquired)

    async def _release_lease(self) -> None:
        if self._redis is None:
            return
        try:
            # Atomic so a lease that expired and was taken over is left alone
            await self._redis.eval(RELEASE_SCRIPT, 1, LEASE_KEY, self._instance_id)
        except RedisError:
            logger.warning("Could not release overdue scan lease, it will expire")
