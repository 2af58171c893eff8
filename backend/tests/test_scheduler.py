"""
Overdue scan scheduler tests.
"""

import pytest
import asyncio

from redis.exceptions import ConnectionError as RedisConnectionError

from backend.app.services.scheduler import LEASE_KEY, OverdueScanScheduler


class SlowEngine:
    """Stands in for the lifecycle engine; each scan blocks until released."""

    def __init__(self):
        self.scans = 0
        self.release = asyncio.Event()

    async def scan(self):
        self.scans += 1
        await self.release.wait()


class CountingEngine:

    def __init__(self, error=None):
        self.scans = 0
        self.error = error

    async def scan(self):
        self.scans += 1
        if self.error:
            raise self.error


@pytest.mark.asyncio
async def test_tick_is_single_flight():
    engine = SlowEngine()
    scheduler = OverdueScanScheduler(engine, interval_seconds=60)

    first = asyncio.create_task(scheduler.tick())
    await asyncio.sleep(0)
    assert scheduler.scan_in_progress

    assert await scheduler.tick() is False

    engine.release.set()
    assert await first is True
    assert engine.scans == 1
    assert scheduler.scan_in_progress is False


@pytest.mark.asyncio
async def test_failing_scan_does_not_stop_later_ticks():
    engine = CountingEngine(error=RuntimeError("db down"))
    scheduler = OverdueScanScheduler(engine, interval_seconds=60)

    assert await scheduler.tick() is False
    assert scheduler.scan_in_progress is False
    assert await scheduler.tick() is False
    assert engine.scans == 2


@pytest.mark.asyncio
async def test_lease_held_elsewhere_skips_tick(mock_redis):
    engine = CountingEngine()
    await mock_redis.set(LEASE_KEY, "another-instance")
    scheduler = OverdueScanScheduler(engine, interval_seconds=60, redis=mock_redis)

    assert await scheduler.tick() is False
    assert engine.scans == 0
    assert await mock_redis.get(LEASE_KEY) == "another-instance"


@pytest.mark.asyncio
async def test_lease_is_released_after_scan(mock_redis):
    engine = CountingEngine()
    scheduler = OverdueScanScheduler(engine, interval_seconds=60, redis=mock_redis)

    assert await scheduler.tick() is True
    assert engine.scans == 1
    assert await mock_redis.get(LEASE_KEY) is None


@pytest.mark.asyncio
async def test_lease_taken_over_mid_scan_is_not_released(mock_redis):
    """The lease expired during a long scan and another instance took it."""

    class TakeoverEngine:
        async def scan(self):
            mock_redis.store[LEASE_KEY] = "another-instance"

    scheduler = OverdueScanScheduler(TakeoverEngine(), interval_seconds=60, redis=mock_redis)

    assert await scheduler.tick() is True
    assert await mock_redis.get(LEASE_KEY) == "another-instance"


@pytest.mark.asyncio
async def test_failing_scan_still_releases_lease(mock_redis):
    engine = CountingEngine(error=RuntimeError("db down"))
    scheduler = OverdueScanScheduler(engine, interval_seconds=60, redis=mock_redis)

    assert await scheduler.tick() is False
    assert await mock_redis.get(LEASE_KEY) is None


@pytest.mark.asyncio
async def test_redis_outage_falls_back_to_local_scan(mock_redis, mocker):
    engine = CountingEngine()
    mocker.patch.object(mock_redis, "set", side_effect=RedisConnectionError("refused"))
    mocker.patch.object(mock_redis, "eval", side_effect=RedisConnectionError("refused"))
    scheduler = OverdueScanScheduler(engine, interval_seconds=60, redis=mock_redis)

    assert await scheduler.tick() is True
    assert engine.scans == 1


@pytest.mark.asyncio
async def test_timer_fires_ticks_until_stopped():
    engine = CountingEngine()
    scheduler = OverdueScanScheduler(engine, interval_seconds=0.01)

    scheduler.start()
    assert scheduler.running
    await asyncio.sleep(0.1)
    await scheduler.stop()

    assert not scheduler.running
    assert engine.scans >= 2
    scans = engine.scans
    await asyncio.sleep(0.05)
    assert engine.scans == scans


@pytest.mark.asyncio
async def test_stop_waits_for_running_scan():
    engine = SlowEngine()
    scheduler = OverdueScanScheduler(engine, interval_seconds=0.01)

    scheduler.start()
    while engine.scans == 0:
        await asyncio.sleep(0.005)

    stopping = asyncio.create_task(scheduler.stop())
    await asyncio.sleep(0.02)
    assert not stopping.done()

    engine.release.set()
    await stopping
    assert engine.scans == 1


@pytest.mark.asyncio
async def test_scheduler_drives_real_overdue_scan(trip_engine, store, clock):
    from backend.app.models.trip_enums import TripStatus
    from backend.app.schemas.trip import TripStartRequest

    trip = await trip_engine.start_trip(1, TripStartRequest(destination="Gate", expected_duration_minutes=10))
    clock.advance(minutes=11)

    scheduler = OverdueScanScheduler(trip_engine, interval_seconds=60)
    assert await scheduler.tick() is True

    assert (await store.get_by_id(trip.id)).status == TripStatus.OVERDUE
