"""
Concurrency Tests.

Validates that racing transitions on the same trip have exactly one winner.
"""

import pytest
import asyncio
from datetime import timedelta

from backend.app.core.exceptions import ConcurrentModificationError, TripAlreadyTerminalError
from backend.app.models.trip import Trip
from backend.app.models.trip_enums import NotificationKind, TripStatus
from backend.app.schemas.trip import TripStartRequest

TRAVELER_ID = 1


async def start(trip_engine, contacts=()):
    return await trip_engine.start_trip(
        TRAVELER_ID,
        TripStartRequest(
            destination="Faculty of Law",
            expected_duration_minutes=10,
            trusted_contact_ids=[c.id for c in contacts],
        )
    )


@pytest.mark.asyncio
async def test_compare_and_swap_has_single_winner(trip_engine, store):
    """Two writers expecting ACTIVE: one swaps, the other sees None."""
    trip = await start(trip_engine)

    results = await asyncio.gather(
        store.compare_and_swap_status(trip.id, TripStatus.ACTIVE, TripStatus.COMPLETED),
        store.compare_and_swap_status(trip.id, TripStatus.ACTIVE, TripStatus.CANCELLED),
    )

    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert (await store.get_by_id(trip.id)).status == winners[0].status


@pytest.mark.asyncio
async def test_stale_compare_and_swap_is_rejected(trip_engine, store):
    trip = await start(trip_engine)
    await trip_engine.mark_arrived(TRAVELER_ID, trip.id)

    swapped = await store.compare_and_swap_status(trip.id, TripStatus.ACTIVE, TripStatus.OVERDUE)

    assert swapped is None
    assert (await store.get_by_id(trip.id)).status == TripStatus.COMPLETED


@pytest.mark.asyncio
@pytest.mark.parametrize("operation, final_status", [
    ("mark_arrived", TripStatus.COMPLETED),
    ("cancel_trip", TripStatus.CANCELLED),
])
async def test_traveler_racing_scan_alerts_at_most_once(
    trip_engine, store, clock, contacts, dispatcher, operation, final_status
):
    """Either the traveler acts first (no overdue alert) or the scan wins, never both half-applied."""
    trip = await start(trip_engine, contacts)
    clock.advance(minutes=11)

    scan_result, outcome = await asyncio.gather(
        trip_engine.scan(),
        getattr(trip_engine, operation)(TRAVELER_ID, trip.id),
        return_exceptions=True,
    )

    assert not isinstance(scan_result, Exception)
    assert not isinstance(outcome, Exception)
    assert (await store.get_by_id(trip.id)).status == final_status

    overdue_alerts = dispatcher.sent_of_kind(NotificationKind.TRIP_OVERDUE)
    if scan_result.transitioned:
        assert len(overdue_alerts) == 2
    else:
        assert overdue_alerts == []


@pytest.mark.asyncio
async def test_concurrent_scans_transition_once(trip_engine, store, clock, contacts, dispatcher):
    trip = await start(trip_engine, contacts)
    clock.advance(minutes=11)

    results = await asyncio.gather(trip_engine.scan(), trip_engine.scan())

    transitioned = [trip_id for r in results for trip_id in r.transitioned]
    assert transitioned == [trip.id]
    assert len(dispatcher.sent_of_kind(NotificationKind.TRIP_OVERDUE)) == 2
    assert (await store.get_by_id(trip.id)).status == TripStatus.OVERDUE


@pytest.mark.asyncio
async def test_concurrent_starts_leave_one_active_trip(trip_engine, session_factory):
    results = await asyncio.gather(
        start(trip_engine),
        start(trip_engine),
        start(trip_engine),
        return_exceptions=True,
    )

    for result in results:
        if isinstance(result, Exception):
            assert isinstance(result, (ConcurrentModificationError, TripAlreadyTerminalError))

    from sqlalchemy import select, func
    async with session_factory() as session:
        active = await session.scalar(
            select(func.count()).select_from(Trip).where(
                Trip.traveler_id == TRAVELER_ID,
                Trip.status == TripStatus.ACTIVE
            )
        )
    assert active == 1


@pytest.mark.asyncio
async def test_unique_index_rejects_second_active_trip(trip_engine, store, clock):
    first = await start(trip_engine)

    duplicate = Trip(
        traveler_id=TRAVELER_ID,
        destination="Somewhere else",
        status=TripStatus.ACTIVE,
        started_at=clock.now,
        expected_duration_minutes=10,
        expected_end_at=first.expected_end_at,
        check_in_interval_minutes=5,
    )
    with pytest.raises(ConcurrentModificationError):
        await store.create(duplicate, [])

    assert (await store.get_active_by_traveler(TRAVELER_ID)).id == first.id


@pytest.mark.asyncio
async def test_concurrent_extensions_both_apply(trip_engine, store):
    """Two extensions read the same deadline; the loser retries from the new one."""
    trip = await start(trip_engine)

    results = await asyncio.gather(
        trip_engine.extend_deadline(TRAVELER_ID, trip.id, additional_minutes=10),
        trip_engine.extend_deadline(TRAVELER_ID, trip.id, additional_minutes=10),
    )

    assert all(r.status == TripStatus.ACTIVE for r in results)
    stored = await store.get_by_id(trip.id)
    assert stored.expected_end_at == trip.expected_end_at + timedelta(minutes=20)


@pytest.mark.asyncio
async def test_stale_deadline_compare_and_swap_is_rejected(trip_engine, store):
    trip = await start(trip_engine)
    await trip_engine.extend_deadline(TRAVELER_ID, trip.id, additional_minutes=5)

    swapped = await store.compare_and_swap_status(
        trip.id, TripStatus.ACTIVE, TripStatus.ACTIVE,
        deadline_is=trip.expected_end_at,
        expected_end_at=trip.expected_end_at + timedelta(minutes=10),
    )

    assert swapped is None
    assert (await store.get_by_id(trip.id)).expected_end_at == trip.expected_end_at + timedelta(minutes=5)
