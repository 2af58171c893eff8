"""
Guardian trip lifecycle engine.

State machine for guardian trips:

    ACTIVE --scan, deadline passed--> OVERDUE --check-in--> ACTIVE
    ACTIVE/OVERDUE --report unsafe--> EMERGENCY
    ACTIVE/OVERDUE --arrive--> COMPLETED
    ACTIVE/OVERDUE --cancel / new trip--> CANCELLED

Every status change is a compare-and-swap on the stored status, so a
check-in racing the overdue scan has exactly one winner. Notifications go
out after the change is committed and only from the winner, which is what
keeps contacts from being alerted twice for the same transition.
"""

import logging
import math
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from backend.app.core.clock import Clock, to_naive_utc, utcnow
from backend.app.core.config import settings
from backend.app.core.exceptions import (
    ConcurrentModificationError,
    InvalidTripParametersError,
    ResourceNotFoundError,
    TripAlreadyTerminalError,
    UnauthorizedTripAccessError,
)
from backend.app.db.session import AsyncSessionLocal
from backend.app.models.notification import TripNotification
from backend.app.models.trip import Trip
from backend.app.models.trip_enums import NotificationKind, TripStatus
from backend.app.models.trip_location import TripLocation
from backend.app.models.trusted_contact import TrustedContact
from backend.app.schemas.trip import LocationSample, ScanResult, TripStartRequest
from backend.app.services.notification_dispatcher import get_dispatcher
from backend.app.services.notification_service import TripNotifier, escalation_contact
from backend.app.services.trip_store import TripStore

logger = logging.getLogger(__name__)

# Given the freshly read trip and the current time, return the target
# status and column changes, or raise to reject the operation.
Decision = Callable[[Trip, datetime], Tuple[TripStatus, Dict]]


class TripLifecycleEngine:

    def __init__(
        self,
        store: TripStore,
        notifier: TripNotifier,
        clock: Clock = utcnow,
        max_retries: int = settings.cas_max_retries,
        default_check_in_interval_minutes: int = settings.default_check_in_interval_minutes,
        max_trip_duration_minutes: int = settings.max_trip_duration_minutes,
    ):
        self._store = store
        self._notifier = notifier
        self._clock = clock
        self._max_retries = max_retries
        self._default_interval = default_check_in_interval_minutes
        self._max_duration = max_trip_duration_minutes

    # ------------------------------------------------------------------
    # Traveler operations
    # ------------------------------------------------------------------

    async def start_trip(self, traveler_id: int, request: TripStartRequest) -> Trip:
        """
        Start a trip, cancelling any trip the traveler still has open.

        Raises:
            InvalidTripParametersError: bad deadline, destination or contacts
            ConcurrentModificationError: another start kept winning the race
        """
        now = self._clock()
        fields = self._validate_start(request, now)
        contacts = await self._resolve_contacts(traveler_id, request.trusted_contact_ids)

        for attempt in range(self._max_retries + 1):
            await self._close_open_trips(traveler_id)

            trip = Trip(
                traveler_id=traveler_id,
                status=TripStatus.ACTIVE,
                started_at=now,
                **fields
            )
            try:
                trip = await self._store.create(trip, contacts)
            except ConcurrentModificationError:
                logger.info("Traveler %s start raced another trip (attempt %d)", traveler_id, attempt + 1)
                continue

            logger.info(
                "Trip %s started by traveler %s, due %s",
                trip.id, traveler_id, trip.expected_end_at.isoformat()
            )
            await self._notify(trip, NotificationKind.TRIP_STARTED)
            return trip

        raise ConcurrentModificationError()

    async def check_in(
        self,
        traveler_id: int,
        trip_id: str,
        new_expected_end_at: Optional[datetime] = None
    ) -> Trip:
        """
        Confirm the traveler is safe.

        On an overdue trip (or an active one whose deadline already passed)
        the deadline restarts: the explicit new deadline if given, else now
        plus the trip's original duration.
        """
        explicit_deadline = to_naive_utc(new_expected_end_at)

        def decide(trip: Trip, now: datetime):
            self._ensure_open(trip)
            changes = {"last_check_in_at": now}

            if explicit_deadline is not None:
                if explicit_deadline <= now:
                    raise InvalidTripParametersError("New deadline must be in the future")
                self._check_horizon(explicit_deadline - now)
                changes["expected_end_at"] = explicit_deadline
            elif trip.status == TripStatus.OVERDUE or trip.expected_end_at <= now:
                changes["expected_end_at"] = now + timedelta(minutes=trip.expected_duration_minutes)

            if trip.status == TripStatus.OVERDUE:
                changes["alerted_at"] = None
            return TripStatus.ACTIVE, changes

        previous, trip = await self._transition(traveler_id, trip_id, decide)
        if previous == TripStatus.OVERDUE:
            logger.info("Trip %s checked in late, back to ACTIVE until %s", trip.id, trip.expected_end_at.isoformat())
        return trip

    async def extend_deadline(
        self,
        traveler_id: int,
        trip_id: str,
        additional_minutes: Optional[int] = None,
        new_expected_end_at: Optional[datetime] = None
    ) -> Trip:
        """
        Move the deadline, either by additional_minutes (counted from the
        current deadline, or from now if that already passed) or to an
        explicit time. Counts as a check-in.
        """
        if (additional_minutes is None) == (new_expected_end_at is None):
            raise InvalidTripParametersError("Provide either additional_minutes or new_expected_end_at")
        if additional_minutes is not None and additional_minutes <= 0:
            raise InvalidTripParametersError(
                "additional_minutes must be positive",
                details={"additional_minutes": additional_minutes}
            )
        if additional_minutes is not None and additional_minutes > self._max_duration:
            raise InvalidTripParametersError(
                f"additional_minutes must be at most {self._max_duration}",
                details={"additional_minutes": additional_minutes}
            )
        explicit_deadline = to_naive_utc(new_expected_end_at)

        def decide(trip: Trip, now: datetime):
            self._ensure_open(trip)
            if explicit_deadline is not None:
                if explicit_deadline <= now:
                    raise InvalidTripParametersError("New deadline must be in the future")
                deadline = explicit_deadline
            else:
                deadline = max(now, trip.expected_end_at) + timedelta(minutes=additional_minutes)
            self._check_horizon(deadline - now)

            changes = {"expected_end_at": deadline, "last_check_in_at": now}
            if trip.status == TripStatus.OVERDUE:
                changes["alerted_at"] = None
            return TripStatus.ACTIVE, changes

        _, trip = await self._transition(traveler_id, trip_id, decide)
        logger.info("Trip %s deadline extended to %s", trip.id, trip.expected_end_at.isoformat())
        return trip

    async def report_unsafe(self, traveler_id: int, trip_id: str, reason: Optional[str] = None) -> Trip:
        """Raise an emergency. Contacts and the escalation desk are alerted before returning."""

        def decide(trip: Trip, now: datetime):
            self._ensure_open(trip)
            return TripStatus.EMERGENCY, {"alerted_at": now, "emergency_reason": reason}

        _, trip = await self._transition(traveler_id, trip_id, decide)
        logger.warning("Trip %s EMERGENCY reported by traveler %s", trip.id, traveler_id)
        await self._notify(trip, NotificationKind.TRIP_EMERGENCY, escalate=True)
        return trip

    async def mark_arrived(self, traveler_id: int, trip_id: str) -> Trip:

        def decide(trip: Trip, now: datetime):
            self._ensure_open(trip)
            return TripStatus.COMPLETED, {"completed_at": now}

        _, trip = await self._transition(traveler_id, trip_id, decide)
        logger.info("Trip %s completed", trip.id)
        await self._notify(trip, NotificationKind.TRIP_ARRIVED)
        return trip

    async def cancel_trip(self, traveler_id: int, trip_id: str) -> Trip:

        def decide(trip: Trip, now: datetime):
            self._ensure_open(trip)
            return TripStatus.CANCELLED, {"cancelled_at": now}

        _, trip = await self._transition(traveler_id, trip_id, decide)
        logger.info("Trip %s cancelled", trip.id)
        return trip

    async def append_location_sample(self, traveler_id: int, trip_id: str, sample: LocationSample) -> TripLocation:
        """Add a point to the route. Never touches status or deadline."""
        trip = await self._load_owned(traveler_id, trip_id)
        if trip.status.is_terminal:
            raise TripAlreadyTerminalError(trip.id, trip.status.value)

        recorded_at = to_naive_utc(sample.recorded_at) or self._clock()
        location = await self._store.append_route_sample(
            trip.id,
            latitude=sample.latitude,
            longitude=sample.longitude,
            recorded_at=recorded_at,
            accuracy_meters=sample.accuracy_meters,
        )
        if location is not None:
            return location

        current = await self._store.get_by_id(trip.id)
        if current.status.is_terminal:
            raise TripAlreadyTerminalError(current.id, current.status.value)
        raise InvalidTripParametersError(
            "Location samples must be in chronological order",
            details={"recorded_at": recorded_at.isoformat(), "last_recorded_at": current.last_location_at.isoformat()}
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_trip(self, user_id: int, trip_id: str) -> Trip:
        """Readable by the traveler and by anyone the trip notifies in-app."""
        return await self._load_visible(user_id, trip_id)

    async def get_active_trip(self, traveler_id: int) -> Optional[Trip]:
        return await self._store.get_active_by_traveler(traveler_id)

    async def get_open_trip(self, traveler_id: int) -> Optional[Trip]:
        """The traveler's ACTIVE or OVERDUE trip, the one they can still check in on."""
        trips = await self._store.list_open_by_traveler(traveler_id)
        return trips[0] if trips else None

    async def list_trips(self, traveler_id: int, limit: int = 20, offset: int = 0) -> List[Trip]:
        return await self._store.list_by_traveler(traveler_id, limit=limit, offset=offset)

    async def list_monitored_trips(
        self,
        user_id: int,
        status: Optional[TripStatus] = None,
        limit: int = 20,
        offset: int = 0
    ) -> List[Trip]:
        """Trips of other travelers that list user_id as a trusted contact, newest first."""
        return await self._store.list_monitored_by(user_id, status=status, limit=limit, offset=offset)

    async def get_route(self, user_id: int, trip_id: str) -> List[TripLocation]:
        trip = await self._load_visible(user_id, trip_id)
        return await self._store.list_route(trip.id)

    async def get_notifications(self, traveler_id: int, trip_id: str) -> List[TripNotification]:
        trip = await self._load_owned(traveler_id, trip_id)
        return await self._store.list_notifications(trip.id)

    # ------------------------------------------------------------------
    # Overdue sweep
    # ------------------------------------------------------------------

    async def scan(self) -> ScanResult:
        """
        Move every ACTIVE trip past its deadline to OVERDUE and alert its
        contacts. Trips already OVERDUE are not candidates, so repeated
        scans never alert twice. A lost compare-and-swap means someone else
        resolved the trip first; it is skipped, not retried.
        """
        now = self._clock()
        result = ScanResult(scanned_at=now)

        candidates = await self._store.list_active_with_expired_deadline(now)
        result.candidates = len(candidates)

        for candidate in candidates:
            try:
                trip = await self._store.compare_and_swap_status(
                    candidate.id,
                    TripStatus.ACTIVE,
                    TripStatus.OVERDUE,
                    deadline_before=now,
                    alerted_at=now,
                )
            except SQLAlchemyError:
                logger.exception("Overdue transition failed for trip %s", candidate.id)
                result.failed.append(candidate.id)
                continue

            if trip is None:
                logger.info("Trip %s changed before it could be marked overdue, skipping", candidate.id)
                result.skipped.append(candidate.id)
                continue

            logger.warning(
                "Trip %s for traveler %s is OVERDUE (due %s)",
                trip.id, trip.traveler_id, trip.expected_end_at.isoformat()
            )
            result.transitioned.append(trip.id)
            await self._notify(trip, NotificationKind.TRIP_OVERDUE)

        if result.candidates:
            logger.info(
                "Overdue scan: %d candidates, %d overdue, %d skipped, %d failed",
                result.candidates, len(result.transitioned), len(result.skipped), len(result.failed)
            )
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _validate_start(self, request: TripStartRequest, now: datetime) -> Dict:
        destination = (request.destination or "").strip()
        if not destination:
            raise InvalidTripParametersError("destination is required")

        duration = request.expected_duration_minutes
        end_at = to_naive_utc(request.expected_end_at)
        if (duration is None) == (end_at is None):
            raise InvalidTripParametersError(
                "Provide exactly one of expected_duration_minutes or expected_end_at"
            )

        if duration is not None:
            if duration <= 0:
                raise InvalidTripParametersError(
                    "expected_duration_minutes must be positive",
                    details={"expected_duration_minutes": duration}
                )
            if duration > self._max_duration:
                raise InvalidTripParametersError(
                    f"expected_duration_minutes must be at most {self._max_duration}",
                    details={"expected_duration_minutes": duration}
                )
            end_at = now + timedelta(minutes=duration)
        else:
            if end_at <= now:
                raise InvalidTripParametersError("expected_end_at must be in the future")
            self._check_horizon(end_at - now)
            duration = math.ceil((end_at - now).total_seconds() / 60)

        interval = request.check_in_interval_minutes
        if interval is None:
            interval = self._default_interval
        if interval <= 0:
            raise InvalidTripParametersError(
                "check_in_interval_minutes must be positive",
                details={"check_in_interval_minutes": interval}
            )

        return {
            "destination": destination,
            "destination_latitude": request.destination_latitude,
            "destination_longitude": request.destination_longitude,
            "notes": request.notes,
            "expected_duration_minutes": duration,
            "expected_end_at": end_at,
            "check_in_interval_minutes": interval,
        }

    async def _resolve_contacts(self, traveler_id: int, contact_ids: Sequence[int]) -> List[TrustedContact]:
        """Look up the traveler's own contacts, in request order, without duplicates."""
        ordered_ids = list(dict.fromkeys(contact_ids))
        found = await self._store.get_trusted_contacts(traveler_id, ordered_ids)

        missing = [contact_id for contact_id in ordered_ids if contact_id not in found]
        if missing:
            raise InvalidTripParametersError(
                "Unknown trusted contacts",
                details={"contact_ids": missing}
            )

        return [found[contact_id] for contact_id in ordered_ids if found[contact_id].notifications_enabled]

    async def _close_open_trips(self, traveler_id: int) -> None:
        for trip in await self._store.list_open_by_traveler(traveler_id):
            try:
                await self.cancel_trip(traveler_id, trip.id)
            except TripAlreadyTerminalError:
                # Finished or escalated in the meantime, no longer open
                continue
            logger.info("Trip %s replaced by a new trip of traveler %s", trip.id, traveler_id)

    async def _load_owned(self, traveler_id: int, trip_id: str) -> Trip:
        trip = await self._store.get_by_id(trip_id)
        if trip is None:
            raise ResourceNotFoundError("Trip", trip_id)
        if trip.traveler_id != traveler_id:
            raise UnauthorizedTripAccessError(trip_id)
        return trip

    async def _load_visible(self, user_id: int, trip_id: str) -> Trip:
        trip = await self._store.get_by_id(trip_id)
        if trip is None:
            raise ResourceNotFoundError("Trip", trip_id)
        if trip.traveler_id != user_id and not await self._store.is_monitored_by(trip.id, user_id):
            raise UnauthorizedTripAccessError(trip_id)
        return trip

    def _check_horizon(self, remaining: timedelta) -> None:
        if remaining > timedelta(minutes=self._max_duration):
            raise InvalidTripParametersError(
                f"Deadline must be at most {self._max_duration} minutes away",
                details={"max_trip_duration_minutes": self._max_duration}
            )

    @staticmethod
    def _ensure_open(trip: Trip) -> None:
        # EMERGENCY waits for a responder; the traveler can no longer change it
        if not trip.status.is_open:
            raise TripAlreadyTerminalError(trip.id, trip.status.value)

    async def _transition(self, traveler_id: int, trip_id: str, decide: Decision) -> Tuple[TripStatus, Trip]:
        """
        Read, decide, compare-and-swap; re-read and retry on a lost race.
        The swap also requires the deadline that was read, so two
        extensions computed from the same deadline cannot both land.

        Returns:
            (status before the change, updated trip)
        """
        for attempt in range(self._max_retries + 1):
            trip = await self._load_owned(traveler_id, trip_id)
            new_status, changes = decide(trip, self._clock())

            updated = await self._store.compare_and_swap_status(
                trip.id, trip.status, new_status, deadline_is=trip.expected_end_at, **changes
            )
            if updated is not None:
                return trip.status, updated

            logger.info("Trip %s changed concurrently (attempt %d)", trip_id, attempt + 1)

        raise ConcurrentModificationError(trip_id)

    async def _notify(self, trip: Trip, kind: NotificationKind, escalate: bool = False) -> None:
        try:
            await self._notifier.notify(trip, kind, escalate=escalate)
        except SQLAlchemyError:
            logger.exception("Could not record %s notifications for trip %s", kind.value, trip.id)


def build_trip_engine(session_factory=AsyncSessionLocal, clock: Clock = utcnow) -> TripLifecycleEngine:
    store = TripStore(session_factory)
    notifier = TripNotifier(
        get_dispatcher(),
        store,
        timeout_seconds=settings.notification_timeout_seconds,
        escalation=escalation_contact(),
    )
    return TripLifecycleEngine(store, notifier, clock=clock)


@lru_cache(maxsize=1)
def get_trip_engine() -> TripLifecycleEngine:
    """FastAPI dependency; one engine per process."""
    return build_trip_engine()
