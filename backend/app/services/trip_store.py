"""
Trip store.

Persistence for guardian trips. Every method runs in its own short
transaction so that no lock is held while notifications go out.
Status changes go through compare_and_swap_status, which only writes
when the stored status still matches what the caller read.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.exceptions import ConcurrentModificationError
from backend.app.models.dlq import DeadLetterQueue
from backend.app.models.notification import TripNotification
from backend.app.models.trip import Trip
from backend.app.models.trip_contact import TripContact
from backend.app.models.trip_enums import TripStatus
from backend.app.models.trip_location import TripLocation
from backend.app.models.trusted_contact import TrustedContact


class TripStore:

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def create(self, trip: Trip, contacts: Sequence[TrustedContact]) -> Trip:
        """
        Insert a new trip with a snapshot of its trusted contacts.

        Raises:
            ConcurrentModificationError: if the traveler already has an
                ACTIVE trip (unique index on ACTIVE rows).
        """
        trip.trusted_contacts = [
            TripContact(
                position=position,
                contact_id=contact.id,
                name=contact.name,
                phone=contact.phone,
                email=contact.email,
                contact_user_id=contact.contact_user_id,
            )
            for position, contact in enumerate(contacts)
        ]

        async with self._session_factory() as session:
            session.add(trip)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ConcurrentModificationError() from exc

        return await self.get_by_id(trip.id)

    async def get_by_id(self, trip_id: str) -> Optional[Trip]:
        async with self._session_factory() as session:
            return await self._load(session, trip_id)

    async def get_active_by_traveler(self, traveler_id: int) -> Optional[Trip]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Trip).where(
                    Trip.traveler_id == traveler_id,
                    Trip.status == TripStatus.ACTIVE
                )
            )
            return result.scalar_one_or_none()

    async def list_open_by_traveler(self, traveler_id: int) -> List[Trip]:
        """ACTIVE and OVERDUE trips of a traveler, newest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Trip)
                .where(
                    Trip.traveler_id == traveler_id,
                    Trip.status.in_([TripStatus.ACTIVE, TripStatus.OVERDUE])
                )
                .order_by(Trip.started_at.desc())
            )
            return list(result.scalars().all())

    async def list_monitored_by(
        self,
        contact_user_id: int,
        status: Optional[TripStatus] = None,
        limit: int = 20,
        offset: int = 0
    ) -> List[Trip]:
        """Trips whose contact snapshot includes the given app user."""
        monitored = select(TripContact.trip_id).where(TripContact.contact_user_id == contact_user_id)
        stmt = select(Trip).where(Trip.id.in_(monitored))
        if status is not None:
            stmt = stmt.where(Trip.status == status)

        async with self._session_factory() as session:
            result = await session.execute(
                stmt.order_by(Trip.started_at.desc()).limit(limit).offset(offset)
            )
            return list(result.scalars().all())

    async def is_monitored_by(self, trip_id: str, contact_user_id: int) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TripContact.id).where(
                    TripContact.trip_id == trip_id,
                    TripContact.contact_user_id == contact_user_id
                ).limit(1)
            )
            return result.first() is not None

    async def list_by_traveler(self, traveler_id: int, limit: int = 20, offset: int = 0) -> List[Trip]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Trip)
                .where(Trip.traveler_id == traveler_id)
                .order_by(Trip.started_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    async def list_active_with_expired_deadline(self, now: datetime) -> List[Trip]:
        """ACTIVE trips whose deadline is strictly before now, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Trip)
                .where(
                    Trip.status == TripStatus.ACTIVE,
                    Trip.expected_end_at < now
                )
                .order_by(Trip.expected_end_at)
            )
            return list(result.scalars().all())

    async def compare_and_swap_status(
        self,
        trip_id: str,
        expected: TripStatus,
        new_status: TripStatus,
        *,
        deadline_before: Optional[datetime] = None,
        deadline_is: Optional[datetime] = None,
        **changes
    ) -> Optional[Trip]:
        """
        Set status (and any extra column changes) only if the stored status
        is still `expected`.

        Args:
            deadline_before: when given, the write also requires
                expected_end_at < deadline_before.
            deadline_is: when given, the write also requires
                expected_end_at to be unchanged since it was read.

        Returns:
            The updated trip, or None if the condition no longer held.
        """
        conditions = [Trip.id == trip_id, Trip.status == expected]
        if deadline_before is not None:
            conditions.append(Trip.expected_end_at < deadline_before)
        if deadline_is is not None:
            conditions.append(Trip.expected_end_at == deadline_is)

        stmt = (
            update(Trip)
            .where(*conditions)
            .values(status=new_status, **changes)
            .execution_options(synchronize_session=False)
        )

        async with self._session_factory() as session:
            try:
                result = await session.execute(stmt)
            except IntegrityError:
                # Re-entering ACTIVE while another trip holds the slot
                await session.rollback()
                return None

            if result.rowcount != 1:
                await session.rollback()
                return None

            trip = await self._load(session, trip_id)
            await session.commit()
            return trip

    async def append_route_sample(
        self,
        trip_id: str,
        latitude: float,
        longitude: float,
        recorded_at: datetime,
        accuracy_meters: Optional[float] = None,
        allowed_statuses: Iterable[TripStatus] = (TripStatus.ACTIVE, TripStatus.OVERDUE, TripStatus.EMERGENCY),
    ) -> Optional[TripLocation]:
        """
        Append a location sample to the trip route.

        Returns None when the trip is not in an allowed status or the
        sample is older than the newest stored one.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(Trip)
                .where(
                    Trip.id == trip_id,
                    Trip.status.in_(list(allowed_statuses)),
                    or_(Trip.last_location_at.is_(None), Trip.last_location_at <= recorded_at)
                )
                .values(last_location_at=recorded_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                return None

            location = TripLocation(
                trip_id=trip_id,
                latitude=latitude,
                longitude=longitude,
                accuracy_meters=accuracy_meters,
                recorded_at=recorded_at,
            )
            session.add(location)
            await session.commit()
            await session.refresh(location)
            return location

    async def list_route(self, trip_id: str) -> List[TripLocation]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TripLocation)
                .where(TripLocation.trip_id == trip_id)
                .order_by(TripLocation.recorded_at, TripLocation.id)
            )
            return list(result.scalars().all())

    async def get_trusted_contacts(self, owner_id: int, contact_ids: Sequence[int]) -> Dict[int, TrustedContact]:
        """Address book entries of owner_id among contact_ids, keyed by id."""
        if not contact_ids:
            return {}
        async with self._session_factory() as session:
            result = await session.execute(
                select(TrustedContact).where(
                    TrustedContact.owner_id == owner_id,
                    TrustedContact.id.in_(list(contact_ids))
                )
            )
            return {contact.id: contact for contact in result.scalars().all()}

    async def record_notifications(
        self,
        notifications: Sequence[TripNotification],
        dead_letters: Sequence[DeadLetterQueue] = ()
    ) -> None:
        async with self._session_factory() as session:
            session.add_all(list(notifications))
            session.add_all(list(dead_letters))
            await session.commit()

    async def list_notifications(self, trip_id: str) -> List[TripNotification]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TripNotification)
                .where(TripNotification.trip_id == trip_id)
                .order_by(TripNotification.id)
            )
            return list(result.scalars().all())

    @staticmethod
    async def _load(session: AsyncSession, trip_id: str) -> Optional[Trip]:
        result = await session.execute(
            select(Trip)
            .where(Trip.id == trip_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
