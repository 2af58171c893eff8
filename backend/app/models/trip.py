"""
Guardian trip database model.

A trip (escort session) is started by a traveler heading to a destination
with a deadline. Trips are never deleted; terminal rows stay for audit.
"""

import uuid

from sqlalchemy import Column, Integer, String, Text, Float, DateTime, Enum, Index, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.trip_enums import TripStatus


def _new_trip_id() -> str:
    return uuid.uuid4().hex


class Trip(Base):
    """
    Trip model.

    expected_end_at is the deadline the overdue scan compares against.
    It only moves on check-in or deadline extension, never on location
    updates.
    """
    __tablename__ = "trips"
    __table_args__ = (
        # At most one ACTIVE trip per traveler
        Index(
            "uq_trips_active_traveler",
            "traveler_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
        Index("ix_trips_status_expected_end_at", "status", "expected_end_at"),
    )

    id = Column(String(32), primary_key=True, default=_new_trip_id)

    # Owner
    traveler_id = Column(Integer, nullable=False, index=True)

    # Destination
    destination = Column(String(255), nullable=False)
    destination_latitude = Column(Float, nullable=True)
    destination_longitude = Column(Float, nullable=True)
    notes = Column(Text, nullable=True)

    # Deadline contract
    started_at = Column(DateTime, nullable=False)
    expected_duration_minutes = Column(Integer, nullable=False)
    expected_end_at = Column(DateTime, nullable=False)
    check_in_interval_minutes = Column(Integer, nullable=False)
    last_check_in_at = Column(DateTime, nullable=True)

    # Status
    status = Column(Enum(TripStatus), default=TripStatus.ACTIVE, nullable=False, index=True)
    alerted_at = Column(DateTime, nullable=True)
    emergency_reason = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    # Timestamp of the newest route sample, keeps the route ordered
    last_location_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    trusted_contacts = relationship(
        "TripContact",
        order_by="TripContact.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<Trip(id={self.id}, traveler_id={self.traveler_id}, status='{self.status.value}')>"
