"""
Route samples of a guardian trip.

Append-only. Samples arrive in chronological order per trip; the trip's
last_location_at column is the guard that keeps it that way.
"""

from sqlalchemy import Column, Integer, String, Float, ForeignKey, DateTime, Index
from sqlalchemy.sql import func
from backend.app.db.session import Base


class TripLocation(Base):
    __tablename__ = "trip_locations"
    __table_args__ = (
        Index("ix_trip_locations_trip_recorded_at", "trip_id", "recorded_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    trip_id = Column(String(32), ForeignKey("trips.id"), nullable=False)

    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy_meters = Column(Float, nullable=True)

    recorded_at = Column(DateTime, nullable=False)  # Device time, naive UTC
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<TripLocation(trip_id={self.trip_id}, recorded_at={self.recorded_at})>"
