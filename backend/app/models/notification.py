"""
Trip notification database model.

One row per dispatch attempt, so every alert sent about a trip can be
audited and failed ones redelivered.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Enum
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.trip_enums import NotificationKind, NotificationChannel, NotificationStatus


class TripNotification(Base):
    __tablename__ = "trip_notifications"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    trip_id = Column(String(32), ForeignKey("trips.id"), nullable=False, index=True)
    trip_contact_id = Column(Integer, ForeignKey("trip_contacts.id"), nullable=True)  # NULL for the escalation desk
    recipient_name = Column(String(255), nullable=False)

    kind = Column(Enum(NotificationKind), nullable=False, index=True)
    channel = Column(Enum(NotificationChannel), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)

    status = Column(Enum(NotificationStatus), nullable=False, index=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<TripNotification(id={self.id}, trip={self.trip_id}, kind='{self.kind.value}', status='{self.status.value}')>"
