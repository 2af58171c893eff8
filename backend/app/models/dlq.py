"""
Dead letter queue for trip notifications.

One row per dispatch that failed or timed out, carrying enough payload
to send the same message again from an operator tool.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Enum, ForeignKey, Index
from sqlalchemy.sql import func
from backend.app.db.session import Base
import enum


class DLQStatus(str, enum.Enum):
    FAILED = "FAILED"  # Waiting for redelivery
    REDELIVERED = "REDELIVERED"
    DISCARDED = "DISCARDED"  # Trip ended before anyone resent it


class DeadLetterQueue(Base):
    __tablename__ = "dead_letter_queue"
    __table_args__ = (
        Index("ix_dead_letter_queue_status_created_at", "status", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    task_name = Column(String(100), nullable=False, index=True)
    trip_id = Column(String(32), ForeignKey("trips.id"), nullable=True, index=True)

    error_message = Column(Text, nullable=False)
    payload = Column(JSON, nullable=True)

    status = Column(Enum(DLQStatus), default=DLQStatus.FAILED, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_retry_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<DeadLetterQueue(id={self.id}, trip_id={self.trip_id}, status='{self.status.value}')>"
