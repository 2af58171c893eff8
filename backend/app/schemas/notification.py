"""
Notification schemas.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Optional, Dict, Any, List

from backend.app.models.trip_enums import NotificationKind, NotificationChannel, NotificationStatus


class ContactRef(BaseModel):
    """Who a dispatcher delivers to. Built from a trip contact snapshot."""
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    contact_user_id: Optional[int] = None
    trip_contact_id: Optional[int] = None

    def channels(self) -> List[NotificationChannel]:
        """Channels this contact can be reached on, in delivery order."""
        channels = []
        if self.contact_user_id is not None:
            channels.append(NotificationChannel.PUSH)
        if self.phone:
            channels.append(NotificationChannel.SMS)
        if self.email:
            channels.append(NotificationChannel.EMAIL)
        return channels


class NotificationMessage(BaseModel):
    kind: NotificationKind
    title: str
    body: str
    trip_id: str
    metadata: Dict[str, Any] = {}


class TripNotificationResponse(BaseModel):
    id: int
    trip_contact_id: Optional[int]
    recipient_name: str
    kind: NotificationKind
    channel: NotificationChannel
    title: str
    message: str
    status: NotificationStatus
    error_message: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True
