"""
Guardian trip enumerations.
"""

import enum


class TripStatus(str, enum.Enum):
    """Trip status enumeration."""
    ACTIVE = "ACTIVE"  # Traveler is on the way
    OVERDUE = "OVERDUE"  # Deadline passed without check-in, contacts alerted
    EMERGENCY = "EMERGENCY"  # Traveler reported unsafe, needs a responder
    COMPLETED = "COMPLETED"  # Traveler arrived
    CANCELLED = "CANCELLED"  # Ended by the traveler or replaced by a new trip

    @property
    def is_terminal(self) -> bool:
        return self in (TripStatus.COMPLETED, TripStatus.CANCELLED)

    @property
    def is_open(self) -> bool:
        """ACTIVE or OVERDUE: the traveler can still act on the trip."""
        return self in (TripStatus.ACTIVE, TripStatus.OVERDUE)


class NotificationKind(str, enum.Enum):
    """Which transition a contact notification is about."""
    TRIP_STARTED = "TRIP_STARTED"
    TRIP_OVERDUE = "TRIP_OVERDUE"
    TRIP_EMERGENCY = "TRIP_EMERGENCY"
    TRIP_ARRIVED = "TRIP_ARRIVED"


class NotificationChannel(str, enum.Enum):
    """Delivery channel for a contact notification."""
    PUSH = "PUSH"
    EMAIL = "EMAIL"
    SMS = "SMS"


class NotificationStatus(str, enum.Enum):
    SENT = "SENT"
    FAILED = "FAILED"
