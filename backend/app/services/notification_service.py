"""
Trip notification service.

Fans a trip transition out to the trip's trusted contacts. Delivery is
best-effort: every attempt is recorded, failures are parked in the dead
letter queue, and nothing here can undo the transition that triggered it.
"""

import asyncio
import logging
from typing import List, Optional, Tuple

from backend.app.core.config import settings
from backend.app.core.exceptions import NotificationDeliveryFailed
from backend.app.models.dlq import DeadLetterQueue, DLQStatus
from backend.app.models.notification import TripNotification
from backend.app.models.trip import Trip
from backend.app.models.trip_enums import NotificationChannel, NotificationKind, NotificationStatus
from backend.app.schemas.notification import ContactRef, NotificationMessage
from backend.app.services.notification_dispatcher import NotificationDispatcher
from backend.app.services.trip_store import TripStore

logger = logging.getLogger(__name__)

DLQ_TASK_NAME = "trip_notification"

TIME_FORMAT = "%H:%M UTC"


def build_message(trip: Trip, kind: NotificationKind) -> NotificationMessage:
    """Text for a transition, addressed to the trip's trusted contacts."""
    deadline = trip.expected_end_at.strftime(TIME_FORMAT)

    if kind == NotificationKind.TRIP_STARTED:
        title = "Guardian trip started"
        body = (
            f"Someone who trusts you started a Guardian trip to {trip.destination}. "
            f"Expected arrival: {deadline}. You will be alerted if they do not check in."
        )
    elif kind == NotificationKind.TRIP_OVERDUE:
        title = "Guardian alert: traveler overdue"
        body = (
            f"The traveler did not arrive at {trip.destination} by {deadline} "
            f"and has not checked in. Please try to reach them."
        )
    elif kind == NotificationKind.TRIP_EMERGENCY:
        title = "EMERGENCY: traveler reported unsafe"
        body = f"The traveler heading to {trip.destination} reported they are unsafe."
        if trip.emergency_reason:
            body = f"{body} Reason: {trip.emergency_reason}"
    else:
        title = "Arrived safely"
        body = f"The traveler has safely arrived at {trip.destination}."

    return NotificationMessage(
        kind=kind,
        title=title,
        body=body,
        trip_id=trip.id,
        metadata={"traveler_id": trip.traveler_id, "status": trip.status.value},
    )


def escalation_contact() -> Optional[ContactRef]:
    """The campus security desk, if one is configured."""
    if not (settings.escalation_phone or settings.escalation_email):
        return None
    return ContactRef(
        name=settings.escalation_contact_name,
        phone=settings.escalation_phone,
        email=settings.escalation_email,
    )


class TripNotifier:

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        store: TripStore,
        timeout_seconds: float = 5.0,
        escalation: Optional[ContactRef] = None,
    ):
        self._dispatcher = dispatcher
        self._store = store
        self._timeout = timeout_seconds
        self._escalation = escalation

    async def notify(self, trip: Trip, kind: NotificationKind, escalate: bool = False) -> List[TripNotification]:
        """
        Send one message per contact and channel, wait for all of them
        (each bounded by the timeout) and record the outcomes.

        Args:
            trip: Trip after the transition was committed
            kind: Which transition happened
            escalate: Also alert the escalation desk

        Returns:
            One TripNotification per attempt
        """
        message = build_message(trip, kind)

        recipients = [
            ContactRef(
                name=contact.name,
                phone=contact.phone,
                email=contact.email,
                contact_user_id=contact.contact_user_id,
                trip_contact_id=contact.id,
            )
            for contact in trip.trusted_contacts
        ]
        if escalate and self._escalation is not None:
            recipients.append(self._escalation)

        attempts: List[Tuple[ContactRef, NotificationChannel]] = [
            (recipient, channel)
            for recipient in recipients
            for channel in recipient.channels()
        ]
        if not attempts:
            logger.warning("Trip %s has nobody to notify about %s", trip.id, kind.value)
            return []

        errors = await asyncio.gather(
            *(self._deliver(recipient, channel, message) for recipient, channel in attempts)
        )

        notifications = []
        dead_letters = []
        for (recipient, channel), error in zip(attempts, errors):
            notifications.append(TripNotification(
                trip_id=trip.id,
                trip_contact_id=recipient.trip_contact_id,
                recipient_name=recipient.name,
                kind=kind,
                channel=channel,
                title=message.title,
                message=message.body,
                status=NotificationStatus.FAILED if error else NotificationStatus.SENT,
                error_message=error,
            ))
            if error:
                dead_letters.append(DeadLetterQueue(
                    task_name=DLQ_TASK_NAME,
                    trip_id=trip.id,
                    error_message=error,
                    payload={
                        "trip_id": trip.id,
                        "kind": kind.value,
                        "channel": channel.value,
                        "contact": recipient.model_dump(),
                        "title": message.title,
                        "body": message.body,
                    },
                    status=DLQStatus.FAILED,
                ))

        await self._store.record_notifications(notifications, dead_letters)

        sent = len(notifications) - len(dead_letters)
        logger.info(
            "Trip %s %s: %d/%d notifications delivered",
            trip.id, kind.value, sent, len(notifications)
        )
        return notifications

    async def _deliver(
        self,
        contact: ContactRef,
        channel: NotificationChannel,
        message: NotificationMessage
    ) -> Optional[str]:
        """Returns None on success, otherwise the failure reason."""
        try:
            delivered = await asyncio.wait_for(
                self._dispatcher.send(contact, channel, message),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Notification to %s via %s timed out", contact.name, channel.value)
            return f"Timed out after {self._timeout}s"
        except NotificationDeliveryFailed as exc:
            logger.warning("Notification to %s via %s failed: %s", contact.name, channel.value, exc)
            return str(exc) or type(exc).__name__
        except Exception as exc:
            logger.exception("Dispatcher crashed sending to %s via %s", contact.name, channel.value)
            return f"{type(exc).__name__}: {exc}"

        if not delivered:
            return "Dispatcher declined the message"
        return None
