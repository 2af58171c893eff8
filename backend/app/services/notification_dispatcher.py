"""
Notification dispatchers.

A dispatcher delivers one message to one contact on one channel. It does
not deduplicate: callers decide when a message should be sent at all.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from backend.app.core.config import settings
from backend.app.core.exceptions import NotificationDeliveryFailed
from backend.app.core.reliability import CircuitBreaker, CircuitOpenError, notification_circuit_breaker
from backend.app.models.trip_enums import NotificationChannel
from backend.app.schemas.notification import ContactRef, NotificationMessage

logger = logging.getLogger(__name__)


def recipient_address(contact: ContactRef, channel: NotificationChannel) -> Optional[str]:
    """Address of the contact on the given channel, if it has one."""
    if channel == NotificationChannel.PUSH:
        return str(contact.contact_user_id) if contact.contact_user_id is not None else None
    if channel == NotificationChannel.SMS:
        return contact.phone
    return contact.email


class NotificationDispatcher(ABC):
    """Abstract base class for notification transports"""

    @abstractmethod
    async def send(self, contact: ContactRef, channel: NotificationChannel, message: NotificationMessage) -> bool:
        """
        Deliver a message.

        Returns:
            True on success, False if the provider declined it

        Raises:
            NotificationDeliveryFailed: on transport errors
        """


class LogDispatcher(NotificationDispatcher):
    """Writes messages to the log. Used when no gateway is configured."""

    async def send(self, contact: ContactRef, channel: NotificationChannel, message: NotificationMessage) -> bool:
        logger.info(
            "[%s] to %s via %s (%s): %s",
            message.kind.value,
            contact.name,
            channel.value,
            recipient_address(contact, channel),
            message.title,
        )
        return True


class GatewayDispatcher(NotificationDispatcher):
    """
    Posts messages to an HTTP notification gateway that fans out to the
    push, e-mail and SMS providers.
    """

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        timeout_seconds: float = 5.0,
        breaker: CircuitBreaker = notification_circuit_breaker,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = url
        self._token = token
        self._timeout = timeout_seconds
        self._breaker = breaker
        self._transport = transport

    async def send(self, contact: ContactRef, channel: NotificationChannel, message: NotificationMessage) -> bool:
        address = recipient_address(contact, channel)
        if not address:
            return False

        payload = {
            "channel": channel.value,
            "to": address,
            "recipient_name": contact.name,
            "title": message.title,
            "body": message.body,
            "kind": message.kind.value,
            "trip_id": message.trip_id,
            "metadata": message.metadata,
        }

        try:
            await self._breaker.call(self._post, payload)
        except CircuitOpenError as exc:
            raise NotificationDeliveryFailed("Notification gateway circuit is open") from exc
        except httpx.HTTPError as exc:
            raise NotificationDeliveryFailed(f"Notification gateway error: {exc}") from exc

        return True

    async def _post(self, payload: dict) -> None:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(self._url, json=payload, headers=headers)
            response.raise_for_status()


def get_dispatcher() -> NotificationDispatcher:
    """Dispatcher selected by configuration."""
    if settings.notification_gateway_url:
        return GatewayDispatcher(
            settings.notification_gateway_url,
            token=settings.notification_gateway_token,
            timeout_seconds=settings.notification_timeout_seconds,
        )
    return LogDispatcher()
