"""Delivery channels for booking notifications."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import httpx
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from expert_booking.config import SendGridSettings, TwilioSettings, get_settings
from expert_booking.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


class DeliveryError(ExternalServiceError):
    """A channel could not hand the message to its provider."""

    def __init__(self, service: str, message: str):
        super().__init__(service=service, message=message)


class NotificationChannel(ABC):
    """Sends one message to one recipient."""

    name: str = ""

    @abstractmethod
    async def send(self, recipient: str, subject: Optional[str], message: str) -> Optional[str]:
        """Deliver a message; returns the provider's message id when it reports one."""


class EmailChannel(NotificationChannel):
    """E-mail through the SendGrid v3 mail/send API."""

    name = "email"

    def __init__(self, settings: Optional[SendGridSettings] = None, timeout: float = 10.0):
        self.settings = settings or get_settings().sendgrid
        self.timeout = timeout

    async def send(self, recipient: str, subject: Optional[str], message: str) -> Optional[str]:
        if not self.settings.is_configured:
            raise DeliveryError("sendgrid", "SendGrid is not configured")

        payload = {
            "personalizations": [{"to": [{"email": recipient}]}],
            "from": {"email": self.settings.from_email},
            "subject": subject or "Your consultation",
            "content": [{"type": "text/plain", "value": message}],
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.settings.api_url,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.settings.api_key}"},
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DeliveryError(
                "sendgrid", f"SendGrid rejected the message: {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise DeliveryError("sendgrid", f"SendGrid request failed: {e}") from e

        return response.headers.get("X-Message-Id")


class SmsChannel(NotificationChannel):
    """SMS through Twilio."""

    name = "sms"

    def __init__(self, settings: Optional[TwilioSettings] = None):
        self.settings = settings or get_settings().twilio
        if self.settings.is_configured:
            self.client = Client(self.settings.account_sid, self.settings.auth_token)
        else:
            logger.warning("Twilio credentials not configured. SMS notifications will fail.")
            self.client = None

    async def send(self, recipient: str, subject: Optional[str], message: str) -> Optional[str]:
        if self.client is None:
            raise DeliveryError("twilio", "Twilio is not configured")

        try:
            sent = await asyncio.to_thread(
                self.client.messages.create,
                to=recipient,
                from_=self.settings.from_number,
                body=message,
            )
        except TwilioRestException as e:
            raise DeliveryError("twilio", f"Twilio rejected the message: {e.msg}") from e
        return sent.sid


def get_channels() -> Dict[str, NotificationChannel]:
    """Channels keyed by the ``channel`` value stored on outbox rows."""
    return {EmailChannel.name: EmailChannel(), SmsChannel.name: SmsChannel()}
