"""
Delivery transports for queued notifications
"""

import logging
import random
from typing import Callable, Optional

import httpx

from ..config import Settings, get_settings
from ..models.database import NotificationChannel
from ..schemas.notification import DeliveryResult
from .errors import DeliveryError

logger = logging.getLogger(__name__)

# Errors that will not go away on retry
PERMANENT_ERROR_MARKERS = (
    "invalid recipient",
    "blocked",
    "unsubscribed",
    "not implemented",
    "unknown channel",
)


def is_permanent_error(message: Optional[str]) -> bool:
    if not message:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in PERMANENT_ERROR_MARKERS)


def calculate_backoff_ms(
    attempt: int,
    base_delay_ms: int = 1000,
    max_delay_ms: int = 60000,
    rng: Callable[[], float] = random.random,
) -> int:
    """
    Exponential backoff with +/-25% jitter for the given attempt (1-based),
    never above max_delay_ms.
    """
    delay = min(base_delay_ms * (2 ** max(attempt - 1, 0)), max_delay_ms)
    jitter = delay * 0.25 * (rng() * 2 - 1)
    return int(max(0, min(delay + jitter, max_delay_ms)))


class DeliveryTransport:
    """Sends one rendered notification to one recipient on one channel"""

    channel: NotificationChannel

    async def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        raise NotImplementedError


class InAppTransport(DeliveryTransport):
    """In-app notifications are read straight from the notifications table"""

    channel = NotificationChannel.IN_APP

    async def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        return DeliveryResult(success=True)


class HttpEmailTransport(DeliveryTransport):
    """Posts email to an HTTP relay (JSON {from, to, subject, text})"""

    channel = NotificationChannel.EMAIL

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str] = None,
        from_address: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.from_address = from_address or get_settings().EMAIL_FROM
        self.timeout = timeout
        self._client = client

    async def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        if not to:
            raise DeliveryError("Invalid recipient: empty address", self.channel, permanent=True)

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = {"from": self.from_address, "to": [to], "subject": subject, "text": body}

        try:
            if self._client is not None:
                response = await self._client.post(self.api_url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise DeliveryError(f"Email relay unreachable: {e}", self.channel) from e

        if response.status_code >= 500:
            raise DeliveryError(f"Email relay error {response.status_code}", self.channel)
        if response.status_code >= 400:
            message = response.text or f"status {response.status_code}"
            raise DeliveryError(
                f"Email rejected: {message}",
                self.channel,
                permanent=is_permanent_error(message) or response.status_code in (400, 422),
            )

        # A 2xx means the relay accepted the mail, whatever the body looks like
        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}
        message_id = data.get("id") if isinstance(data, dict) else None
        if message_id is not None:
            message_id = str(message_id)
        return DeliveryResult(success=True, message_id=message_id)


class WebhookTransport(DeliveryTransport):
    """POSTs a JSON payload to the configured webhook endpoint"""

    channel = NotificationChannel.WEBHOOK

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        payload = {"recipient": to, "subject": subject, "body": body}
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DeliveryError(
                f"Webhook returned {e.response.status_code}",
                self.channel,
                permanent=e.response.status_code in (404, 410),
            ) from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"Webhook unreachable: {e}", self.channel) from e
        return DeliveryResult(success=True)


def build_default_transports(settings: Optional[Settings] = None):
    """Transports available from configuration"""
    settings = settings or get_settings()
    transports = {NotificationChannel.IN_APP: InAppTransport()}
    if settings.EMAIL_API_URL:
        transports[NotificationChannel.EMAIL] = HttpEmailTransport(
            settings.EMAIL_API_URL,
            api_key=settings.EMAIL_API_KEY,
            from_address=settings.EMAIL_FROM,
            timeout=settings.EMAIL_REQUEST_TIMEOUT,
        )
    else:
        logger.warning("EMAIL_API_URL is not configured; email notifications will fail")
    if settings.WEBHOOK_URL:
        transports[NotificationChannel.WEBHOOK] = WebhookTransport(
            settings.WEBHOOK_URL, timeout=settings.WEBHOOK_REQUEST_TIMEOUT
        )
    return transports
