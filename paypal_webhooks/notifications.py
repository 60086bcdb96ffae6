"""Subscriber notifications sent after subscription transitions.

Two channels:
- InAppNotifier: writes a row to the notifications table
- EmailNotifier: sends through the Resend HTTP API when configured

Notifications are best-effort. Channels report failures in SendResult
instead of raising; the state machine logs them and moves on.

Security: the API key is never logged; recipient addresses are never logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

import httpx

from paypal_webhooks.config import Settings
from paypal_webhooks.storage.protocol import StorageClient

logger = logging.getLogger(__name__)

NOTIFICATIONS_TABLE = "notifications"
RESEND_API_URL = "https://api.resend.com/emails"


@dataclass
class NotificationMessage:
    """A notification addressed to one user."""
    user_id: str
    type: str  # payment_failed, grace_period
    title: str
    body: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SendResult:
    """Result of sending a notification."""
    success: bool
    channel_id: str
    error: str = ""


@runtime_checkable
class Notifier(Protocol):
    """Protocol for notification channels."""

    @property
    def channel_id(self) -> str:
        ...

    @property
    def is_configured(self) -> bool:
        ...

    async def send(self, message: NotificationMessage) -> SendResult:
        ...


def payment_failed_message(user_id: str, reason: str) -> NotificationMessage:
    return NotificationMessage(
        user_id=user_id,
        type="payment_failed",
        title="Subscription payment failed",
        body="Your subscription payment failed. Please update your payment method.",
        metadata={"reason": reason},
    )


def grace_period_message(user_id: str, grace_period_end: datetime) -> NotificationMessage:
    return NotificationMessage(
        user_id=user_id,
        type="grace_period",
        title="Subscription suspended",
        body=(
            "Your subscription is suspended. Access continues until "
            f"{grace_period_end:%Y-%m-%d %H:%M} UTC; update your payment method to keep it."
        ),
        metadata={"grace_period_end": grace_period_end.isoformat()},
    )


class InAppNotifier:
    """Stores notifications for display inside the app."""

    def __init__(self, storage: StorageClient) -> None:
        self._storage = storage

    @property
    def channel_id(self) -> str:
        return "in-app"

    @property
    def is_configured(self) -> bool:
        return True

    async def send(self, message: NotificationMessage) -> SendResult:
        result = await self._storage.insert(
            NOTIFICATIONS_TABLE,
            {
                "user_id": message.user_id,
                "type": message.type,
                "title": message.title,
                "body": message.body,
                "created_at": datetime.now(timezone.utc),
            },
        )
        if not result.ok:
            return SendResult(success=False, channel_id=self.channel_id, error=str(result.error))
        return SendResult(success=True, channel_id=self.channel_id)


class EmailNotifier:
    """Emails the subscriber through Resend. Needs the profile's address."""

    def __init__(
        self,
        settings: Settings,
        storage: StorageClient,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = settings.resend_api_key
        self._from = settings.resend_from_email
        self._timeout = settings.http_timeout
        self._storage = storage
        self._client = client

    @property
    def channel_id(self) -> str:
        return "email"

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key and self._from)

    async def send(self, message: NotificationMessage) -> SendResult:
        if not self.is_configured:
            return SendResult(success=False, channel_id=self.channel_id, error="not configured")

        profile = await self._storage.select_one("profiles", {"id": message.user_id}, ["email"])
        email = (profile.data or {}).get("email") if profile.ok else None
        if not email or not isinstance(email, str):
            return SendResult(success=False, channel_id=self.channel_id, error="no email on profile")

        payload = {
            "from": self._from,
            "to": email,
            "subject": message.title,
            "html": f"<p>{message.body}</p>",
        }
        try:
            if self._client is not None:
                response = await self._post(self._client, payload)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await self._post(client, payload)
        except httpx.HTTPError as e:
            return SendResult(success=False, channel_id=self.channel_id, error=type(e).__name__)

        if not response.is_success:
            return SendResult(
                success=False,
                channel_id=self.channel_id,
                error=f"Resend API {response.status_code}",
            )
        return SendResult(success=True, channel_id=self.channel_id)

    async def _post(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> httpx.Response:
        return await client.post(
            RESEND_API_URL,
            headers={"Authorization": f"Bearer {self._api_key}"},
            json=payload,
        )
