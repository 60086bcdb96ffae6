"""Webhook signature verification: remote check against PayPal.

Security contract:
- PayPal signs with certificates, so verification is delegated to the
  provider's verify-webhook-signature API
- Every failure path returns False (fail-closed): transport error, non-2xx,
  missing header, missing credential, unparseable body, missing field
- The raw body is passed through untouched; the caller must not re-serialize it
- Credentials and signatures are never logged
"""

from __future__ import annotations

import json
import logging
from typing import Mapping

import httpx

from paypal_webhooks.config import Settings

logger = logging.getLogger(__name__)

TOKEN_PATH = "/v1/oauth2/token"
VERIFY_PATH = "/v1/notifications/verify-webhook-signature"

# Verification request field -> PayPal transmission header
SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


class SignatureVerifier:
    """Verifies PayPal webhook transmissions.

    Args:
        settings: Supplies api_base, client credentials and webhook_id.
        client: Optional shared httpx.AsyncClient (tests inject a mock transport).
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = client

    async def verify(self, raw_body: str, headers: Mapping[str, str], request_id: str = "-") -> bool:
        """Return True only if PayPal reports verification_status == SUCCESS."""
        settings = self._settings
        if not settings.webhook_id:
            logger.warning("PAYPAL_WEBHOOK_ID not set, rejecting webhook")
            return False
        if not settings.client_id or not settings.client_secret:
            logger.warning("PayPal client credentials not set, rejecting webhook")
            return False

        lowered = {k.lower(): v for k, v in headers.items()}
        fields: dict[str, str] = {}
        for field_name, header in SIGNATURE_HEADERS.items():
            value = lowered.get(header)
            if not value:
                logger.warning("Missing %s header (request_id=%s)", header, request_id)
                return False
            fields[field_name] = value

        try:
            webhook_event = json.loads(raw_body)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Unparseable body, signature not verified (request_id=%s)", request_id)
            return False

        try:
            if self._client is not None:
                return await self._verify_with(self._client, fields, webhook_event, request_id)
            async with httpx.AsyncClient(timeout=settings.http_timeout) as client:
                return await self._verify_with(client, fields, webhook_event, request_id)
        except httpx.HTTPError as e:
            logger.error(
                "Signature verification transport error: %s (request_id=%s)",
                type(e).__name__,
                request_id,
            )
            return False
        except (ValueError, KeyError, TypeError, AttributeError):
            logger.error("Malformed verification response (request_id=%s)", request_id)
            return False

    async def _verify_with(
        self,
        client: httpx.AsyncClient,
        fields: dict[str, str],
        webhook_event: object,
        request_id: str,
    ) -> bool:
        access_token = await self._access_token(client, request_id)
        if not access_token:
            return False

        response = await client.post(
            f"{self._settings.api_base}{VERIFY_PATH}",
            headers={"Authorization": f"Bearer {access_token}"},
            json={
                **fields,
                "webhook_id": self._settings.webhook_id,
                "webhook_event": webhook_event,
            },
        )
        if not response.is_success:
            logger.warning(
                "Signature verification HTTP %d (request_id=%s)", response.status_code, request_id
            )
            return False

        status = response.json().get("verification_status")
        if status != "SUCCESS":
            logger.warning("Signature verification status=%s (request_id=%s)", status, request_id)
            return False
        return True

    async def _access_token(self, client: httpx.AsyncClient, request_id: str) -> str | None:
        response = await client.post(
            f"{self._settings.api_base}{TOKEN_PATH}",
            auth=(self._settings.client_id, self._settings.client_secret),
            data={"grant_type": "client_credentials"},
        )
        if not response.is_success:
            logger.warning("PayPal OAuth HTTP %d (request_id=%s)", response.status_code, request_id)
            return None
        token = response.json().get("access_token")
        if not token:
            logger.warning("PayPal OAuth response without access_token (request_id=%s)", request_id)
            return None
        return token
