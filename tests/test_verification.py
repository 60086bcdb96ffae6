"""Tests for PayPal signature verification.

Tests:
- SUCCESS from verify-webhook-signature is the only accepting path
- OAuth token then verify call, with webhook_id and the parsed event
- Fail-closed on missing config, missing headers, bad body,
  non-2xx responses, transport errors and malformed responses
"""

from __future__ import annotations

import base64
import json

import httpx
import pytest

from paypal_webhooks.config import Settings
from paypal_webhooks.verification import TOKEN_PATH, VERIFY_PATH, SignatureVerifier

BODY = json.dumps(
    {
        "id": "WH-EVT-1",
        "event_type": "BILLING.SUBSCRIPTION.ACTIVATED",
        "resource": {"id": "sub-123", "custom_id": "user-456"},
    }
)


@pytest.fixture
def verifier(verified_settings, paypal) -> SignatureVerifier:
    return SignatureVerifier(verified_settings, paypal.client())


# ── Accepting path ────────────────────────────────────────────────────────


class TestVerificationSuccess:
    """Provider reports SUCCESS."""

    @pytest.mark.asyncio
    async def test_valid_signature(self, verifier, paypal, paypal_headers):
        assert await verifier.verify(BODY, paypal_headers) is True
        assert [r.url.path for r in paypal.requests] == [TOKEN_PATH, VERIFY_PATH]

    @pytest.mark.asyncio
    async def test_token_request_uses_client_credentials(self, verifier, paypal, paypal_headers):
        await verifier.verify(BODY, paypal_headers)
        token_request = paypal.requests[0]
        expected = base64.b64encode(b"client-id:client-secret").decode()
        assert token_request.headers["authorization"] == f"Basic {expected}"
        assert token_request.content == b"grant_type=client_credentials"

    @pytest.mark.asyncio
    async def test_verify_request_carries_event_and_headers(self, verifier, paypal, paypal_headers):
        await verifier.verify(BODY, paypal_headers)
        verify_request = paypal.requests[1]
        sent = json.loads(verify_request.content)
        assert verify_request.headers["authorization"] == "Bearer A21AA-test-token"
        assert sent["webhook_id"] == "WH-TEST-1"
        assert sent["webhook_event"] == json.loads(BODY)
        assert sent["transmission_id"] == paypal_headers["paypal-transmission-id"]
        assert sent["transmission_sig"] == paypal_headers["paypal-transmission-sig"]
        assert sent["cert_url"] == paypal_headers["paypal-cert-url"]
        assert sent["auth_algo"] == paypal_headers["paypal-auth-algo"]
        assert sent["transmission_time"] == paypal_headers["paypal-transmission-time"]

    @pytest.mark.asyncio
    async def test_header_names_case_insensitive(self, verifier, paypal_headers):
        upper = {k.upper(): v for k, v in paypal_headers.items()}
        assert await verifier.verify(BODY, upper) is True

    @pytest.mark.asyncio
    async def test_uses_configured_api_base(self, paypal, paypal_headers):
        settings = Settings(
            webhook_id="WH-TEST-1",
            client_id="id",
            client_secret="secret",
            api_base="https://api-m.paypal.com",
        )
        await SignatureVerifier(settings, paypal.client()).verify(BODY, paypal_headers)
        assert all(r.url.host == "api-m.paypal.com" for r in paypal.requests)


# ── Fail-closed ───────────────────────────────────────────────────────────


class TestVerificationFailClosed:
    """Every failure path rejects."""

    @pytest.mark.asyncio
    async def test_failure_status_rejected(self, verifier, paypal, paypal_headers):
        paypal.verification_status = "FAILURE"
        assert await verifier.verify(BODY, paypal_headers) is False

    @pytest.mark.asyncio
    async def test_verify_http_error_rejected(self, verifier, paypal, paypal_headers):
        paypal.verify_status = 500
        assert await verifier.verify(BODY, paypal_headers) is False

    @pytest.mark.asyncio
    async def test_token_http_error_rejected(self, verifier, paypal, paypal_headers):
        paypal.token_status = 401
        assert await verifier.verify(BODY, paypal_headers) is False
        assert len(paypal.requests) == 1

    @pytest.mark.asyncio
    async def test_transport_error_rejected(self, verifier, paypal, paypal_headers):
        paypal.raise_error = httpx.ConnectError("connection refused")
        assert await verifier.verify(BODY, paypal_headers) is False

    @pytest.mark.asyncio
    async def test_timeout_rejected(self, verifier, paypal, paypal_headers):
        paypal.raise_error = httpx.ReadTimeout("timed out")
        assert await verifier.verify(BODY, paypal_headers) is False

    @pytest.mark.asyncio
    async def test_malformed_response_rejected(self, verified_settings, paypal_headers):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == TOKEN_PATH:
                return httpx.Response(200, json={"access_token": "tok"})
            return httpx.Response(200, text="<html>gateway</html>")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        verifier = SignatureVerifier(verified_settings, client)
        assert await verifier.verify(BODY, paypal_headers) is False

    @pytest.mark.asyncio
    async def test_token_missing_rejected(self, verified_settings, paypal_headers):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"token_type": "Bearer"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        verifier = SignatureVerifier(verified_settings, client)
        assert await verifier.verify(BODY, paypal_headers) is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "header",
        [
            "paypal-auth-algo",
            "paypal-cert-url",
            "paypal-transmission-id",
            "paypal-transmission-sig",
            "paypal-transmission-time",
        ],
    )
    async def test_missing_header_rejected_without_calling_paypal(
        self, verifier, paypal, paypal_headers, header
    ):
        del paypal_headers[header]
        assert await verifier.verify(BODY, paypal_headers) is False
        assert paypal.requests == []

    @pytest.mark.asyncio
    async def test_unparseable_body_rejected(self, verifier, paypal, paypal_headers):
        assert await verifier.verify("not json {{{", paypal_headers) is False
        assert paypal.requests == []

    @pytest.mark.asyncio
    async def test_no_webhook_id_rejected(self, paypal, paypal_headers):
        settings = Settings(client_id="id", client_secret="secret")
        verifier = SignatureVerifier(settings, paypal.client())
        assert await verifier.verify(BODY, paypal_headers) is False
        assert paypal.requests == []

    @pytest.mark.asyncio
    async def test_no_credentials_rejected(self, paypal, paypal_headers):
        settings = Settings(webhook_id="WH-TEST-1")
        verifier = SignatureVerifier(settings, paypal.client())
        assert await verifier.verify(BODY, paypal_headers) is False
        assert paypal.requests == []
