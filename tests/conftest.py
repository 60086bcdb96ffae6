"""Shared fixtures for the webhook pipeline test suite.

Every test runs against InMemoryStorage and a mocked PayPal transport;
nothing here touches the network or a database.
"""

from __future__ import annotations

import dataclasses
import json
import os
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from paypal_webhooks.app import create_app
from paypal_webhooks.config import Settings
from paypal_webhooks.notifications import InAppNotifier
from paypal_webhooks.retry import RetryExecutor
from paypal_webhooks.storage.memory import InMemoryStorage
from paypal_webhooks.verification import TOKEN_PATH, VERIFY_PATH

os.environ.setdefault("TESTING", "1")

PAYPAL_HEADERS = {
    "paypal-auth-algo": "SHA256withRSA",
    "paypal-cert-url": "https://api.sandbox.paypal.com/v1/notifications/certs/CERT-1",
    "paypal-transmission-id": "b2384410-f8d2-11ee-9f8b-0123456789ab",
    "paypal-transmission-sig": "c2lnbmF0dXJl",
    "paypal-transmission-time": "2026-04-10T12:00:00Z",
}

ADMIN_KEY = "admin-test-key"


class FakePayPal:
    """httpx MockTransport standing in for the PayPal REST API."""

    def __init__(self) -> None:
        self.verification_status = "SUCCESS"
        self.token_status = 200
        self.verify_status = 200
        self.raise_error: Exception | None = None
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_error is not None:
            raise self.raise_error
        if request.url.path == TOKEN_PATH:
            return httpx.Response(self.token_status, json={"access_token": "A21AA-test-token"})
        if request.url.path == VERIFY_PATH:
            return httpx.Response(
                self.verify_status, json={"verification_status": self.verification_status}
            )
        return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def paypal() -> FakePayPal:
    return FakePayPal()


@pytest.fixture
def paypal_headers() -> dict[str, str]:
    return dict(PAYPAL_HEADERS)


@pytest.fixture
def settings() -> Settings:
    """Development settings: verification off, admin key set."""
    return Settings(environment="test", admin_key=ADMIN_KEY, retry_base_delay=0.2)


@pytest.fixture
def verified_settings() -> Settings:
    """Settings with a webhook id, so every POST is signature-checked."""
    return Settings(
        environment="test",
        webhook_id="WH-TEST-1",
        client_id="client-id",
        client_secret="client-secret",
        admin_key=ADMIN_KEY,
    )


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def sleeps() -> list[float]:
    """Backoff delays requested by the retry executor."""
    return []


@pytest.fixture
def retry(sleeps: list[float]) -> RetryExecutor:
    """RetryExecutor that records its backoff instead of sleeping."""

    async def _record(delay: float) -> None:
        sleeps.append(delay)

    return RetryExecutor(base_delay=0.2, sleep=_record)


@pytest.fixture
def make_event():
    """Build a raw webhook body."""

    def _make(event_type: str, resource: dict[str, Any], event_id: str | None = "WH-EVT-1") -> str:
        payload: dict[str, Any] = {"event_type": event_type, "resource": resource}
        if event_id is not None:
            payload["id"] = event_id
        return json.dumps(payload)

    return _make


@pytest.fixture
def seed_subscription(storage: InMemoryStorage):
    """Insert a subscription (and its profile) directly into storage."""

    def _seed(
        subscription_id: str = "sub-123",
        user_id: str = "user-456",
        status: str = "active",
        plan_type: str = "basic",
    ) -> None:
        storage.tables["subscriptions"].append(
            {
                "id": len(storage.tables["subscriptions"]) + 1000,
                "paypal_subscription_id": subscription_id,
                "user_id": user_id,
                "status": status,
                "plan_type": plan_type,
                "grace_period_end": None,
                "current_period_end": "2026-05-01T00:00:00Z",
            }
        )
        storage.tables["profiles"].append(
            {"id": user_id, "subscription_tier": plan_type, "email": "subscriber@example.com"}
        )

    return _seed


@pytest.fixture
def make_client(storage: InMemoryStorage, retry: RetryExecutor, paypal: FakePayPal, settings: Settings):
    """Factory for a TestClient around one app; Settings fields can be overridden."""
    clients: list[TestClient] = []

    def _make(base: Settings | None = None, **overrides: Any) -> TestClient:
        app_settings = base or settings
        if overrides:
            app_settings = dataclasses.replace(app_settings, **overrides)
        app = create_app(
            settings=app_settings,
            storage=storage,
            http_client=paypal.client(),
            notifiers=[InAppNotifier(storage)],
            retry=retry,
        )
        client = TestClient(app, raise_server_exceptions=False)
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client) -> TestClient:
    """TestClient for the default development app (verification off)."""
    return make_client()
