"""Security test fixtures.

Responsibilities:
- Provides malicious_payloads for injection-style inputs
- Provides a production_settings fixture (verification on, live-style config)
- Scoped to tests/security/ only

The global tests/conftest.py builds the app, storage and mocked PayPal transport.
"""

from __future__ import annotations

import pytest

from paypal_webhooks.config import Settings


@pytest.fixture
def production_settings() -> Settings:
    """Production settings with every credential configured."""
    return Settings(
        environment="production",
        webhook_id="WH-PROD-1",
        client_id="live-client-id",
        client_secret="live-client-secret",
        admin_key="live-admin-key-0123456789",
    )


@pytest.fixture
def malicious_payloads() -> dict[str, str]:
    """Hostile strings used as event ids and resource fields."""
    return {
        "sql_injection": "'; DROP TABLE webhook_events; --",
        "sql_union": "x' UNION SELECT * FROM profiles --",
        "path_traversal": "../../etc/passwd",
        "null_byte": "evt\x00-1",
        "oversized": "A" * 10_000,
        "unicode": "évt-‮-1",
    }
