"""Webhook idempotency: unique-constraint deduplication.

Security contract:
- Each event id is claimed by inserting into webhook_events (UNIQUE event_id)
- The constraint violation IS the duplicate signal (no read-then-write race)
- Duplicate webhooks are answered with 200 (not an error: the provider retries on errors)
- Missing webhook_events table degrades open (logged), so a provisioning gap
  does not fail every webhook
- Any other storage failure is surfaced, never skipped silently
- No event id = can't dedup, guard is bypassed
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum

from paypal_webhooks.retry import RetryExecutor
from paypal_webhooks.storage.protocol import StorageClient, StorageErrorKind

logger = logging.getLogger(__name__)

EVENTS_TABLE = "webhook_events"


class ClaimOutcome(str, Enum):
    """Result of claiming an event id."""
    FRESH = "fresh"
    DUPLICATE = "duplicate"
    STORE_UNAVAILABLE = "store_unavailable"


class IdempotencyGuard:
    """Claims provider event ids exactly once."""

    def __init__(self, storage: StorageClient, retry: RetryExecutor) -> None:
        self._storage = storage
        self._retry = retry

    async def claim(self, event_id: str | None, event_type: str, request_id: str = "-") -> ClaimOutcome:
        """Record event_id before processing.

        Returns FRESH when this request owns the event, DUPLICATE when it
        was already claimed, STORE_UNAVAILABLE when the claim could not be
        recorded.
        """
        if not event_id:
            logger.info("Event without id, idempotency skipped (request_id=%s)", request_id)
            return ClaimOutcome.FRESH

        row = {
            "event_id": event_id,
            "event_type": event_type,
            "created_at": datetime.now(timezone.utc),
        }
        result = await self._retry.run(
            lambda: self._storage.insert(EVENTS_TABLE, row), label="idempotency claim"
        )
        if result.ok:
            return ClaimOutcome.FRESH

        kind = result.error.kind
        if kind is StorageErrorKind.CONSTRAINT_VIOLATION:
            logger.info("Duplicate event_id, skipping (request_id=%s)", request_id)
            return ClaimOutcome.DUPLICATE
        if kind is StorageErrorKind.MISSING_RELATION:
            logger.warning(
                "%s table missing, idempotency degraded open (request_id=%s)",
                EVENTS_TABLE,
                request_id,
            )
            return ClaimOutcome.FRESH

        logger.error(
            "Idempotency claim failed: %s (request_id=%s)", result.error, request_id
        )
        return ClaimOutcome.STORE_UNAVAILABLE

    async def release(self, event_id: str | None, request_id: str = "-") -> bool:
        """Delete a claim so a provider redelivery is processed again."""
        if not event_id:
            return False
        result = await self._retry.run(
            lambda: self._storage.delete(EVENTS_TABLE, {"event_id": event_id}),
            label="idempotency release",
        )
        if not result.ok:
            logger.error("Failed to release event claim: %s (request_id=%s)", result.error, request_id)
            return False
        logger.warning("Released event claim for redelivery (request_id=%s)", request_id)
        return True
