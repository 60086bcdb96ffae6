"""Dead-letter store for events that failed processing.

Best-effort safety net: a failed insert is logged and reported to the
caller as False, never raised. Durability is whatever the backing store
provides.

Entry lifecycle: pending -> replaying -> replayed. A failed replay hands
the entry back to pending. The pending -> replaying step is a conditional
update, so only one replay at a time can hold an entry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from paypal_webhooks.retry import RetryExecutor
from paypal_webhooks.storage.protocol import StorageClient

logger = logging.getLogger(__name__)

DEAD_LETTER_TABLE = "webhook_dead_letters"

STATUS_PENDING = "pending"
STATUS_REPLAYING = "replaying"
STATUS_REPLAYED = "replayed"

# error_message column cap
_MAX_ERROR_LENGTH = 2000


@dataclass
class DeadLetterEntry:
    """A stored failed event."""

    id: Any
    event_id: str | None
    event_type: str
    payload: str
    error_message: str
    retry_count: int = 0
    status: str = STATUS_PENDING
    created_at: Any = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> DeadLetterEntry:
        return cls(
            id=row.get("id"),
            event_id=row.get("event_id"),
            event_type=row.get("event_type") or "",
            payload=row.get("payload") or "",
            error_message=row.get("error_message") or "",
            retry_count=int(row.get("retry_count") or 0),
            status=row.get("status") or STATUS_PENDING,
            created_at=row.get("created_at"),
        )


class DeadLetterStore:
    """Persists and updates dead-letter entries."""

    def __init__(self, storage: StorageClient, retry: RetryExecutor) -> None:
        self._storage = storage
        self._retry = retry

    async def store(
        self,
        event_id: str | None,
        event_type: str,
        payload: str,
        error_message: str,
        request_id: str = "-",
    ) -> bool:
        """Insert a pending entry holding the raw payload. Returns success."""
        row = {
            "event_id": event_id,
            "event_type": event_type or "unknown",
            "payload": payload,
            "error_message": (error_message or "")[:_MAX_ERROR_LENGTH],
            "retry_count": 0,
            "status": STATUS_PENDING,
            "created_at": datetime.now(timezone.utc),
        }
        result = await self._retry.run(
            lambda: self._storage.insert(DEAD_LETTER_TABLE, row), label="dead-letter insert"
        )
        if not result.ok:
            logger.error(
                "Dead-letter insert failed for %s: %s (request_id=%s)",
                event_type,
                result.error,
                request_id,
            )
            return False
        logger.warning("Event %s moved to dead-letter queue (request_id=%s)", event_type, request_id)
        return True

    async def get_pending(self, event_id: str) -> DeadLetterEntry | None:
        """Look up the pending entry for an event id.

        Raises:
            LookupError: the store could not be read.
        """
        result = await self._retry.run(
            lambda: self._storage.select_one(
                DEAD_LETTER_TABLE, {"event_id": event_id, "status": STATUS_PENDING}
            ),
            label="dead-letter lookup",
        )
        if not result.ok:
            raise LookupError(f"dead-letter lookup failed: {result.error}")
        return DeadLetterEntry.from_row(result.data) if result.data else None

    async def claim_for_replay(self, entry: DeadLetterEntry) -> bool:
        """Atomically move a pending entry to replaying.

        Returns False when another replay already holds the entry.

        Raises:
            LookupError: the store could not be updated.
        """
        result = await self._retry.run(
            lambda: self._storage.update(
                DEAD_LETTER_TABLE,
                {"status": STATUS_REPLAYING},
                {"id": entry.id, "status": STATUS_PENDING},
            ),
            label="dead-letter replay claim",
        )
        if not result.ok:
            raise LookupError(f"dead-letter replay claim failed: {result.error}")
        if result.data != 1:
            return False
        entry.status = STATUS_REPLAYING
        return True

    async def mark_replayed(self, entry: DeadLetterEntry) -> bool:
        """Flip a replaying entry to replayed and bump retry_count by one."""
        result = await self._retry.run(
            lambda: self._storage.update(
                DEAD_LETTER_TABLE,
                {
                    "status": STATUS_REPLAYED,
                    "retry_count": entry.retry_count + 1,
                    "replayed_at": datetime.now(timezone.utc),
                },
                {"id": entry.id, "status": STATUS_REPLAYING},
            ),
            label="dead-letter mark replayed",
        )
        if not result.ok:
            logger.error("Failed to mark dead-letter entry replayed: %s", result.error)
            return False
        if result.data != 1:
            logger.error("Dead-letter entry was not in replaying state when marked replayed")
            return False
        entry.status = STATUS_REPLAYED
        entry.retry_count += 1
        return True

    async def record_failure(self, entry: DeadLetterEntry, error_message: str) -> None:
        """Store the latest replay error and hand the entry back to pending."""
        result = await self._retry.run(
            lambda: self._storage.update(
                DEAD_LETTER_TABLE,
                {"status": STATUS_PENDING, "error_message": (error_message or "")[:_MAX_ERROR_LENGTH]},
                {"id": entry.id},
            ),
            label="dead-letter record failure",
        )
        if not result.ok:
            logger.warning("Failed to record replay error: %s", result.error)
            return
        entry.status = STATUS_PENDING
