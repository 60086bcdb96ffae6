"""Manual replay of dead-lettered events.

Security contract:
- Admin key compared with hmac.compare_digest() (constant-time, no timing attacks)
- No admin key configured -> every replay request is rejected (fail-closed)
- Replay bypasses the IdempotencyGuard: the event id was claimed by the
  original delivery, so the dead-letter entry is the only way back in
- Only pending entries are replayable; a replayed entry answers NOT_FOUND
- A replay first claims its entry (pending -> replaying); a concurrent
  replay of the same event id loses the claim and answers NOT_FOUND
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from enum import Enum

from paypal_webhooks.dead_letter import DeadLetterStore
from paypal_webhooks.events import parse_event
from paypal_webhooks.state_machine import SubscriptionStateMachine

logger = logging.getLogger(__name__)

_BEARER_PREFIX = "bearer "


class ReplayOutcome(str, Enum):
    REPLAYED = "replayed"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass
class ReplayResult:
    outcome: ReplayOutcome
    event_id: str
    retry_count: int = 0


def extract_bearer_token(authorization: str | None) -> str | None:
    """Pull the token out of an `Authorization: Bearer <token>` header."""
    if not authorization or authorization[: len(_BEARER_PREFIX)].lower() != _BEARER_PREFIX:
        return None
    token = authorization[len(_BEARER_PREFIX):].strip()
    return token or None


class ReplayAdmin:
    """Re-drives pending dead-letter entries through the state machine."""

    def __init__(
        self,
        dead_letters: DeadLetterStore,
        state_machine: SubscriptionStateMachine,
        admin_key: str,
    ) -> None:
        self._dead_letters = dead_letters
        self._state_machine = state_machine
        self._admin_key = admin_key

    def authenticate(self, authorization: str | None) -> bool:
        """Timing-safe check of the bearer token against the admin key."""
        if not self._admin_key:
            logger.warning("WEBHOOK_ADMIN_KEY not set, rejecting replay request")
            return False
        token = extract_bearer_token(authorization)
        if token is None:
            return False
        return hmac.compare_digest(token.encode("utf-8"), self._admin_key.encode("utf-8"))

    async def replay(self, event_id: str, request_id: str = "-") -> ReplayResult:
        """Replay the pending entry for event_id."""
        try:
            entry = await self._dead_letters.get_pending(event_id)
            claimed = entry is not None and await self._dead_letters.claim_for_replay(entry)
        except LookupError:
            logger.exception("Dead-letter lookup failed (request_id=%s)", request_id)
            return ReplayResult(ReplayOutcome.FAILED, event_id)
        if not claimed:
            # missing, already replayed, or held by a concurrent replay
            return ReplayResult(ReplayOutcome.NOT_FOUND, event_id)

        try:
            event = parse_event(entry.payload)
            await self._state_machine.dispatch(event, request_id)
        except Exception as e:
            logger.exception("Replay of %s failed (request_id=%s)", entry.event_type, request_id)
            await self._dead_letters.record_failure(entry, f"replay: {type(e).__name__}: {e}")
            return ReplayResult(ReplayOutcome.FAILED, event_id, entry.retry_count)

        if not await self._dead_letters.mark_replayed(entry):
            await self._dead_letters.record_failure(entry, "replay: applied but not marked replayed")
            return ReplayResult(ReplayOutcome.FAILED, event_id, entry.retry_count)

        logger.info("Replayed dead-letter event %s (request_id=%s)", entry.event_type, request_id)
        return ReplayResult(ReplayOutcome.REPLAYED, event_id, entry.retry_count)
