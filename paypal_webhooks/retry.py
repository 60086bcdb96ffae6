"""Bounded retry with exponential backoff for storage operations.

Retries transient storage errors up to a fixed attempt ceiling. Errors
that cannot succeed on retry (constraint violations, missing tables) are
returned on first occurrence. Backoff sleeps with asyncio.sleep, so only
the current request waits. Logs each retry attempt.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable

from paypal_webhooks.storage.protocol import (
    StorageError,
    StorageErrorKind,
    StorageResult,
)

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3

# Error kinds that retrying cannot fix
NON_RETRYABLE_KINDS = {
    StorageErrorKind.CONSTRAINT_VIOLATION,
    StorageErrorKind.MISSING_RELATION,
}

StorageOp = Callable[[], Awaitable[StorageResult]]
Classifier = Callable[[StorageError], bool]


def is_retryable(error: StorageError) -> bool:
    """Default classifier: everything except constraint and schema errors."""
    return error.kind not in NON_RETRYABLE_KINDS


def compute_delay(attempt: int, base_delay: float, jitter: float = 0.0) -> float:
    """Backoff before the next attempt: base * 2^(attempt-1), attempt is 1-based."""
    delay = base_delay * (2 ** (attempt - 1))
    if jitter:
        jitter_amount = delay * jitter
        delay += random.uniform(-jitter_amount, jitter_amount)
    return max(0.0, delay)


class RetryExecutor:
    """Runs a storage operation with bounded retries.

    Args:
        base_delay: Backoff base in seconds.
        max_attempts: Total attempts, including the first.
        jitter: Jitter factor (0.0-1.0). Zero keeps delays deterministic.
    """

    def __init__(
        self,
        base_delay: float = 0.2,
        max_attempts: int = MAX_ATTEMPTS,
        jitter: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.base_delay = base_delay
        self.max_attempts = max_attempts
        self.jitter = jitter
        self._sleep = sleep

    async def run(
        self,
        op: StorageOp,
        is_retryable: Classifier = is_retryable,
        label: str = "storage operation",
    ) -> StorageResult:
        """Run op until it succeeds, hits a non-retryable error, or the ceiling.

        An op that raises instead of returning a StorageResult is treated as
        a transient failure. Returns the last result.
        """
        result = StorageResult.failure(StorageErrorKind.UNKNOWN, "not attempted")
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await op()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                result = StorageResult.failure(StorageErrorKind.TRANSIENT, f"{type(e).__name__}: {e}")

            if result.ok:
                return result
            if not is_retryable(result.error):
                return result
            if attempt == self.max_attempts:
                break

            delay = compute_delay(attempt, self.base_delay, self.jitter)
            logger.warning(
                "Retry %d/%d for %s (%s), waiting %.2fs",
                attempt,
                self.max_attempts - 1,
                label,
                result.error.kind.value,
                delay,
            )
            await self._sleep(delay)

        logger.error(
            "%s failed after %d attempts: %s", label, self.max_attempts, result.error.kind.value
        )
        return result
