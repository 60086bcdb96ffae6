"""Storage adapters for the webhook pipeline."""

from paypal_webhooks.storage.memory import InMemoryStorage
from paypal_webhooks.storage.protocol import (
    StorageClient,
    StorageError,
    StorageErrorKind,
    StorageResult,
)

__all__ = [
    "InMemoryStorage",
    "StorageClient",
    "StorageError",
    "StorageErrorKind",
    "StorageResult",
]
