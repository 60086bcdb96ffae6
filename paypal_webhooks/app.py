"""FastAPI application factory.

Wires settings, storage, verifier, state machine and routes together.
Every collaborator can be injected, so tests build the app around an
InMemoryStorage and a mocked PayPal transport.

Run with:  uvicorn paypal_webhooks.app:create_app --factory
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from paypal_webhooks.config import Settings, configure_logging
from paypal_webhooks.dead_letter import DeadLetterStore
from paypal_webhooks.errors import ConfigurationError
from paypal_webhooks.handlers import WebhookPipeline, register_webhook_routes
from paypal_webhooks.idempotency import IdempotencyGuard
from paypal_webhooks.notifications import EmailNotifier, InAppNotifier, Notifier
from paypal_webhooks.rate_limit import build_limiter, install_rate_limiting
from paypal_webhooks.replay import ReplayAdmin
from paypal_webhooks.retry import RetryExecutor
from paypal_webhooks.state_machine import SubscriptionStateMachine
from paypal_webhooks.storage.memory import InMemoryStorage
from paypal_webhooks.storage.postgres import PostgresStorage
from paypal_webhooks.storage.protocol import StorageClient
from paypal_webhooks.verification import SignatureVerifier

logger = logging.getLogger(__name__)


def build_storage(settings: Settings) -> StorageClient:
    """PostgreSQL when DATABASE_URL is set; in-memory outside production."""
    if settings.database_url:
        return PostgresStorage(settings.database_url)
    if settings.is_production:
        raise ConfigurationError("DATABASE_URL is required in production")
    logger.warning("DATABASE_URL not set, using in-memory storage (development only)")
    return InMemoryStorage()


def build_pipeline(
    settings: Settings,
    storage: StorageClient,
    http_client: httpx.AsyncClient | None = None,
    notifiers: list[Notifier] | None = None,
    retry: RetryExecutor | None = None,
) -> WebhookPipeline:
    """Assemble the pipeline components around one storage client."""
    retry = retry or RetryExecutor(base_delay=settings.retry_base_delay)
    if notifiers is None:
        notifiers = [InAppNotifier(storage), EmailNotifier(settings, storage, http_client)]

    dead_letters = DeadLetterStore(storage, retry)
    state_machine = SubscriptionStateMachine(storage, retry, settings, notifiers)
    return WebhookPipeline(
        settings=settings,
        verifier=SignatureVerifier(settings, http_client),
        guard=IdempotencyGuard(storage, retry),
        state_machine=state_machine,
        dead_letters=dead_letters,
        replay_admin=ReplayAdmin(dead_letters, state_machine, settings.admin_key),
    )


def create_app(
    settings: Settings | None = None,
    storage: StorageClient | None = None,
    http_client: httpx.AsyncClient | None = None,
    notifiers: list[Notifier] | None = None,
    retry: RetryExecutor | None = None,
) -> FastAPI:
    """Create the webhook service.

    With TESTING=1 the lifespan skips schema initialisation.
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    storage = storage if storage is not None else build_storage(settings)
    pipeline = build_pipeline(settings, storage, http_client, notifiers, retry)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if isinstance(storage, PostgresStorage) and not os.environ.get("TESTING"):
            await storage.init_schema()
        logger.info(
            "Webhook service starting (env=%s, verification=%s)",
            settings.environment,
            "on" if settings.verification_enabled else "off",
        )
        yield

    app = FastAPI(title="PayPal Webhook Pipeline", lifespan=lifespan)
    app.state.pipeline = pipeline

    limiter = build_limiter(settings)
    register_webhook_routes(app, pipeline, limiter)
    install_rate_limiting(app, limiter)
    return app
