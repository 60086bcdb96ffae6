"""Webhook HTTP handlers: FastAPI routes for PayPal notifications.

POST handler, in order:
1. Rate-limit by client IP (slowapi, 429 before anything else)
2. Read raw body (exact bytes, needed for signature verification)
3. Verify signature when a webhook id is configured (401 on failure);
   refuse in production when it is not configured (503)
4. Parse JSON (400 INVALID_JSON) and validate fields (400 INVALID_PAYLOAD)
5. Claim the event id (duplicate -> 200, store unavailable -> 500)
6. Dispatch to the state machine
7. On dispatch failure: dead-letter the raw payload, return 500. Steps 6
   and 7 run as one shielded task, so a cancelled request still finishes
   the transition or leaves a DLQ entry

Only body-level errors (bad JSON, missing event_type, non-object
resource) are 400s that never reach the DLQ. A ValidationError raised
inside dispatch, e.g. a recognised event whose resource lacks a field its
handler requires, is a dispatch failure: dead-lettered, answered 500.

Security contract:
- Error bodies are {"error": CODE, "message": short text}; no internals
- Every request ends in a definite response; nothing waits on the provider
- Log all webhook activity for audit trail (event type and request id only)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from slowapi import Limiter

from paypal_webhooks.config import Settings
from paypal_webhooks.dead_letter import DeadLetterStore
from paypal_webhooks.errors import (
    AuthError,
    ConfigurationError,
    HandlerFailedError,
    IdempotencyCheckError,
    InvalidJSONError,
    InvalidRequestError,
    InvalidSignatureError,
    NotFoundError,
    ReplayFailedError,
    ValidationError,
    WebhookError,
)
from paypal_webhooks.events import InboundEvent, parse_event
from paypal_webhooks.idempotency import ClaimOutcome, IdempotencyGuard
from paypal_webhooks.replay import ReplayAdmin, ReplayOutcome
from paypal_webhooks.state_machine import SubscriptionStateMachine
from paypal_webhooks.verification import SignatureVerifier

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhooks/payment"
REQUEST_ID_HEADER = "x-request-id"

# Shielded dispatch tasks outlive a cancelled request; held here until done
_in_flight: set[asyncio.Task] = set()


@dataclass
class WebhookPipeline:
    """The collaborators one request flows through."""

    settings: Settings
    verifier: SignatureVerifier
    guard: IdempotencyGuard
    state_machine: SubscriptionStateMachine
    dead_letters: DeadLetterStore
    replay_admin: ReplayAdmin


class ReplayRequest(BaseModel):
    """PATCH body for a dead-letter replay."""

    event_id: str = Field(min_length=1, max_length=255)
    action: Literal["replay"]


def _respond(body: dict[str, Any], status_code: int, request_id: str) -> JSONResponse:
    headers = {REQUEST_ID_HEADER: request_id} if request_id != "-" else None
    return JSONResponse(body, status_code=status_code, headers=headers)


def _error(exc: WebhookError, request_id: str) -> JSONResponse:
    return _respond(exc.to_body(), exc.status_code, request_id)


def _log_webhook(event_type: str, event_id: str | None, status: str, request_id: str, start: float) -> None:
    """Audit log for webhook activity."""
    logger.info(
        "WEBHOOK_AUDIT event=%s id=%s status=%s request_id=%s elapsed_ms=%.1f",
        event_type,
        event_id or "-",
        status,
        request_id,
        (time.time() - start) * 1000,
    )


async def handle_webhook(request: Request, pipeline: WebhookPipeline) -> JSONResponse:
    """Run one webhook delivery through the pipeline."""
    start = time.time()
    request_id = request.headers.get(REQUEST_ID_HEADER) or "-"
    settings = pipeline.settings

    body = await request.body()
    try:
        raw_body: str | None = body.decode("utf-8")
    except UnicodeDecodeError:
        raw_body = None

    # 1. Signature
    if settings.verification_enabled:
        valid = raw_body is not None and await pipeline.verifier.verify(
            raw_body, request.headers, request_id
        )
        if not valid:
            _log_webhook("unknown", None, "signature_failed", request_id, start)
            return _error(InvalidSignatureError(), request_id)
    elif settings.is_production:
        logger.error("PAYPAL_WEBHOOK_ID not set in production (request_id=%s)", request_id)
        _log_webhook("unknown", None, "not_configured", request_id, start)
        return _error(ConfigurationError(), request_id)

    # 2. Parse + validate
    try:
        if raw_body is None:
            raise InvalidJSONError("body is not UTF-8")
        event = parse_event(raw_body)
    except ValidationError as e:
        logger.warning("Rejected webhook body: %s (request_id=%s)", e, request_id)
        _log_webhook("unknown", None, e.code.lower(), request_id, start)
        return _error(e, request_id)

    # 3. Idempotency
    claim = await pipeline.guard.claim(event.id, event.event_type_raw, request_id)
    if claim is ClaimOutcome.DUPLICATE:
        _log_webhook(event.event_type_raw, event.id, "duplicate", request_id, start)
        return _respond({"received": True, "duplicate": True}, 200, request_id)
    if claim is ClaimOutcome.STORE_UNAVAILABLE:
        _log_webhook(event.event_type_raw, event.id, "idempotency_failed", request_id, start)
        return _error(IdempotencyCheckError(), request_id)

    # 4. Dispatch + dead-letter as one shielded unit: a client disconnect must
    #    neither abandon a transition nor skip the DLQ write for a failed one
    task = asyncio.ensure_future(_process(pipeline, event, request_id))
    _in_flight.add(task)
    task.add_done_callback(_in_flight.discard)
    if not await asyncio.shield(task):
        _log_webhook(event.event_type_raw, event.id, "dead_lettered", request_id, start)
        return _error(HandlerFailedError(), request_id)

    _log_webhook(event.event_type_raw, event.id, "processed", request_id, start)
    return _respond({"received": True}, 200, request_id)


async def _process(pipeline: WebhookPipeline, event: InboundEvent, request_id: str) -> bool:
    """Dispatch one claimed event; dead-letter it on failure. Returns success."""
    try:
        await pipeline.state_machine.dispatch(event, request_id)
    except Exception as e:
        logger.exception("Webhook handler failed for %s (request_id=%s)", event.event_type_raw, request_id)
        await _dead_letter(pipeline, event, e, request_id)
        return False
    return True


async def _dead_letter(
    pipeline: WebhookPipeline, event: InboundEvent, exc: Exception, request_id: str
) -> None:
    """Park a failed event. If even that fails, optionally free its claim."""
    stored = await pipeline.dead_letters.store(
        event.id,
        event.event_type_raw,
        event.raw_body,
        f"{type(exc).__name__}: {exc}",
        request_id,
    )
    if stored:
        return
    logger.error("Event lost from dead-letter queue (request_id=%s)", request_id)
    if pipeline.settings.release_claim_on_dlq_failure and event.id:
        await pipeline.guard.release(event.id, request_id)


async def handle_replay(request: Request, pipeline: WebhookPipeline) -> JSONResponse:
    """Admin replay of a pending dead-letter entry."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or "-"

    if not pipeline.replay_admin.authenticate(request.headers.get("authorization")):
        logger.warning("Replay rejected: bad admin credential (request_id=%s)", request_id)
        return _error(AuthError(), request_id)

    try:
        body = ReplayRequest.model_validate_json(await request.body())
    except PydanticValidationError:
        return _error(InvalidRequestError(), request_id)

    result = await pipeline.replay_admin.replay(body.event_id, request_id)
    if result.outcome is ReplayOutcome.NOT_FOUND:
        return _error(NotFoundError(), request_id)
    if result.outcome is ReplayOutcome.FAILED:
        return _error(ReplayFailedError(), request_id)
    return _respond(
        {"success": True, "event_id": body.event_id, "action": "replayed"}, 200, request_id
    )


def register_webhook_routes(app: FastAPI, pipeline: WebhookPipeline, limiter: Limiter) -> None:
    """Register the webhook endpoint routes on the FastAPI app."""

    @app.post(WEBHOOK_PATH)
    @limiter.limit(pipeline.settings.rate_limit)
    async def receive_webhook(request: Request):
        """Receive PayPal webhooks (signature-verified when configured)."""
        return await handle_webhook(request, pipeline)

    @app.get(WEBHOOK_PATH)
    async def webhook_health():
        """Health check."""
        return {
            "status": "healthy",
            "webhook": "PayPal Subscription Webhook",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.patch(WEBHOOK_PATH)
    async def replay_webhook(request: Request):
        """Replay a dead-lettered event (admin key required)."""
        return await handle_replay(request, pipeline)

    logger.info("Webhook routes registered: %s {POST,GET,PATCH}", WEBHOOK_PATH)
