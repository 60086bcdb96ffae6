"""Subscription state machine: applies PayPal events to subscription records.

Each EventType has exactly one handler, registered in a lookup map that is
checked for completeness at construction. A handler performs the
authoritative writes (each through the RetryExecutor) and returns a
Transition listing best-effort effects (audit rows, notifications). The
effects run only after the primary writes succeed; an effect failure is
logged and never changes the outcome.

Error contract:
- Missing required resource fields raise ValidationError
- Primary writes that still fail after retries raise PersistenceError
- A prior-state read that is still unreachable after retries raises
  TransportError; any other failed read raises PersistenceError
- Nothing here writes to the dead-letter queue; failures propagate to the
  ingress (or replay) boundary, which handles them once per event

Prior state is read immediately before each dependent write. The read is
not a lock: concurrent redelivery of one event is stopped upstream by the
IdempotencyGuard.

Logs carry event types and request ids only, never user or subscription ids.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from paypal_webhooks.config import Settings
from paypal_webhooks.errors import PersistenceError, TransportError, ValidationError
from paypal_webhooks.events import EventType, InboundEvent
from paypal_webhooks.notifications import (
    NotificationMessage,
    Notifier,
    grace_period_message,
    payment_failed_message,
)
from paypal_webhooks.retry import RetryExecutor
from paypal_webhooks.storage.protocol import StorageClient, StorageErrorKind, StorageResult

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_TABLE = "subscriptions"
PROFILES_TABLE = "profiles"
AUDIT_TABLE = "subscription_audit"
PAYMENTS_TABLE = "payments"
PAYMENT_FAILURES_TABLE = "payment_failures"

STATUS_ACTIVE = "active"
STATUS_SUSPENDED = "suspended"
STATUS_CANCELLED = "cancelled"

FREE_TIER = "free"

_SUBSCRIPTION_COLUMNS = ["user_id", "status", "plan_type", "paypal_subscription_id"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Effect:
    """A best-effort step run after the primary writes commit."""
    name: str
    run: Callable[[], Awaitable[bool]]


@dataclass
class Transition:
    """What a handler did, plus the effects still to run."""
    applied: bool = True
    subscription_id: str | None = None
    old_status: str | None = None
    new_status: str | None = None
    effects: list[Effect] = field(default_factory=list)


@dataclass
class TransitionResult:
    """Outcome of dispatching one event."""
    event_type: str
    handled: bool
    applied: bool = False
    subscription_id: str | None = None
    old_status: str | None = None
    new_status: str | None = None
    effects: dict[str, bool] = field(default_factory=dict)


Handler = Callable[[InboundEvent, str], Awaitable[Transition]]


class SubscriptionStateMachine:
    """Routes events to transition handlers.

    Args:
        storage: Storage client for all reads and writes.
        retry: RetryExecutor wrapping every storage call.
        settings: Grace period length and plan tier mapping.
        notifiers: Channels used for subscriber notifications.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        storage: StorageClient,
        retry: RetryExecutor,
        settings: Settings,
        notifiers: list[Notifier] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._storage = storage
        self._retry = retry
        self._settings = settings
        self._notifiers = list(notifiers or [])
        self._clock = clock
        self._handlers: dict[EventType, Handler] = {
            EventType.SUBSCRIPTION_ACTIVATED: self._on_activated,
            EventType.PAYMENT_SALE_COMPLETED: self._on_sale_completed,
            EventType.SUBSCRIPTION_CANCELLED: self._on_cancelled,
            EventType.SUBSCRIPTION_SUSPENDED: self._on_suspended,
            EventType.SUBSCRIPTION_PAYMENT_FAILED: self._on_payment_failed,
            EventType.SALE_REFUNDED: self._on_refunded,
            EventType.SUBSCRIPTION_RENEWED: self._on_renewed,
        }
        missing = set(EventType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for event types: {sorted(m.value for m in missing)}")

    async def dispatch(self, event: InboundEvent, request_id: str = "-") -> TransitionResult:
        """Apply one event. Unrecognized event types are a logged no-op."""
        event_type = event.event_type
        if event_type is None:
            logger.info("Unhandled event type: %s (request_id=%s)", event.event_type_raw, request_id)
            return TransitionResult(event_type=event.event_type_raw, handled=False)

        logger.info("Processing event: %s (request_id=%s)", event_type.value, request_id)
        transition = await self._handlers[event_type](event, request_id)
        outcomes = await self._run_effects(transition.effects, event_type, request_id)
        return TransitionResult(
            event_type=event_type.value,
            handled=True,
            applied=transition.applied,
            subscription_id=transition.subscription_id,
            old_status=transition.old_status,
            new_status=transition.new_status,
            effects=outcomes,
        )

    # ── Storage helpers ───────────────────────────────────────────────────

    async def _write(self, label: str, op: Callable[[], Awaitable[StorageResult]]) -> StorageResult:
        """Primary write: retried, raises PersistenceError when it still fails."""
        result = await self._retry.run(op, label=label)
        if not result.ok:
            raise PersistenceError(f"{label} failed: {result.error}", storage_error=result.error)
        return result

    async def _load_subscription(self, subscription_id: str) -> dict[str, Any] | None:
        """Read the row a transition is about to change."""
        result = await self._retry.run(
            lambda: self._storage.select_one(
                SUBSCRIPTIONS_TABLE,
                {"paypal_subscription_id": subscription_id},
                _SUBSCRIPTION_COLUMNS,
            ),
            label="subscription lookup",
        )
        if not result.ok:
            if result.error.kind is StorageErrorKind.TRANSIENT:
                raise TransportError(f"subscription lookup unreachable: {result.error}", storage_error=result.error)
            raise PersistenceError(f"subscription lookup failed: {result.error}", storage_error=result.error)
        return result.data

    async def _lookup_user_id(self, subscription_id: str | None, request_id: str) -> str | None:
        """Best-effort user lookup; a failed read yields None."""
        if not subscription_id:
            return None
        result = await self._retry.run(
            lambda: self._storage.select_one(
                SUBSCRIPTIONS_TABLE, {"paypal_subscription_id": subscription_id}, ["user_id"]
            ),
            label="subscription user lookup",
        )
        if not result.ok:
            logger.warning("User lookup failed, continuing without user (request_id=%s)", request_id)
            return None
        return (result.data or {}).get("user_id")

    async def _set_subscription(self, subscription_id: str, values: dict[str, Any]) -> None:
        values = {**values, "updated_at": self._clock()}
        await self._write(
            "subscription update",
            lambda: self._storage.update(
                SUBSCRIPTIONS_TABLE, values, {"paypal_subscription_id": subscription_id}
            ),
        )

    async def _set_profile_tier(self, user_id: str | None, tier: str) -> None:
        if not user_id:
            return
        await self._write(
            "profile tier update",
            lambda: self._storage.update(PROFILES_TABLE, {"subscription_tier": tier}, {"id": user_id}),
        )

    # ── Effects ───────────────────────────────────────────────────────────

    def _audit_effect(
        self,
        event_type: EventType,
        before: dict[str, Any],
        new_status: str,
        new_tier: str | None,
    ) -> Effect:
        row = {
            "user_id": before.get("user_id"),
            "paypal_subscription_id": before.get("paypal_subscription_id"),
            "old_status": before.get("status"),
            "new_status": new_status,
            "old_tier": before.get("plan_type"),
            "new_tier": new_tier,
            "event_type": event_type.value,
            "created_at": self._clock(),
        }

        async def _run() -> bool:
            result = await self._storage.insert(AUDIT_TABLE, row)
            if not result.ok:
                logger.warning("Audit insert failed: %s", result.error)
            return result.ok

        return Effect(name="audit", run=_run)

    def _notify_effects(self, message: NotificationMessage) -> list[Effect]:
        effects = []
        for notifier in self._notifiers:
            if not notifier.is_configured:
                continue

            async def _run(notifier: Notifier = notifier) -> bool:
                sent = await notifier.send(message)
                if not sent.success:
                    logger.warning(
                        "Notification %s via %s failed: %s",
                        message.type,
                        sent.channel_id,
                        sent.error,
                    )
                return sent.success

            effects.append(Effect(name=f"notify:{notifier.channel_id}", run=_run))
        return effects

    async def _run_effects(
        self, effects: list[Effect], event_type: EventType, request_id: str
    ) -> dict[str, bool]:
        outcomes: dict[str, bool] = {}
        for effect in effects:
            try:
                outcomes[effect.name] = await effect.run()
            except Exception:
                logger.warning(
                    "Post-transition effect %s failed for %s (request_id=%s)",
                    effect.name,
                    event_type.value,
                    request_id,
                    exc_info=True,
                )
                outcomes[effect.name] = False
        return outcomes

    # ── Handlers ──────────────────────────────────────────────────────────

    async def _on_activated(self, event: InboundEvent, request_id: str) -> Transition:
        subscription_id = event.resource.id
        user_id = event.resource.custom_id
        if not subscription_id or not user_id:
            raise ValidationError("activation requires resource.id and resource.custom_id")

        plan_type = self._settings.tier_for_plan(event.resource.plan_id)
        params = {
            "p_user_id": user_id,
            "p_subscription_id": subscription_id,
            "p_plan_type": plan_type,
            "p_current_period_end": event.resource.next_billing_time,
            "p_event_type": EventType.SUBSCRIPTION_ACTIVATED.value,
        }
        await self._write(
            "activate_subscription", lambda: self._storage.rpc("activate_subscription", params)
        )
        logger.info("Subscription activated (plan=%s, request_id=%s)", plan_type, request_id)
        return Transition(subscription_id=subscription_id, new_status=STATUS_ACTIVE)

    async def _on_sale_completed(self, event: InboundEvent, request_id: str) -> Transition:
        resource = event.resource
        subscription_id = resource.billing_agreement_id
        user_id = await self._lookup_user_id(subscription_id, request_id)
        row = {
            "paypal_subscription_id": subscription_id,
            "paypal_transaction_id": resource.id or "",
            "amount": resource.amount,
            "currency": resource.currency,
            "status": "completed",
            "paid_at": self._clock(),
            "user_id": user_id,
        }
        await self._write("payment insert", lambda: self._storage.insert(PAYMENTS_TABLE, row))
        logger.info("Payment completed (currency=%s, request_id=%s)", resource.currency, request_id)
        return Transition(subscription_id=subscription_id)

    async def _on_cancelled(self, event: InboundEvent, request_id: str) -> Transition:
        return await self._cancel(
            EventType.SUBSCRIPTION_CANCELLED, self._require_id(event), request_id
        )

    async def _on_refunded(self, event: InboundEvent, request_id: str) -> Transition:
        subscription_id = event.resource.billing_agreement_id or event.resource.parent_payment
        if not subscription_id:
            logger.warning("Refund without a resolvable subscription (request_id=%s)", request_id)
            return Transition(applied=False)
        return await self._cancel(EventType.SALE_REFUNDED, subscription_id, request_id)

    async def _cancel(self, event_type: EventType, subscription_id: str, request_id: str) -> Transition:
        before = await self._load_subscription(subscription_id)
        if before is None:
            return self._missing(event_type, subscription_id, request_id)

        await self._set_subscription(subscription_id, {"status": STATUS_CANCELLED})
        await self._set_profile_tier(before.get("user_id"), FREE_TIER)
        logger.info("Subscription cancelled via %s (request_id=%s)", event_type.value, request_id)
        before = {**before, "paypal_subscription_id": subscription_id}
        return Transition(
            subscription_id=subscription_id,
            old_status=before.get("status"),
            new_status=STATUS_CANCELLED,
            effects=[self._audit_effect(event_type, before, STATUS_CANCELLED, FREE_TIER)],
        )

    async def _on_suspended(self, event: InboundEvent, request_id: str) -> Transition:
        subscription_id = self._require_id(event)
        before = await self._load_subscription(subscription_id)
        if before is None:
            return self._missing(EventType.SUBSCRIPTION_SUSPENDED, subscription_id, request_id)

        grace_period_end = self._clock() + timedelta(days=self._settings.grace_period_days)
        await self._set_subscription(
            subscription_id, {"status": STATUS_SUSPENDED, "grace_period_end": grace_period_end}
        )
        logger.info("Subscription suspended (request_id=%s)", request_id)

        before = {**before, "paypal_subscription_id": subscription_id}
        effects = [
            self._audit_effect(
                EventType.SUBSCRIPTION_SUSPENDED, before, STATUS_SUSPENDED, before.get("plan_type")
            )
        ]
        if before.get("user_id"):
            effects += self._notify_effects(grace_period_message(before["user_id"], grace_period_end))
        return Transition(
            subscription_id=subscription_id,
            old_status=before.get("status"),
            new_status=STATUS_SUSPENDED,
            effects=effects,
        )

    async def _on_payment_failed(self, event: InboundEvent, request_id: str) -> Transition:
        subscription_id = event.resource.id
        reason = event.resource.status_update_reason or "Payment failed"
        user_id = await self._lookup_user_id(subscription_id, request_id)
        row = {
            "paypal_subscription_id": subscription_id,
            "user_id": user_id,
            "failed_at": self._clock(),
            "reason": reason,
        }
        await self._write(
            "payment failure insert", lambda: self._storage.insert(PAYMENT_FAILURES_TABLE, row)
        )
        logger.info("Payment failed for subscription (request_id=%s)", request_id)

        effects = self._notify_effects(payment_failed_message(user_id, reason)) if user_id else []
        return Transition(subscription_id=subscription_id, effects=effects)

    async def _on_renewed(self, event: InboundEvent, request_id: str) -> Transition:
        subscription_id = self._require_id(event)
        before = await self._load_subscription(subscription_id)
        if before is None:
            return self._missing(EventType.SUBSCRIPTION_RENEWED, subscription_id, request_id)

        values: dict[str, Any] = {"status": STATUS_ACTIVE, "grace_period_end": None}
        if event.resource.next_billing_time:
            values["current_period_end"] = event.resource.next_billing_time
        await self._set_subscription(subscription_id, values)
        logger.info("Subscription renewed (request_id=%s)", request_id)

        before = {**before, "paypal_subscription_id": subscription_id}
        return Transition(
            subscription_id=subscription_id,
            old_status=before.get("status"),
            new_status=STATUS_ACTIVE,
            effects=[
                self._audit_effect(
                    EventType.SUBSCRIPTION_RENEWED, before, STATUS_ACTIVE, before.get("plan_type")
                )
            ],
        )

    # ── Misc ──────────────────────────────────────────────────────────────

    @staticmethod
    def _require_id(event: InboundEvent) -> str:
        if not event.resource.id:
            raise ValidationError(f"{event.event_type_raw} requires resource.id")
        return event.resource.id

    @staticmethod
    def _missing(event_type: EventType, subscription_id: str, request_id: str) -> Transition:
        logger.warning(
            "%s for unknown subscription, skipping (request_id=%s)", event_type.value, request_id
        )
        return Transition(applied=False, subscription_id=subscription_id)
