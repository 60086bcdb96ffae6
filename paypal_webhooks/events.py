"""Inbound PayPal event model.

Parses the raw request body into an InboundEvent and maps the provider's
event_type string onto the closed EventType enum. Unknown event types are
not errors: they parse with event_type=None and the state machine logs and
skips them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from paypal_webhooks.errors import InvalidJSONError, ValidationError


class EventType(str, Enum):
    """Subscription lifecycle events handled by the pipeline.

    Values are the provider's canonical names.
    """
    SUBSCRIPTION_ACTIVATED = "BILLING.SUBSCRIPTION.ACTIVATED"
    PAYMENT_SALE_COMPLETED = "PAYMENT.SALE.COMPLETED"
    SUBSCRIPTION_CANCELLED = "BILLING.SUBSCRIPTION.CANCELLED"
    SUBSCRIPTION_SUSPENDED = "BILLING.SUBSCRIPTION.SUSPENDED"
    SUBSCRIPTION_PAYMENT_FAILED = "BILLING.SUBSCRIPTION.PAYMENT.FAILED"
    SALE_REFUNDED = "PAYMENT.SALE.REFUNDED"
    SUBSCRIPTION_RENEWED = "BILLING.SUBSCRIPTION.RENEWED"

    @classmethod
    def parse(cls, raw: str | None) -> EventType | None:
        """Resolve a provider event name (or short alias). None if unknown."""
        if not raw:
            return None
        name = raw.strip().upper()
        try:
            return cls(name)
        except ValueError:
            return _ALIASES.get(name)


# Short names without the BILLING./PAYMENT. prefix
_ALIASES: dict[str, EventType] = {
    "SUBSCRIPTION.ACTIVATED": EventType.SUBSCRIPTION_ACTIVATED,
    "SUBSCRIPTION.CANCELLED": EventType.SUBSCRIPTION_CANCELLED,
    "SUBSCRIPTION.SUSPENDED": EventType.SUBSCRIPTION_SUSPENDED,
    "SUBSCRIPTION.PAYMENT.FAILED": EventType.SUBSCRIPTION_PAYMENT_FAILED,
    "SUBSCRIPTION.RENEWED": EventType.SUBSCRIPTION_RENEWED,
    "SALE.REFUNDED": EventType.SALE_REFUNDED,
    "SALE.COMPLETED": EventType.PAYMENT_SALE_COMPLETED,
}


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


@dataclass
class ResourcePayload:
    """The `resource` object of a PayPal event (fields the pipeline reads)."""

    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str | None:
        return _str_or_none(self.raw.get("id"))

    @property
    def custom_id(self) -> str | None:
        """Internal user id passed to PayPal at checkout."""
        return _str_or_none(self.raw.get("custom_id"))

    @property
    def plan_id(self) -> str | None:
        return _str_or_none(self.raw.get("plan_id"))

    @property
    def next_billing_time(self) -> str | None:
        billing = self.raw.get("billing_info")
        if isinstance(billing, dict):
            return _str_or_none(billing.get("next_billing_time"))
        return None

    @property
    def billing_agreement_id(self) -> str | None:
        return _str_or_none(self.raw.get("billing_agreement_id"))

    @property
    def parent_payment(self) -> str | None:
        return _str_or_none(self.raw.get("parent_payment"))

    @property
    def status_update_reason(self) -> str | None:
        return _str_or_none(self.raw.get("status_update_reason"))

    @property
    def amount(self) -> Decimal:
        total = self._amount_field("total")
        try:
            return Decimal(total) if total else Decimal("0")
        except InvalidOperation:
            return Decimal("0")

    @property
    def currency(self) -> str:
        return self._amount_field("currency") or "USD"

    def _amount_field(self, key: str) -> str | None:
        amount = self.raw.get("amount")
        if isinstance(amount, dict):
            return _str_or_none(amount.get(key))
        return None


@dataclass
class InboundEvent:
    """A parsed webhook notification."""

    event_type_raw: str
    resource: ResourcePayload
    id: str | None = None
    raw_body: str = ""

    @property
    def event_type(self) -> EventType | None:
        return EventType.parse(self.event_type_raw)


def parse_event(raw_body: str) -> InboundEvent:
    """Parse and validate a raw webhook body.

    Raises:
        InvalidJSONError: body is not JSON.
        ValidationError: event_type or resource missing or malformed.
    """
    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, TypeError) as e:
        raise InvalidJSONError(f"Invalid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise ValidationError("Payload must be a JSON object")

    event_type = payload.get("event_type")
    if not isinstance(event_type, str) or not event_type.strip():
        raise ValidationError("event_type is required")

    resource = payload.get("resource")
    if not isinstance(resource, dict):
        raise ValidationError("resource must be an object")

    return InboundEvent(
        id=_str_or_none(payload.get("id")),
        event_type_raw=event_type.strip(),
        resource=ResourcePayload(raw=resource),
        raw_body=raw_body,
    )
