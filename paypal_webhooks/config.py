"""Runtime configuration read from the environment.

All settings are collected into one immutable Settings object at startup
and passed explicitly to the components that need them. Nothing else in
the package reads os.environ.

Security: client secret and admin key are never logged (repr=False).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

_LIVE_API_BASE = "https://api-m.paypal.com"
_SANDBOX_API_BASE = "https://api-m.sandbox.paypal.com"

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_TRUTHY = {"1", "true", "yes", "on"}


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring non-numeric %s=%r", name, raw)
        return default


@dataclass(frozen=True)
class Settings:
    """Pipeline settings. Build with Settings.from_env() in production."""

    environment: str = "development"
    webhook_id: str = ""
    api_base: str = _SANDBOX_API_BASE
    client_id: str = ""
    client_secret: str = field(default="", repr=False)
    admin_key: str = field(default="", repr=False)
    database_url: str = field(default="", repr=False)
    retry_base_delay: float = 0.2
    grace_period_days: float = 3
    rate_limit: str = "60/minute"
    rate_limit_storage_uri: str = field(default="", repr=False)
    trusted_proxies: str = ""
    plan_id_premium: str = ""
    resend_api_key: str = field(default="", repr=False)
    resend_from_email: str = ""
    release_claim_on_dlq_failure: bool = True
    http_timeout: float = 10.0
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def verification_enabled(self) -> bool:
        return bool(self.webhook_id)

    @classmethod
    def from_env(cls) -> Settings:
        environment = _env("APP_ENV", "development") or "development"
        default_base = _LIVE_API_BASE if environment.lower() == "production" else _SANDBOX_API_BASE
        return cls(
            environment=environment,
            webhook_id=_env("PAYPAL_WEBHOOK_ID"),
            api_base=(_env("PAYPAL_API_BASE") or default_base).rstrip("/"),
            client_id=_env("PAYPAL_CLIENT_ID"),
            client_secret=_env("PAYPAL_CLIENT_SECRET"),
            admin_key=_env("WEBHOOK_ADMIN_KEY"),
            database_url=_env("DATABASE_URL"),
            retry_base_delay=_env_float("RETRY_BASE_DELAY", 0.2),
            grace_period_days=_env_float("GRACE_PERIOD_DAYS", 3),
            rate_limit=_env("WEBHOOK_RATE_LIMIT") or "60/minute",
            rate_limit_storage_uri=_env("REDIS_URL"),
            trusted_proxies=_env("TRUSTED_PROXIES"),
            plan_id_premium=_env("PAYPAL_PLAN_ID_PREMIUM"),
            resend_api_key=_env("RESEND_API_KEY"),
            resend_from_email=_env("RESEND_FROM_EMAIL"),
            release_claim_on_dlq_failure=(
                _env("RELEASE_CLAIM_ON_DLQ_FAILURE", "true").lower() in _TRUTHY
            ),
            http_timeout=_env_float("PAYPAL_HTTP_TIMEOUT", 10.0),
            log_level=_env("LOG_LEVEL", "INFO").upper() or "INFO",
        )

    def tier_for_plan(self, plan_id: str | None) -> str:
        """Map a PayPal plan id to an internal subscription tier.

        Unknown or missing plan ids fall back to basic.
        """
        if plan_id and plan_id == self.plan_id_premium:
            return "premium"
        return "basic"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once. Safe to call repeatedly."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=_LOG_FORMAT)
