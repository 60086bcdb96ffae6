"""Per-client-IP rate limiting for the webhook routes (slowapi).

Rate-limited requests get 429 with Retry-After before any body is read,
signature checked or storage touched.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from paypal_webhooks.config import Settings

logger = logging.getLogger(__name__)


def client_ip_resolver(settings: Settings):
    """Build a key function that trusts X-Forwarded-For only behind known proxies."""

    def _get_client_ip(request: Request) -> str:
        if settings.trusted_proxies:
            forwarded = request.headers.get("x-forwarded-for")
            if forwarded:
                return forwarded.split(",")[0].strip()
        return get_remote_address(request)

    return _get_client_ip


def build_limiter(settings: Settings) -> Limiter:
    """Limiter keyed by client IP.

    Counters live in Redis when REDIS_URL is set (shared across workers),
    otherwise in process memory.
    """
    if settings.rate_limit_storage_uri:
        return Limiter(
            key_func=client_ip_resolver(settings),
            storage_uri=settings.rate_limit_storage_uri,
        )
    return Limiter(key_func=client_ip_resolver(settings))


def _rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Handle rate limit exceeded errors."""
    retry_after = getattr(exc, "retry_after", 60)
    logger.warning("Rate limit exceeded on %s", request.url.path)
    return JSONResponse(
        {"error": "RATE_LIMITED", "message": "Rate limit exceeded", "retry_after": retry_after},
        status_code=429,
        headers={"Retry-After": str(retry_after)},
    )


def install_rate_limiting(app: FastAPI, limiter: Limiter) -> None:
    """Attach the limiter and its 429 handler to the app."""
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
