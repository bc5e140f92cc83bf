"""Billing webhook signature verification.

The provider signs each delivery with a shared secret and sends
``t=<unix seconds>,v1=<hex>`` in the signature header, where the hex digest
is HMAC-SHA256 over ``"<t>.<raw body>"``. Several ``v1`` entries may be
present while the provider rotates secrets; any match is accepted.
Deliveries older than the tolerance are rejected so a captured request
cannot be replayed after its idempotency marker expires.

Usage:
    @router.post("/webhooks/billing", dependencies=[Depends(verify_webhook_signature)])
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time

from fastapi import Request

from kwcoord.core.config import WebhookSettings, settings
from kwcoord.core.errors import ConfigurationAppError, ValidationAppError

logger = logging.getLogger(__name__)

SIGNATURE_SCHEME = "v1"


def compute_signature(secret: str, timestamp: int, body: bytes) -> str:
    signed = f"{timestamp}.".encode() + body
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def _parse_header(header: str) -> tuple[int | None, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []
    for part in header.split(","):
        name, _, value = part.strip().partition("=")
        if name == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif name == SIGNATURE_SCHEME and value:
            signatures.append(value)
    return timestamp, signatures


def _invalid(reason: str) -> ValidationAppError:
    logger.warning("webhook.signature_rejected", extra={"reason": reason})
    return ValidationAppError(
        code="invalid_signature",
        message="Webhook signature verification failed",
        details={"hint": reason},
    )


def validate_signature(
    body: bytes,
    header: str | None,
    webhook_settings: WebhookSettings,
    *,
    now: float | None = None,
) -> None:
    """Check ``header`` against ``body``.

    Raises:
        ConfigurationAppError: No webhook secret is configured.
        ValidationAppError: The signature is missing, malformed, stale or
            does not match.
    """
    secret = webhook_settings.secret
    if not secret:
        logger.error("webhook.secret_missing")
        raise ConfigurationAppError(
            code="webhook_secret_missing",
            message="WEBHOOK_SECRET is not configured; billing deliveries cannot be verified.",
        )

    if not header:
        logger.warning("webhook.signature_missing")
        raise ValidationAppError(
            code="missing_signature",
            message=f"Missing {webhook_settings.signature_header} header",
        )

    timestamp, candidates = _parse_header(header)
    if timestamp is None or not candidates:
        raise _invalid("malformed_header")

    now = time.time() if now is None else now
    if abs(now - timestamp) > webhook_settings.tolerance_seconds:
        raise _invalid("timestamp_outside_tolerance")

    expected = compute_signature(secret, timestamp, body)
    if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
        raise _invalid("signature_mismatch")


async def verify_webhook_signature(request: Request) -> None:
    """FastAPI dependency rejecting unsigned or forged billing deliveries."""

    webhook_settings = settings.webhook
    body = await request.body()
    validate_signature(body, request.headers.get(webhook_settings.signature_header), webhook_settings)
