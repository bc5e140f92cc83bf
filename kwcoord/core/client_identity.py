"""Derive a trustworthy client id for rate limiting.

Authenticated callers are identified by the principal id the auth layer
places on ``request.state.principal_id``. Anonymous callers get a
network-derived id ``<ip>:<fingerprint>`` where the fingerprint is an HMAC
of the user agent, so two clients behind one NAT address rarely share a
budget and the raw user agent never reaches the store.

Proxy headers are only honoured when the deployment says a proxy sits in
front of the app; otherwise anyone could pick their own IP per request.
"""

from __future__ import annotations

import hashlib
import hmac
import ipaddress
import logging

from fastapi import Request

from kwcoord.core.config import RateLimitSettings, settings
from kwcoord.core.errors import ConfigurationAppError

logger = logging.getLogger(__name__)

PROXY_IP_HEADERS = ("cf-connecting-ip", "x-real-ip", "x-forwarded-for")
MIN_HMAC_SECRET_LENGTH = 32
_DEV_HMAC_SECRET = "development-only-insecure-fingerprint-secret"
UNKNOWN_IP = "unknown"


def should_trust_proxy(rate_settings: RateLimitSettings, *, is_production: bool) -> bool:
    if rate_settings.trust_proxy is not None:
        return rate_settings.trust_proxy
    return is_production


def _valid_ip(candidate: str, *, allow_private: bool) -> bool:
    try:
        ip = ipaddress.ip_address(candidate)
    except ValueError:
        return False
    if allow_private:
        return True
    return not (ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_unspecified or ip.is_reserved)


def get_client_ip(request: Request, *, trust_proxy: bool, allow_private: bool) -> str:
    """Return the caller's IP address.

    Proxy headers are checked in order (``CF-Connecting-IP``, ``X-Real-IP``,
    first ``X-Forwarded-For`` hop) when ``trust_proxy`` is set; the first
    valid address wins. Falls back to the socket peer.
    """

    if trust_proxy:
        for header in PROXY_IP_HEADERS:
            value = request.headers.get(header)
            if not value:
                continue
            candidate = value.split(",")[0].strip()
            if _valid_ip(candidate, allow_private=allow_private):
                return candidate
            logger.debug("client_identity.proxy_header_rejected", extra={"header": header})

    return request.client.host if request.client else UNKNOWN_IP


def get_hmac_secret(rate_settings: RateLimitSettings, *, is_production: bool) -> str:
    """Return the fingerprint secret.

    Raises:
        ConfigurationAppError: In production when the secret is missing or
            shorter than 32 characters.
    """
    secret = rate_settings.hmac_secret
    if is_production:
        if not secret or len(secret) < MIN_HMAC_SECRET_LENGTH:
            raise ConfigurationAppError(
                code="rate_limit_secret_invalid",
                message="RATE_LIMIT_HMAC_SECRET must be set to at least 32 characters in production.",
                details={"hint": "Generate one with: openssl rand -hex 32"},
            )
        return secret
    return secret or _DEV_HMAC_SECRET


def fingerprint_user_agent(user_agent: str, secret: str) -> str:
    return hmac.new(secret.encode(), user_agent.encode(), hashlib.sha256).hexdigest()[:8]


def get_client_id(request: Request) -> str:
    """Return the rate limit identity for ``request``.

    Raises:
        ConfigurationAppError: Unsafe fingerprint secret in production.
    """

    principal_id = getattr(request.state, "principal_id", None)
    if principal_id:
        return f"principal:{principal_id}"

    is_production = settings.is_production
    rate_settings = settings.rate_limit
    ip = get_client_ip(
        request,
        trust_proxy=should_trust_proxy(rate_settings, is_production=is_production),
        allow_private=not is_production,
    )
    secret = get_hmac_secret(rate_settings, is_production=is_production)
    return f"{ip}:{fingerprint_user_agent(request.headers.get('user-agent', ''), secret)}"
