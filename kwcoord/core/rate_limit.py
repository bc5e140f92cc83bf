"""Rate limiting dependency for FastAPI routes.

This module wires the rate limiting adapter into the HTTP layer.

Design goals:
- Minimal coupling: API routes depend on a dependency function only.
- Shared state: counters live in the key-value store, so the budget holds
  across workers.
- Trusted identity: the principal id when authenticated, otherwise a
  network-derived id (see ``kwcoord.core.client_identity``).
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request, status

from kwcoord.core.client_identity import get_client_id
from kwcoord.core.config import settings
from kwcoord.core.dependencies import get_rate_limiter
from kwcoord.core.logging import hash_identifier

logger = logging.getLogger(__name__)


async def enforce_rate_limit(request: Request) -> None:
    """FastAPI dependency enforcing rate limits.

    When enabled, consumes 1 unit from the requester's budget. If the requester
    exceeds the configured rate, raises HTTP 429.

    Args:
        request: FastAPI request.

    Raises:
        HTTPException: 429 Too Many Requests when rate limit is exceeded.
        ConfigurationAppError: Client ids cannot be derived safely.
    """

    if not settings.rate_limit.enabled:
        return

    client_id = get_client_id(request)
    key_type = "principal" if client_id.startswith("principal:") else "network"
    key_hash = hash_identifier(client_id)

    result = await get_rate_limiter().check(client_id)
    if result.allowed:
        logger.debug(
            "rate_limit.allowed",
            extra={
                "key_type": key_type,
                "key_hash": key_hash,
                "limit": result.limit,
                "remaining": result.remaining,
                "degraded": result.degraded,
            },
        )
        return

    retry_after = result.retry_after_seconds or 0
    logger.warning(
        "rate_limit.exceeded",
        extra={
            "key_type": key_type,
            "key_hash": key_hash,
            "limit": result.limit,
            "remaining": result.remaining,
            "retry_after_s": retry_after,
            "degraded": result.degraded,
        },
    )

    headers: dict[str, str] = {}
    if settings.rate_limit.include_headers:
        headers["Retry-After"] = str(retry_after)
        headers["X-RateLimit-Limit"] = str(result.limit)
        headers["X-RateLimit-Remaining"] = str(result.remaining)
        headers["X-RateLimit-Reset"] = str(result.reset_at)

    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail="Rate limit exceeded. Try again later.",
        headers=headers or None,
    )
