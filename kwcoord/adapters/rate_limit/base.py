"""Rate limiter interfaces.

The API depends on this abstraction (not the concrete implementation) so
the counter storage can change without touching the HTTP layer.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check.

    Attributes:
        allowed: Whether the request is allowed to proceed.
        limit: Max requests per window.
        remaining: Remaining requests in the current window (0 when blocked).
        reset_at: UNIX epoch seconds when the current window resets.
        retry_after_seconds: Suggested wait time in seconds when blocked.
        degraded: True when the decision came from the failure policy
            rather than from a counter.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after_seconds: int | None
    degraded: bool = False


class AbstractRateLimiter(ABC):
    """Interface for rate limiters."""

    @abstractmethod
    async def check(self, client_id: str, limit_per_window: int | None = None) -> RateLimitResult:
        """Count one request for ``client_id`` and decide whether it may proceed.

        Args:
            client_id: Trusted client identity (principal id or network-derived id).
            limit_per_window: Overrides the configured limit for this call.

        Returns:
            RateLimitResult describing whether it was allowed.
        """
        raise NotImplementedError
