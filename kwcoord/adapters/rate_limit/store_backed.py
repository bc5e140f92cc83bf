"""Fixed-window rate limiter backed by the shared key-value store.

Notes:
- Windows are aligned to multiples of ``window_seconds``; the counter key
  embeds the window start and expires when the window ends.
- Increment-then-compare: every request increments, and is allowed only if
  the new count is within the limit. Exactly ``limit`` requests pass per
  window, however many arrive concurrently.
- Best effort: store failures are resolved by the configured fail policy and
  never raise to the caller.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Callable, Literal

from kwcoord.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from kwcoord.adapters.store.base import AbstractKeyValueStore
from kwcoord.core.errors import StoreError
from kwcoord.core.logging import hash_identifier
from kwcoord.services.windows import FixedWindow

logger = logging.getLogger(__name__)

RATE_PREFIX = "rate:"
FAIL_CLOSED_RETRY_AFTER_SECONDS = 60


def rate_key(client_id: str, window_start: int) -> str:
    return f"{RATE_PREFIX}{client_id}:{window_start}"


class StoreFixedWindowRateLimiter(AbstractRateLimiter):
    """Rate limiter counting requests per client and fixed window."""

    def __init__(
        self,
        store: AbstractKeyValueStore,
        *,
        limit: int,
        window_seconds: int,
        fail_mode: Literal["open", "closed"] = "closed",
        fail_open_when_unconfigured: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the limiter.

        Args:
            store: Shared key-value store.
            limit: Maximum number of allowed requests per window.
            window_seconds: Size of the fixed window in seconds.
            fail_mode: Decision when the store errors: allow ("open") or deny ("closed").
            fail_open_when_unconfigured: Allow all requests when the store
                is not configured at all, regardless of ``fail_mode``.
            clock: Time source function returning UNIX time in seconds.

        Raises:
            ValueError: If limit or window_seconds are invalid.
        """
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")
        if fail_mode not in ("open", "closed"):
            raise ValueError("fail_mode must be 'open' or 'closed'")

        self._store = store
        self._limit = limit
        self._window = FixedWindow(window_seconds)
        self._fail_mode = fail_mode
        self._fail_open_when_unconfigured = fail_open_when_unconfigured
        self._clock = clock

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def window_seconds(self) -> int:
        return self._window.length_seconds

    async def check(self, client_id: str, limit_per_window: int | None = None) -> RateLimitResult:
        """Count one request and decide.

        Raises:
            ValueError: If ``client_id`` is empty or the limit override is invalid.
        """
        if not client_id:
            raise ValueError("client_id must be a non-empty string")
        limit = self._limit if limit_per_window is None else limit_per_window
        if limit < 1:
            raise ValueError("limit_per_window must be >= 1")

        now = self._clock()
        window_start = self._window.start(now)
        reset_at = window_start + self._window.length_seconds
        key = rate_key(client_id, window_start)

        try:
            count = await self._store.increment(key, 1)
            if count == 1:
                await self._store.expire(key, self._window.seconds_remaining(now))
        except StoreError as exc:
            return self._on_store_failure(exc, client_id=client_id, limit=limit, reset_at=reset_at)

        if count <= limit:
            return RateLimitResult(
                allowed=True,
                limit=limit,
                remaining=limit - count,
                reset_at=reset_at,
                retry_after_seconds=None,
            )

        return RateLimitResult(
            allowed=False,
            limit=limit,
            remaining=0,
            reset_at=reset_at,
            retry_after_seconds=max(0, int(math.ceil(reset_at - now))),
        )

    def _on_store_failure(
        self,
        exc: StoreError,
        *,
        client_id: str,
        limit: int,
        reset_at: int,
    ) -> RateLimitResult:
        fail_open = self._fail_mode == "open" or (
            self._fail_open_when_unconfigured and not self._store.configured
        )
        logger.log(
            logging.WARNING if fail_open else logging.ERROR,
            "rate_limit.store_failure",
            extra={
                "client_hash": hash_identifier(client_id),
                "error_code": exc.code,
                "decision": "allow" if fail_open else "deny",
            },
        )
        if fail_open:
            return RateLimitResult(
                allowed=True,
                limit=limit,
                remaining=limit,
                reset_at=reset_at,
                retry_after_seconds=None,
                degraded=True,
            )
        return RateLimitResult(
            allowed=False,
            limit=limit,
            remaining=0,
            reset_at=reset_at,
            retry_after_seconds=FAIL_CLOSED_RETRY_AFTER_SECONDS,
            degraded=True,
        )

    async def clear(self) -> int:
        """Delete every rate counter (maintenance/testing). Returns keys removed."""

        removed = 0
        async for key in self._store.scan_prefix(RATE_PREFIX):
            if await self._store.delete(key):
                removed += 1
        logger.info("rate_limit.cleared", extra={"removed": removed})
        return removed
