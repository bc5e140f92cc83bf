"""Windowed usage metering against a quota.

Counters live under ``usage:<identity>:<window id>``. The call that creates
a counter also gives it a TTL covering the rest of its window, so the store
drops it when the window ends; there is no reset code.

``check_and_consume`` reads, compares and then increments. Two callers near
the limit can both pass the comparison before either increments, so the
allowed total may exceed ``limit`` by at most (concurrent callers - 1).
That overshoot is accepted in exchange for never looping on
compare-and-swap.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from kwcoord.adapters.store.base import AbstractKeyValueStore
from kwcoord.core.logging import hash_identifier
from kwcoord.schemas.identity import IdentityRecord
from kwcoord.services.windows import UsageWindow, limit_for, usage_window_for

logger = logging.getLogger(__name__)

USAGE_PREFIX = "usage:"
DENIED_LIMIT_EXCEEDED = "limit_exceeded"
DENIED_TRIAL_EXPIRED = "trial_expired"


def usage_key(identity_id: str, window_id: str) -> str:
    return f"{USAGE_PREFIX}{identity_id}:{window_id}"


@dataclass(frozen=True)
class UsageDecision:
    """Outcome of a usage check.

    Attributes:
        allowed: Whether the requested amount fits in the quota.
        used: Units consumed in the window (after this call when allowed).
        limit: Quota for the window.
        window_id: Identifier of the window the counter belongs to.
        resets_at: UNIX time at which the window ends.
        reason: Why a request was denied: ``"limit_exceeded"`` or
            ``"trial_expired"``. ``None`` when allowed.
    """

    allowed: bool
    used: int
    limit: int
    window_id: str
    resets_at: float
    reason: str | None = None

    @property
    def trial_expired(self) -> bool:
        return self.reason == DENIED_TRIAL_EXPIRED

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


class UsageMeter:
    """Tracks consumption per identity and window in the shared store."""

    def __init__(
        self,
        store: AbstractKeyValueStore,
        *,
        min_ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if min_ttl_seconds < 1:
            raise ValueError("min_ttl_seconds must be >= 1")
        self._store = store
        self._min_ttl = min_ttl_seconds
        self._clock = clock

    @staticmethod
    def _validate(identity_id: str, limit: int, amount: int) -> None:
        if not identity_id:
            raise ValueError("identity_id must be a non-empty string")
        if limit < 0:
            raise ValueError("limit must be >= 0")
        if amount < 1:
            raise ValueError("amount must be >= 1")

    async def _read(self, key: str) -> int:
        raw = await self._store.get(key)
        return int(raw) if raw is not None else 0

    async def _increment(self, key: str, amount: int, window: UsageWindow, now: float) -> int:
        new_value = await self._store.increment(key, amount)
        if new_value == amount:
            # This call created the counter: bind it to the window.
            ttl = max(window.seconds_remaining(now), self._min_ttl)
            await self._store.expire(key, ttl)
        return new_value

    async def check(
        self,
        identity_id: str,
        window: UsageWindow,
        limit: int,
        amount: int = 1,
    ) -> UsageDecision:
        """Report whether ``amount`` more units would fit, without consuming."""

        self._validate(identity_id, limit, amount)
        now = self._clock()
        window_id = window.key(now)
        used = await self._read(usage_key(identity_id, window_id))
        if window.is_closed(now):
            reason = DENIED_TRIAL_EXPIRED
        elif used + amount > limit:
            reason = DENIED_LIMIT_EXCEEDED
        else:
            reason = None
        return UsageDecision(
            allowed=reason is None,
            used=used,
            limit=limit,
            window_id=window_id,
            resets_at=window.ends_at(now),
            reason=reason,
        )

    async def consume(self, identity_id: str, window: UsageWindow, amount: int = 1) -> int:
        """Record ``amount`` units after work succeeded. Returns the new total."""

        self._validate(identity_id, 0, amount)
        now = self._clock()
        key = usage_key(identity_id, window.key(now))
        used = await self._increment(key, amount, window, now)
        logger.debug(
            "usage.consumed",
            extra={"identity_hash": hash_identifier(identity_id), "amount": amount, "used": used},
        )
        return used

    async def check_and_consume(
        self,
        identity_id: str,
        window: UsageWindow,
        limit: int,
        amount: int = 1,
    ) -> UsageDecision:
        """Consume ``amount`` units if they fit in the window's quota.

        Returns:
            UsageDecision; when not allowed nothing was written and ``used``
            is the current count.

        Raises:
            ValueError: For an empty identity, negative limit or amount < 1.
            StoreError: On infrastructure failure; never a silent grant/deny.
        """
        self._validate(identity_id, limit, amount)
        now = self._clock()
        window_id = window.key(now)
        key = usage_key(identity_id, window_id)
        resets_at = window.ends_at(now)
        identity_hash = hash_identifier(identity_id)

        current = await self._read(key)
        if window.is_closed(now) or current + amount > limit:
            reason = DENIED_TRIAL_EXPIRED if window.is_closed(now) else DENIED_LIMIT_EXCEEDED
            logger.info(
                "usage.denied",
                extra={
                    "identity_hash": identity_hash,
                    "window_id": window_id,
                    "used": current,
                    "limit": limit,
                    "amount": amount,
                    "reason": reason,
                },
            )
            return UsageDecision(
                allowed=False,
                used=current,
                limit=limit,
                window_id=window_id,
                resets_at=resets_at,
                reason=reason,
            )

        used = await self._increment(key, amount, window, now)
        if used > limit:
            logger.warning(
                "usage.overshoot",
                extra={"identity_hash": identity_hash, "window_id": window_id, "used": used, "limit": limit},
            )
        return UsageDecision(
            allowed=True, used=used, limit=limit, window_id=window_id, resets_at=resets_at
        )

    async def check_and_consume_for(self, record: IdentityRecord, amount: int = 1) -> UsageDecision:
        """Meter ``record`` against its tier's window and quota."""

        return await self.check_and_consume(
            record.identity_id,
            usage_window_for(record),
            limit_for(record),
            amount,
        )
