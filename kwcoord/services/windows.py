"""Counter windows.

A window names the period a counter belongs to and says how long that
period has left. Counters embed the window id in their key and expire with
the window, so a new period starts from zero without any reset code.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from kwcoord.core.config import CoordinationSettings, settings
from kwcoord.schemas.identity import IdentityRecord, Tier


class UsageWindow(ABC):
    """A family of consecutive, non-overlapping time windows."""

    @abstractmethod
    def key(self, now: float) -> str:
        """Identifier of the window containing ``now``."""

    @abstractmethod
    def ends_at(self, now: float) -> float:
        """UNIX time at which the window containing ``now`` ends."""

    def seconds_remaining(self, now: float) -> int:
        return max(1, int(math.ceil(self.ends_at(now) - now)))

    def is_closed(self, now: float) -> bool:
        """Whether no further usage may be granted in this family of windows."""
        return False


class FixedWindow(UsageWindow):
    """Windows of ``length_seconds`` aligned to multiples of the length."""

    def __init__(self, length_seconds: int) -> None:
        if length_seconds < 1:
            raise ValueError("length_seconds must be >= 1")
        self.length_seconds = length_seconds

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"FixedWindow(length_seconds={self.length_seconds})"

    def start(self, now: float) -> int:
        return int(now // self.length_seconds) * self.length_seconds

    def key(self, now: float) -> str:
        return str(self.start(now))

    def ends_at(self, now: float) -> float:
        return float(self.start(now) + self.length_seconds)


class CalendarMonthWindow(UsageWindow):
    """UTC calendar months, identified as ``YYYY-MM``."""

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return "CalendarMonthWindow()"

    def key(self, now: float) -> str:
        return datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m")

    def ends_at(self, now: float) -> float:
        current = datetime.fromtimestamp(now, tz=timezone.utc)
        if current.month == 12:
            nxt = datetime(current.year + 1, 1, 1, tzinfo=timezone.utc)
        else:
            nxt = datetime(current.year, current.month + 1, 1, tzinfo=timezone.utc)
        return nxt.timestamp()


class TrialWindow(UsageWindow):
    """A single, non-renewing window from trial start to trial expiry.

    The id is fixed for the whole trial (``trial-2026-10-19``), so quota
    consumed during the trial is never handed back. Once ``expires_at`` has
    passed the window is closed and the meter denies every request.
    """

    def __init__(self, started_at: float, expires_at: float) -> None:
        if expires_at <= started_at:
            raise ValueError("expires_at must be after started_at")
        self.started_at = started_at
        self.expires_at = expires_at

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"TrialWindow(started_at={self.started_at}, expires_at={self.expires_at})"

    def key(self, now: float) -> str:
        anchor = datetime.fromtimestamp(self.started_at, tz=timezone.utc).strftime("%Y-%m-%d")
        return f"trial-{anchor}"

    def ends_at(self, now: float) -> float:
        return self.expires_at

    def is_closed(self, now: float) -> bool:
        return now >= self.expires_at


def usage_window_for(record: IdentityRecord) -> UsageWindow:
    """Pick the metering window for an identity's tier.

    Trial identities get one window spanning their trial; everyone else is
    metered per calendar month.
    """

    if record.tier == Tier.TRIAL:
        return TrialWindow(record.trial_started_at.timestamp(), record.trial_expires_at.timestamp())
    return CalendarMonthWindow()


def limit_for(record: IdentityRecord, coordination: CoordinationSettings | None = None) -> int:
    """Quota for ``record``'s tier over the window from ``usage_window_for``."""

    coordination = coordination or settings.coordination
    if record.tier == Tier.TRIAL:
        return coordination.trial_limit
    return coordination.pro_limit
