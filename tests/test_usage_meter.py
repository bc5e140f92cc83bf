"""Tests for windowed usage metering."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from kwcoord.core.config import settings
from kwcoord.core.errors import StoreUnavailableError
from kwcoord.schemas.identity import IdentityRecord, Tier
from kwcoord.services.usage_meter import UsageMeter, usage_key
from kwcoord.services.windows import FixedWindow, usage_window_for


@pytest.mark.asyncio
async def test_sequential_calls_stop_at_limit(store, clock) -> None:
    meter = UsageMeter(store, clock=clock)
    window = FixedWindow(3600)

    decisions = [await meter.check_and_consume("user_1", window, limit=3) for _ in range(4)]

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert decisions[2].used == 3
    assert decisions[2].remaining == 0
    assert decisions[3].used == 3


@pytest.mark.asyncio
async def test_concurrent_calls_overshoot_is_bounded(store, clock) -> None:
    meter = UsageMeter(store, clock=clock)
    window = FixedWindow(86400)
    limit = 300
    callers = 301

    decisions = await asyncio.gather(
        *(meter.check_and_consume("user_1", window, limit=limit) for _ in range(callers))
    )

    allowed = sum(d.allowed for d in decisions)
    assert allowed >= limit
    assert allowed <= limit + callers - 1
    counter = int(await store.get(usage_key("user_1", window.key(clock()))))
    assert counter == allowed


@pytest.mark.asyncio
async def test_staggered_concurrent_callers_are_denied_at_limit(store, clock) -> None:
    meter = UsageMeter(store, clock=clock)
    window = FixedWindow(86400)
    limit = 300
    wave_size = 32
    decisions = []

    # 400 callers arriving in overlapping waves of 32.
    for start in range(0, 400, wave_size):
        wave = min(wave_size, 400 - start)
        decisions.extend(
            await asyncio.gather(*(meter.check_and_consume("user_1", window, limit=limit) for _ in range(wave)))
        )

    allowed = [d for d in decisions if d.allowed]
    denied = [d for d in decisions if not d.allowed]
    assert limit <= len(allowed) <= limit + wave_size - 1
    assert denied
    assert all(d.used >= limit for d in denied)
    assert all(d.reason == "limit_exceeded" for d in denied)
    counter = int(await store.get(usage_key("user_1", window.key(clock()))))
    assert counter == len(allowed)


@pytest.mark.asyncio
async def test_counter_resets_when_window_expires(store, clock) -> None:
    meter = UsageMeter(store, min_ttl_seconds=1, clock=clock)
    window = FixedWindow(60)
    clock.now = 1_700_000_070.0  # 30s into the window starting at 1_700_000_040

    assert (await meter.check_and_consume("user_1", window, limit=1)).allowed is True
    assert (await meter.check_and_consume("user_1", window, limit=1)).allowed is False

    clock.advance(window.seconds_remaining(clock()))
    decision = await meter.check_and_consume("user_1", window, limit=1)
    assert decision.allowed is True
    assert decision.used == 1


@pytest.mark.asyncio
async def test_ttl_is_set_on_creation_and_floored(store, clock) -> None:
    meter = UsageMeter(store, min_ttl_seconds=3600, clock=clock)
    window = FixedWindow(60)

    await meter.consume("user_1", window)
    key = usage_key("user_1", window.key(clock()))
    assert store.ttl(key) == pytest.approx(3600)

    clock.advance(10)
    await meter.consume("user_1", window)
    assert await store.get(key) == "2"
    assert store.ttl(key) == pytest.approx(3590)


@pytest.mark.asyncio
async def test_check_does_not_consume(store, clock) -> None:
    meter = UsageMeter(store, clock=clock)
    window = FixedWindow(3600)

    first = await meter.check("user_1", window, limit=2, amount=2)
    assert first.allowed is True
    assert first.used == 0

    assert await meter.consume("user_1", window, amount=2) == 2
    assert (await meter.check("user_1", window, limit=2)).allowed is False


@pytest.mark.asyncio
async def test_zero_limit_denies(store, clock) -> None:
    meter = UsageMeter(store, clock=clock)
    decision = await meter.check_and_consume("user_1", FixedWindow(60), limit=0)

    assert decision.allowed is False
    assert decision.used == 0


@pytest.mark.asyncio
async def test_store_failure_propagates() -> None:
    failing = AsyncMock()
    failing.get.side_effect = StoreUnavailableError(code="store_unavailable", message="down")
    meter = UsageMeter(failing)

    with pytest.raises(StoreUnavailableError):
        await meter.check_and_consume("user_1", FixedWindow(60), limit=10)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "identity, limit, amount",
    [("", 1, 1), ("user_1", -1, 1), ("user_1", 1, 0)],
)
async def test_invalid_arguments(store, identity: str, limit: int, amount: int) -> None:
    with pytest.raises(ValueError):
        await UsageMeter(store).check_and_consume(identity, FixedWindow(60), limit=limit, amount=amount)


def _trial_record(clock, days: int = 7) -> IdentityRecord:
    start = datetime.fromtimestamp(clock(), tz=timezone.utc)
    return IdentityRecord(
        identity_id="user_1",
        email="a@example.com",
        tier=Tier.TRIAL,
        trial_started_at=start,
        trial_expires_at=start + timedelta(days=days),
        created_at=start,
        updated_at=start,
    )


@pytest.mark.asyncio
async def test_trial_quota_does_not_renew_after_expiry(store, clock) -> None:
    meter = UsageMeter(store, clock=clock)
    record = _trial_record(clock)
    window = usage_window_for(record)

    assert (await meter.check_and_consume("user_1", window, limit=300, amount=300)).allowed is True

    clock.advance(8 * 86400)
    decision = await meter.check_and_consume("user_1", window, limit=300, amount=300)

    assert decision.allowed is False
    assert decision.trial_expired is True
    assert decision.reason == "trial_expired"

    clock.advance(30 * 86400)
    assert (await meter.check_and_consume("user_1", window, limit=300)).trial_expired is True
    assert (await meter.check("user_1", window, limit=300)).trial_expired is True


@pytest.mark.asyncio
async def test_expired_trial_with_unused_quota_is_denied(store, clock) -> None:
    meter = UsageMeter(store, clock=clock)
    window = usage_window_for(_trial_record(clock))

    clock.advance(7 * 86400)
    decision = await meter.check_and_consume("user_1", window, limit=300)

    assert decision.allowed is False
    assert decision.trial_expired is True
    assert decision.used == 0
    assert [key async for key in store.scan_prefix("usage:")] == []


@pytest.mark.asyncio
async def test_check_and_consume_for_uses_tier_quota(store, clock, monkeypatch) -> None:
    monkeypatch.setattr(settings.coordination, "trial_limit", 2)
    meter = UsageMeter(store, clock=clock)
    record = _trial_record(clock)

    first = await meter.check_and_consume_for(record, amount=2)
    second = await meter.check_and_consume_for(record)

    assert first.allowed is True
    assert first.limit == 2
    assert second.allowed is False
    assert second.reason == "limit_exceeded"

    pro = record.model_copy(update={"tier": Tier.PRO})
    assert (await meter.check_and_consume_for(pro)).limit == settings.coordination.pro_limit
