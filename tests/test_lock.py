"""Unit tests for the store-backed distributed lock."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from kwcoord.core.errors import StoreUnavailableError
from kwcoord.services.lock import DistributedLock, LockLease, lock_key


@pytest.mark.asyncio
async def test_second_acquire_is_busy_until_release(store, clock) -> None:
    lock = DistributedLock(store, ttl_seconds=10, clock=clock)

    lease = await lock.acquire("user_1")
    assert lease is not None
    assert lease.key == "lock:user_1"
    assert lease.expires_at == clock() + 10
    assert await lock.acquire("user_1") is None

    assert await lock.release(lease) is True
    assert await store.get(lock_key("user_1")) is None
    assert await lock.acquire("user_1") is not None


@pytest.mark.asyncio
async def test_lock_expires_after_ttl(store, clock) -> None:
    lock = DistributedLock(store, ttl_seconds=10, clock=clock)

    assert await lock.acquire("user_1") is not None
    clock.advance(10)
    assert await lock.acquire("user_1") is not None


@pytest.mark.asyncio
async def test_stale_lease_does_not_release_new_holder(store, clock) -> None:
    lock = DistributedLock(store, ttl_seconds=10, clock=clock)

    stale = await lock.acquire("user_1")
    clock.advance(11)
    fresh = await lock.acquire("user_1")
    assert fresh is not None

    assert await lock.release(stale) is False
    assert await store.get(lock_key("user_1")) == fresh.token


@pytest.mark.asyncio
async def test_concurrent_acquire_has_one_winner(store, clock) -> None:
    lock = DistributedLock(store, ttl_seconds=10, clock=clock)

    leases = await asyncio.gather(*(lock.acquire("user_1") for _ in range(20)))

    assert sum(lease is not None for lease in leases) == 1


@pytest.mark.asyncio
async def test_release_never_raises_on_store_failure() -> None:
    failing = AsyncMock()
    failing.get.side_effect = StoreUnavailableError(code="store_unavailable", message="down")
    lock = DistributedLock(failing)

    lease = LockLease(identity="user_1", token="abc", expires_at=0.0)
    assert await lock.release(lease) is False


@pytest.mark.asyncio
async def test_acquire_propagates_store_failure() -> None:
    failing = AsyncMock()
    failing.set_if_absent.side_effect = StoreUnavailableError(code="store_unavailable", message="down")
    lock = DistributedLock(failing)

    with pytest.raises(StoreUnavailableError):
        await lock.acquire("user_1")


@pytest.mark.asyncio
async def test_empty_identity_rejected(store) -> None:
    with pytest.raises(ValueError):
        await DistributedLock(store).acquire("")
