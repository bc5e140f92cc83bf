"""Tests for the Redis adapter's error mapping and the store factory."""

from unittest.mock import AsyncMock, Mock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from kwcoord.adapters.store.factory import create_store
from kwcoord.adapters.store.in_memory import InMemoryKeyValueStore
from kwcoord.adapters.store.redis_store import RedisKeyValueStore
from kwcoord.adapters.store.unconfigured import UnconfiguredKeyValueStore
from kwcoord.core.config import StoreSettings
from kwcoord.core.errors import StoreOperationError, StoreUnavailableError


@pytest.fixture
def client() -> AsyncMock:
    return AsyncMock()


@pytest.mark.asyncio
@pytest.mark.parametrize("exc", [RedisConnectionError("refused"), RedisTimeoutError("slow")])
async def test_connection_problems_map_to_unavailable(client: AsyncMock, exc: Exception) -> None:
    client.get.side_effect = exc
    store = RedisKeyValueStore(client)

    with pytest.raises(StoreUnavailableError) as exc_info:
        await store.get("usage:u1:2026-10")

    assert exc_info.value.code == "store_unavailable"
    assert exc_info.value.details["operation"] == "get"
    assert exc_info.value.details["key_prefix"] == "usage"


@pytest.mark.asyncio
async def test_command_errors_map_to_operation_error(client: AsyncMock) -> None:
    client.incrby.side_effect = ResponseError("value is not an integer")
    store = RedisKeyValueStore(client)

    with pytest.raises(StoreOperationError) as exc_info:
        await store.increment("rate:c:0")

    assert exc_info.value.code == "store_operation_failed"
    assert exc_info.value.details["operation"] == "increment"


@pytest.mark.asyncio
async def test_set_if_absent_uses_nx_and_reports_rejection(client: AsyncMock) -> None:
    client.set.return_value = None
    store = RedisKeyValueStore(client)

    assert await store.set_if_absent("lock:u1", "tok", 10) is False
    client.set.assert_awaited_once_with("lock:u1", "tok", ex=10, nx=True)

    client.set.return_value = True
    assert await store.set_if_absent("lock:u1", "tok", 10) is True


@pytest.mark.asyncio
async def test_increment_and_expire_pass_through(client: AsyncMock) -> None:
    client.incrby.return_value = 7
    client.expire.return_value = 1
    store = RedisKeyValueStore(client)

    assert await store.increment("usage:u1:x", 2) == 7
    assert await store.expire("usage:u1:x", 60) is True
    client.incrby.assert_awaited_once_with("usage:u1:x", 2)


@pytest.mark.asyncio
async def test_scan_prefix_maps_errors(client: AsyncMock) -> None:
    iterator = Mock()
    iterator.__anext__ = AsyncMock(side_effect=["kw:a", "kw:b", StopAsyncIteration()])
    iterator.aclose = AsyncMock()
    client.scan_iter = Mock(return_value=iterator)
    store = RedisKeyValueStore(client, scan_batch_size=50)

    keys = [key async for key in store.scan_prefix("kw:")]

    assert keys == ["kw:a", "kw:b"]
    client.scan_iter.assert_called_once_with(match="kw:*", count=50)

    iterator.__anext__ = AsyncMock(side_effect=RedisConnectionError("gone"))
    with pytest.raises(StoreUnavailableError):
        async for _ in store.scan_prefix("kw:"):
            pass


@pytest.mark.asyncio
async def test_scan_prefix_closes_cursor_when_consumer_stops_early(client: AsyncMock) -> None:
    iterator = Mock()
    iterator.__anext__ = AsyncMock(side_effect=["kw:a", "kw:b", "kw:c"])
    iterator.aclose = AsyncMock()
    client.scan_iter = Mock(return_value=iterator)
    store = RedisKeyValueStore(client)

    keys = store.scan_prefix("kw:")
    assert await keys.__anext__() == "kw:a"
    await keys.aclose()

    iterator.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_unconfigured_store_raises_unavailable() -> None:
    store = UnconfiguredKeyValueStore()

    assert store.configured is False
    assert await store.ping() is False
    with pytest.raises(StoreUnavailableError) as exc_info:
        await store.get("entity:u1")
    assert exc_info.value.code == "store_not_configured"


def test_factory_selects_backend() -> None:
    assert isinstance(create_store(StoreSettings(backend="memory")), InMemoryKeyValueStore)
    assert isinstance(create_store(StoreSettings(backend="redis", url=None)), UnconfiguredKeyValueStore)
    assert isinstance(
        create_store(StoreSettings(backend="redis", url="redis://localhost:6379/0")),
        RedisKeyValueStore,
    )
