"""Redis-backed key-value store adapter (redis.asyncio)."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Awaitable

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from kwcoord.adapters.store.base import AbstractKeyValueStore
from kwcoord.core.errors import StoreOperationError, StoreUnavailableError

logger = logging.getLogger(__name__)


def _key_prefix(key: str) -> str:
    """Namespace part of a key (``lock``, ``usage``...) for logs."""
    return key.split(":", 1)[0]


class RedisKeyValueStore(AbstractKeyValueStore):
    """Adapter translating redis-py results and exceptions to the store contract.

    Connection refusals and timeouts become ``StoreUnavailableError``; any
    other ``RedisError`` becomes ``StoreOperationError``.
    """

    def __init__(self, client: Redis, *, scan_batch_size: int = 100) -> None:
        self._client = client
        self._scan_batch_size = scan_batch_size

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        socket_timeout: float = 2.0,
        connect_timeout: float = 2.0,
        scan_batch_size: int = 100,
    ) -> "RedisKeyValueStore":
        client = Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=connect_timeout,
        )
        return cls(client, scan_batch_size=scan_batch_size)

    async def _run(self, operation: str, key: str, call: Awaitable[Any]) -> Any:
        try:
            return await call
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error(
                "store.unavailable",
                extra={"operation": operation, "key_prefix": _key_prefix(key), "error_type": type(exc).__name__},
            )
            raise StoreUnavailableError(
                code="store_unavailable",
                message=f"Store unreachable during {operation}",
                details={"operation": operation, "key_prefix": _key_prefix(key)},
            ) from exc
        except RedisError as exc:
            logger.error(
                "store.operation_failed",
                extra={"operation": operation, "key_prefix": _key_prefix(key), "error_msg": str(exc)},
            )
            raise StoreOperationError(
                code="store_operation_failed",
                message=f"Store {operation} failed: {exc}",
                details={"operation": operation, "key_prefix": _key_prefix(key)},
            ) from exc

    async def get(self, key: str) -> str | None:
        return await self._run("get", key, self._client.get(key))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        # SET NX returns None when the key already exists
        result = await self._run(
            "set_if_absent", key, self._client.set(key, value, ex=ttl_seconds, nx=True)
        )
        return bool(result)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        await self._run("set", key, self._client.set(key, value, ex=ttl_seconds))

    async def increment(self, key: str, by: int = 1) -> int:
        return int(await self._run("increment", key, self._client.incrby(key, by)))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self._run("expire", key, self._client.expire(key, ttl_seconds)))

    async def delete(self, key: str) -> bool:
        return bool(await self._run("delete", key, self._client.delete(key)))

    async def scan_prefix(self, prefix: str) -> AsyncIterator[str]:
        iterator = self._client.scan_iter(match=f"{prefix}*", count=self._scan_batch_size)
        try:
            while True:
                try:
                    key = await self._run("scan_prefix", prefix, iterator.__anext__())
                except StopAsyncIteration:
                    return
                yield key
        finally:
            await iterator.aclose()

    async def ping(self) -> bool:
        return bool(await self._run("ping", "", self._client.ping()))

    async def close(self) -> None:
        await self._client.aclose()
