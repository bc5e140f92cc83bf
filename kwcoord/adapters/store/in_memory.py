"""In-memory key-value store (development and tests).

Notes:
- Per-process only: multiple workers each see their own keyspace.
- Every operation awaits ``asyncio.sleep(latency)`` before touching state,
  so concurrent coroutines interleave between calls the way they do
  against a remote store. Each individual operation is atomic.
- Expiry is evaluated lazily against an injectable clock.
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from kwcoord.adapters.store.base import AbstractKeyValueStore
from kwcoord.core.errors import StoreOperationError


@dataclass
class _Entry:
    value: str
    expires_at: float | None


class InMemoryKeyValueStore(AbstractKeyValueStore):
    """Dict-backed store with TTL support.

    Args:
        clock: Time source returning UNIX seconds.
        latency: Seconds awaited before each operation (0 still yields).
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        latency: float = 0.0,
    ) -> None:
        if latency < 0:
            raise ValueError("latency must be >= 0")
        self._clock = clock
        self._latency = latency
        self._lock = threading.RLock()
        self._data: dict[str, _Entry] = {}

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"InMemoryKeyValueStore(keys={len(self._data)}, latency={self._latency})"

    async def _hop(self) -> None:
        await asyncio.sleep(self._latency)

    def _live(self, key: str) -> _Entry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl_seconds: int | None) -> float | None:
        if ttl_seconds is None:
            return None
        if ttl_seconds < 1:
            raise StoreOperationError(
                code="store_invalid_ttl",
                message="TTL must be at least one second",
                details={"operation": "set"},
            )
        return self._clock() + ttl_seconds

    async def get(self, key: str) -> str | None:
        await self._hop()
        with self._lock:
            entry = self._live(key)
            return entry.value if entry else None

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        await self._hop()
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = _Entry(value=value, expires_at=self._expiry(ttl_seconds))
            return True

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        await self._hop()
        with self._lock:
            self._data[key] = _Entry(value=value, expires_at=self._expiry(ttl_seconds))

    async def increment(self, key: str, by: int = 1) -> int:
        await self._hop()
        with self._lock:
            entry = self._live(key)
            if entry is None:
                self._data[key] = _Entry(value=str(by), expires_at=None)
                return by
            try:
                current = int(entry.value)
            except ValueError as exc:
                raise StoreOperationError(
                    code="store_not_an_integer",
                    message="Value is not an integer or out of range",
                    details={"operation": "increment"},
                ) from exc
            entry.value = str(current + by)
            return current + by

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        await self._hop()
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            entry.expires_at = self._expiry(ttl_seconds)
            return True

    async def delete(self, key: str) -> bool:
        await self._hop()
        with self._lock:
            return self._data.pop(key, None) is not None

    async def scan_prefix(self, prefix: str) -> AsyncIterator[str]:
        await self._hop()
        with self._lock:
            keys = [k for k in list(self._data) if k.startswith(prefix) and self._live(k)]
        for key in keys:
            yield key

    async def ping(self) -> bool:
        await self._hop()
        return True

    def ttl(self, key: str) -> float | None:
        """Seconds until ``key`` expires (None when absent or persistent)."""

        with self._lock:
            entry = self._live(key)
            if entry is None or entry.expires_at is None:
                return None
            return entry.expires_at - self._clock()

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
