"""Placeholder store used when no backend is configured."""

from __future__ import annotations

from typing import AsyncIterator, NoReturn

from kwcoord.adapters.store.base import AbstractKeyValueStore
from kwcoord.core.errors import StoreUnavailableError


class UnconfiguredKeyValueStore(AbstractKeyValueStore):
    """Every operation raises ``StoreUnavailableError``.

    Lets the service start without a store while keeping the failure loud
    for components that require one; best-effort components can check
    ``configured`` to apply their fail-open policy.
    """

    configured = False

    def _fail(self, operation: str) -> NoReturn:
        raise StoreUnavailableError(
            code="store_not_configured",
            message="Key-value store is not configured",
            details={
                "operation": operation,
                "hint": "Set STORE_URL or use STORE_BACKEND=memory for local development",
            },
        )

    async def get(self, key: str) -> str | None:
        self._fail("get")

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        self._fail("set_if_absent")

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        self._fail("set")

    async def increment(self, key: str, by: int = 1) -> int:
        self._fail("increment")

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        self._fail("expire")

    async def delete(self, key: str) -> bool:
        self._fail("delete")

    async def scan_prefix(self, prefix: str) -> AsyncIterator[str]:
        self._fail("scan_prefix")
        yield prefix  # pragma: no cover - makes this an async generator

    async def ping(self) -> bool:
        return False
