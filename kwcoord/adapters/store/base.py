"""Key-value store interface.

Coordination code depends on this abstraction only. Implementations must
raise ``StoreUnavailableError`` / ``StoreOperationError`` for infrastructure
failures and must never report a failure as an absent key.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator


class AbstractKeyValueStore(ABC):
    """Single-key atomic operations on a shared remote store."""

    #: False only for placeholders standing in for a missing configuration.
    configured: bool = True

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the value stored at ``key`` or None when absent."""
        raise NotImplementedError

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        """Store ``value`` only if ``key`` does not exist.

        Returns:
            True when the write was accepted, False when the key already existed.
        """
        raise NotImplementedError

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        """Unconditionally store ``value``, optionally with a TTL."""
        raise NotImplementedError

    @abstractmethod
    async def increment(self, key: str, by: int = 1) -> int:
        """Atomically add ``by`` to the integer at ``key``.

        An absent key is created with value ``by`` and no TTL; callers that
        need expiry follow up with ``expire``.
        """
        raise NotImplementedError

    @abstractmethod
    async def expire(self, key: str, ttl_seconds: int) -> bool:
        """Set a TTL on an existing key. Returns False when the key is absent."""
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove ``key``. Returns True when something was deleted."""
        raise NotImplementedError

    @abstractmethod
    def scan_prefix(self, prefix: str) -> AsyncIterator[str]:
        """Lazily yield keys starting with ``prefix``.

        Non-blocking and batched; intended for maintenance jobs only.
        """
        raise NotImplementedError

    @abstractmethod
    async def ping(self) -> bool:
        """Round-trip check used by health endpoints."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release connections held by the adapter."""
        return None
