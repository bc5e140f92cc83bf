"""Best-effort cache for provider lookup results.

The cache must never make a request slower or fail it:

- reads that error are reported as misses;
- writes race a short deadline. The caller resumes as soon as either the
  write finishes or the deadline passes, and a write still in flight keeps
  running in the background. Its late result is logged and counted so
  ``stats()`` can serve as a health signal.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from hashlib import sha256
from typing import Any, Callable, Literal

from pydantic import ValidationError

from kwcoord.adapters.store.base import AbstractKeyValueStore
from kwcoord.core.errors import StoreError
from kwcoord.schemas.cache import CachedResult, CacheMetadata, MatchType

logger = logging.getLogger(__name__)

CACHE_PREFIX = "kw:"
DEFAULT_TTL_SECONDS = 7 * 24 * 60 * 60

WriteStatus = Literal["ok", "timed_out", "failed", "skipped"]


@dataclass(frozen=True)
class CacheWriteOutcome:
    """What the caller knows about a write when it resumes.

    ``timed_out`` does not mean the write failed; it may still land.
    """

    status: WriteStatus
    elapsed_ms: float
    error: str | None = None


def build_cache_key(
    keywords: list[str],
    location: str = "default",
    language: str = "en",
    match_type: MatchType = "phrase",
) -> str:
    """Build a cache key independent of keyword order.

    Args:
        keywords: Looked-up keywords.
        location: Location code of the lookup.
        language: Language code of the lookup.
        match_type: Keyword match type.

    Returns:
        ``kw:<location>:<language>:<match_type>:<hex digest>``.
    """

    hasher = sha256()
    hasher.update("\n".join(sorted(keywords)).encode())
    return f"{CACHE_PREFIX}{location}:{language}:{match_type}:{hasher.hexdigest()}"


class ResultCache:
    """Store-backed cache of lookup results with a bounded write wait."""

    def __init__(
        self,
        store: AbstractKeyValueStore,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        write_deadline_ms: int = 150,
        privacy_mode: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl_seconds < 1:
            raise ValueError("ttl_seconds must be >= 1")
        if write_deadline_ms < 1:
            raise ValueError("write_deadline_ms must be >= 1")
        self._store = store
        self._ttl = ttl_seconds
        self._deadline_s = write_deadline_ms / 1000
        self._privacy_mode = privacy_mode
        self._clock = clock
        self._pending: set[asyncio.Task[None]] = set()
        self._late: set[asyncio.Task[None]] = set()
        self._hits = 0
        self._misses = 0
        self._read_errors = 0
        self._writes_ok = 0
        self._writes_timed_out = 0
        self._writes_failed = 0
        self._late_ok = 0
        self._late_failed = 0

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"ResultCache(ttl_seconds={self._ttl}, deadline_ms={self._deadline_s * 1000:.0f}, "
            f"privacy_mode={self._privacy_mode}, pending={len(self._pending)})"
        )

    async def get(self, key: str) -> CachedResult | None:
        """Return the cached result for ``key`` or None on miss or error."""

        if self._privacy_mode:
            return None

        try:
            raw = await self._store.get(key)
        except StoreError as exc:
            self._read_errors += 1
            self._misses += 1
            logger.warning("cache.read_failed", extra={"cache_key": key[:32], "error_code": exc.code})
            return None

        if raw is None:
            self._misses += 1
            logger.debug("cache.miss", extra={"cache_key": key[:32], "reason": "not_found"})
            return None

        try:
            cached = CachedResult.model_validate_json(raw)
        except ValidationError:
            self._read_errors += 1
            self._misses += 1
            logger.warning("cache.miss", extra={"cache_key": key[:32], "reason": "corrupt"})
            return None

        age = self._clock() - cached.metadata.cached_at.timestamp()
        if age > cached.metadata.ttl_seconds:
            self._misses += 1
            logger.debug("cache.miss", extra={"cache_key": key[:32], "reason": "expired"})
            return None

        self._hits += 1
        logger.debug("cache.hit", extra={"cache_key": key[:32]})
        return cached

    async def set(
        self,
        key: str,
        data: Any,
        *,
        source: str,
        ttl_seconds: int | None = None,
    ) -> CacheWriteOutcome:
        """Write ``data`` under ``key``, waiting at most the write deadline.

        Never raises; the outcome says how far the write got.
        """
        started = time.perf_counter()
        if self._privacy_mode:
            return CacheWriteOutcome(status="skipped", elapsed_ms=0.0)

        ttl = ttl_seconds or self._ttl
        try:
            payload = CachedResult(
                data=data,
                metadata=CacheMetadata(
                    source=source,
                    cached_at=datetime.fromtimestamp(self._clock(), tz=timezone.utc),
                    ttl_seconds=ttl,
                ),
            ).model_dump_json()
        except (ValidationError, ValueError, TypeError) as exc:
            self._writes_failed += 1
            logger.warning("cache.serialize_failed", extra={"cache_key": key[:32], "error_type": type(exc).__name__})
            return CacheWriteOutcome(status="failed", elapsed_ms=_elapsed_ms(started), error=type(exc).__name__)

        task = asyncio.create_task(self._store.set(key, payload, ttl))
        self._pending.add(task)
        task.add_done_callback(self._on_write_done)

        done, _ = await asyncio.wait({task}, timeout=self._deadline_s)
        elapsed_ms = _elapsed_ms(started)

        if task not in done:
            self._late.add(task)
            self._writes_timed_out += 1
            logger.warning(
                "cache.write_deadline_exceeded",
                extra={"cache_key": key[:32], "elapsed_ms": round(elapsed_ms, 1)},
            )
            return CacheWriteOutcome(status="timed_out", elapsed_ms=elapsed_ms)

        exc = task.exception()
        if exc is not None:
            self._writes_failed += 1
            logger.warning(
                "cache.write_failed",
                extra={"cache_key": key[:32], "error_type": type(exc).__name__},
            )
            return CacheWriteOutcome(status="failed", elapsed_ms=elapsed_ms, error=getattr(exc, "code", type(exc).__name__))

        self._writes_ok += 1
        logger.debug("cache.set", extra={"cache_key": key[:32], "ttl_s": ttl, "elapsed_ms": round(elapsed_ms, 1)})
        return CacheWriteOutcome(status="ok", elapsed_ms=elapsed_ms)

    def _on_write_done(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            self._late.discard(task)
            return
        # Retrieve the exception so it is never reported as unhandled.
        exc = task.exception()
        if task not in self._late:
            return
        self._late.discard(task)
        if exc is None:
            self._late_ok += 1
            logger.info("cache.write_late_completed")
        else:
            self._late_failed += 1
            logger.warning("cache.write_late_failed", extra={"error_type": type(exc).__name__})

    async def drain(self, timeout: float | None = None) -> int:
        """Wait for background writes. Returns how many are still pending."""

        if self._pending:
            await asyncio.wait(set(self._pending), timeout=timeout)
        return len(self._pending)

    async def purge(self, prefix: str = CACHE_PREFIX) -> int:
        """Delete every cache slot under ``prefix``.

        Raises:
            StoreError: The store could not be scanned or a delete failed.
        """
        removed = 0
        async for key in self._store.scan_prefix(prefix):
            if await self._store.delete(key):
                removed += 1
        logger.info("cache.purged", extra={"prefix": prefix, "removed": removed})
        return removed

    def stats(self) -> dict[str, int | bool]:
        """Return cache counters without exposing values."""

        return {
            "ttl_seconds": self._ttl,
            "privacy_mode": self._privacy_mode,
            "hits": self._hits,
            "misses": self._misses,
            "read_errors": self._read_errors,
            "writes_ok": self._writes_ok,
            "writes_timed_out": self._writes_timed_out,
            "writes_failed": self._writes_failed,
            "late_writes_ok": self._late_ok,
            "late_writes_failed": self._late_failed,
            "pending_writes": len(self._pending),
        }


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
