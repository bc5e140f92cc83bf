"""Process-wide service instances for the HTTP layer.

Every component shares one store adapter. Instances are built lazily from
settings on first use and cached in-module; ``reset_dependencies`` drops
them (tests, shutdown).
"""

from __future__ import annotations

from kwcoord.adapters.rate_limit.base import AbstractRateLimiter
from kwcoord.adapters.rate_limit.store_backed import StoreFixedWindowRateLimiter
from kwcoord.adapters.store.base import AbstractKeyValueStore
from kwcoord.adapters.store.factory import create_store
from kwcoord.core.config import settings
from kwcoord.services.billing_events import BillingEventDispatcher
from kwcoord.services.idempotency import IdempotencyLedger
from kwcoord.services.identity_registry import IdentityRegistry
from kwcoord.services.lock import DistributedLock
from kwcoord.services.result_cache import ResultCache
from kwcoord.services.usage_meter import UsageMeter

_store: AbstractKeyValueStore | None = None
_registry: IdentityRegistry | None = None
_meter: UsageMeter | None = None
_ledger: IdempotencyLedger | None = None
_limiter: AbstractRateLimiter | None = None
_cache: ResultCache | None = None
_dispatcher: BillingEventDispatcher | None = None


def get_store() -> AbstractKeyValueStore:
    global _store
    if _store is None:
        _store = create_store()
    return _store


def get_identity_registry() -> IdentityRegistry:
    global _registry
    if _registry is None:
        coord = settings.coordination
        lock = DistributedLock(get_store(), ttl_seconds=coord.lock_ttl_seconds)
        _registry = IdentityRegistry(
            get_store(),
            lock,
            trial_days=coord.trial_days,
            wait_attempts=coord.lock_wait_attempts,
            wait_initial_delay=coord.lock_wait_initial_delay_seconds,
            wait_max_delay=coord.lock_wait_max_delay_seconds,
        )
    return _registry


def get_usage_meter() -> UsageMeter:
    global _meter
    if _meter is None:
        _meter = UsageMeter(get_store(), min_ttl_seconds=settings.coordination.usage_min_ttl_seconds)
    return _meter


def get_idempotency_ledger() -> IdempotencyLedger:
    global _ledger
    if _ledger is None:
        _ledger = IdempotencyLedger(get_store(), ttl_seconds=settings.coordination.idempotency_ttl_seconds)
    return _ledger


def get_rate_limiter() -> AbstractRateLimiter:
    """Return the shared limiter.

    An unset ``RATE_LIMIT_FAIL_MODE`` resolves to ``open`` in development
    and ``closed`` everywhere else.
    """

    global _limiter
    if _limiter is None:
        cfg = settings.rate_limit
        fail_mode = cfg.fail_mode or ("open" if settings.app_env == "development" else "closed")
        _limiter = StoreFixedWindowRateLimiter(
            get_store(),
            limit=cfg.requests,
            window_seconds=cfg.window_seconds,
            fail_mode=fail_mode,
            fail_open_when_unconfigured=cfg.fail_open_when_unconfigured,
        )
    return _limiter


def get_billing_dispatcher() -> BillingEventDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = BillingEventDispatcher(get_idempotency_ledger())
    return _dispatcher


def get_result_cache() -> ResultCache:
    global _cache
    if _cache is None:
        cfg = settings.cache
        _cache = ResultCache(
            get_store(),
            ttl_seconds=cfg.ttl_seconds,
            write_deadline_ms=cfg.write_deadline_ms,
            privacy_mode=cfg.privacy_mode,
        )
    return _cache


async def close_dependencies() -> None:
    """Flush background cache writes and close the store connection."""

    if _cache is not None:
        await _cache.drain(timeout=settings.cache.write_deadline_ms / 1000 * 10)
    if _store is not None:
        await _store.close()
    reset_dependencies()


def reset_dependencies() -> None:
    global _store, _registry, _meter, _ledger, _limiter, _cache, _dispatcher
    _store = None
    _registry = None
    _meter = None
    _ledger = None
    _limiter = None
    _cache = None
    _dispatcher = None
