"""Factory for key-value store adapters."""

from __future__ import annotations

import logging

from kwcoord.adapters.store.base import AbstractKeyValueStore
from kwcoord.adapters.store.in_memory import InMemoryKeyValueStore
from kwcoord.adapters.store.redis_store import RedisKeyValueStore
from kwcoord.adapters.store.unconfigured import UnconfiguredKeyValueStore
from kwcoord.core.config import StoreSettings, settings

logger = logging.getLogger(__name__)


def create_store(store_settings: StoreSettings | None = None) -> AbstractKeyValueStore:
    """Build the store adapter selected by configuration.

    ``STORE_BACKEND=redis`` without ``STORE_URL`` yields an
    ``UnconfiguredKeyValueStore`` rather than failing at import time; every
    call on it raises ``StoreUnavailableError``.

    Returns:
        AbstractKeyValueStore: Configured adapter instance.
    """

    cfg = store_settings or settings.store

    if cfg.backend == "memory":
        logger.warning(
            "store.memory_backend",
            extra={"hint": "per-process keyspace; do not run multiple workers"},
        )
        return InMemoryKeyValueStore()

    if not cfg.url:
        logger.warning(
            "store.not_configured",
            extra={"hint": "set STORE_URL to enable shared coordination state"},
        )
        return UnconfiguredKeyValueStore()

    return RedisKeyValueStore.from_url(
        cfg.url,
        socket_timeout=cfg.socket_timeout_seconds,
        connect_timeout=cfg.connect_timeout_seconds,
        scan_batch_size=cfg.scan_batch_size,
    )
