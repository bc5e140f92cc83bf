"""Identity registry: get-or-create for per-principal records.

Guarantees at most one record per identity even when the first requests for
a new principal arrive concurrently on different workers:

1. Fast path: read ``entity:<id>`` and return it if present (no lock).
2. Take ``lock:<id>``. The holder re-reads (double-checked creation) and
   creates the record only if it is still absent.
3. Processes that find the lock busy poll the record with exponential
   backoff. When polling runs out they attempt a last-resort create.

Creation writes two kinds of keys without a transaction, so it is an
ordered sequence with compensation:

- the email index (``email:<email>``) is written first, conditionally;
- the record itself is written with ``set_if_absent``, so even a
  last-resort create can never overwrite a record created by a racing
  process;
- if the record write fails, the index keys written in step one are
  deleted and the error propagates.

Infrastructure errors always propagate to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from pydantic import ValidationError

from kwcoord.adapters.store.base import AbstractKeyValueStore
from kwcoord.core.errors import BusinessRuleError, StoreError, StoreOperationError
from kwcoord.core.logging import hash_identifier
from kwcoord.schemas.identity import IdentityRecord, Tier
from kwcoord.services.lock import DistributedLock

logger = logging.getLogger(__name__)

ENTITY_PREFIX = "entity:"
EMAIL_INDEX_PREFIX = "email:"
BILLING_INDEX_PREFIX = "billing:"

# Fields business logic may change through update()
_MUTABLE_FIELDS = frozenset(
    {
        "email",
        "tier",
        "status",
        "billing_customer_id",
        "subscription_id",
        "subscription_status",
        "trial_expires_at",
    }
)


def entity_key(identity_id: str) -> str:
    return f"{ENTITY_PREFIX}{identity_id}"


def email_index_key(email: str) -> str:
    return f"{EMAIL_INDEX_PREFIX}{email.strip().lower()}"


def billing_index_key(customer_id: str) -> str:
    return f"{BILLING_INDEX_PREFIX}{customer_id}"


class IdentityRegistry:
    """Creates and looks up identity records in the shared store."""

    def __init__(
        self,
        store: AbstractKeyValueStore,
        lock: DistributedLock,
        *,
        trial_days: int = 7,
        wait_attempts: int = 20,
        wait_initial_delay: float = 0.05,
        wait_max_delay: float = 0.5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if wait_attempts < 1:
            raise ValueError("wait_attempts must be >= 1")
        if wait_initial_delay <= 0 or wait_max_delay <= 0:
            raise ValueError("wait delays must be > 0")
        self._store = store
        self._lock = lock
        self._trial = timedelta(days=trial_days)
        self._wait_attempts = wait_attempts
        self._wait_initial_delay = wait_initial_delay
        self._wait_max_delay = wait_max_delay
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def get(self, identity_id: str) -> IdentityRecord | None:
        """Read a record by id.

        Raises:
            StoreError: On infrastructure failure or an unreadable record.
        """
        raw = await self._store.get(entity_key(identity_id))
        if raw is None:
            return None
        try:
            return IdentityRecord.model_validate_json(raw)
        except ValidationError as exc:
            logger.error(
                "identity.record_corrupt",
                extra={"identity_hash": hash_identifier(identity_id), "error_count": exc.error_count()},
            )
            raise StoreOperationError(
                code="record_corrupt",
                message="Stored identity record failed validation",
                details={"operation": "get", "key_prefix": "entity"},
            ) from exc

    async def _get_via_index(self, index_key: str) -> IdentityRecord | None:
        identity_id = await self._store.get(index_key)
        if identity_id is None:
            return None
        return await self.get(identity_id)

    async def get_by_email(self, email: str) -> IdentityRecord | None:
        return await self._get_via_index(email_index_key(email))

    async def get_by_billing_customer(self, customer_id: str) -> IdentityRecord | None:
        return await self._get_via_index(billing_index_key(customer_id))

    async def get_or_create(self, identity_id: str, *, email: str, **attrs: Any) -> IdentityRecord:
        """Return the record for ``identity_id``, creating it on first contact.

        Args:
            identity_id: Authenticated principal id.
            email: Contact email, indexed for billing lookups.
            **attrs: Extra initial field values (e.g. ``tier``).

        Returns:
            The single record for this identity.

        Raises:
            StoreError: Infrastructure failure at any step.
        """
        if not identity_id:
            raise ValueError("identity_id must be a non-empty string")

        existing = await self.get(identity_id)
        if existing is not None:
            return existing

        identity_hash = hash_identifier(identity_id)
        lease = await self._lock.acquire(identity_id)
        if lease is not None:
            try:
                existing = await self.get(identity_id)
                if existing is not None:
                    logger.info("identity.created_concurrently", extra={"identity_hash": identity_hash})
                    return existing
                return await self._create(identity_id, email, attrs)
            finally:
                await self._lock.release(lease)

        found = await self._wait_for_record(identity_id)
        if found is not None:
            return found

        logger.warning(
            "identity.lock_wait_exhausted",
            extra={"identity_hash": identity_hash, "attempts": self._wait_attempts},
        )
        return await self._create(identity_id, email, attrs)

    async def _wait_for_record(self, identity_id: str) -> IdentityRecord | None:
        delay = self._wait_initial_delay
        for _ in range(self._wait_attempts):
            await asyncio.sleep(delay)
            record = await self.get(identity_id)
            if record is not None:
                return record
            delay = min(delay * 2, self._wait_max_delay)
        return None

    def _new_record(self, identity_id: str, email: str, attrs: dict[str, Any]) -> IdentityRecord:
        now = self._now()
        values: dict[str, Any] = {
            "identity_id": identity_id,
            "email": email.strip().lower(),
            "tier": Tier.TRIAL,
            "trial_started_at": now,
            "trial_expires_at": now + self._trial,
            "created_at": now,
            "updated_at": now,
        }
        values.update({k: v for k, v in attrs.items() if k in _MUTABLE_FIELDS})
        return IdentityRecord(**values)

    async def _create(self, identity_id: str, email: str, attrs: dict[str, Any]) -> IdentityRecord:
        record = self._new_record(identity_id, email, attrs)
        identity_hash = hash_identifier(identity_id)

        written = await self._claim_indexes(record)
        try:
            accepted = await self._store.set_if_absent(
                entity_key(identity_id), record.model_dump_json()
            )
        except StoreError:
            await self._compensate(written, identity_id)
            raise

        if not accepted:
            # Lost a last-resort race; the winner's record is authoritative.
            logger.info("identity.create_rejected", extra={"identity_hash": identity_hash})
            existing = await self.get(identity_id)
            if existing is None:
                raise StoreOperationError(
                    code="record_vanished",
                    message="Identity record disappeared after a rejected create",
                    details={"operation": "get_or_create", "key_prefix": "entity"},
                )
            return existing

        logger.info(
            "identity.created",
            extra={"identity_hash": identity_hash, "tier": record.tier.value},
        )
        return record

    async def _claim_indexes(self, record: IdentityRecord) -> list[str]:
        """Write index keys that are free or already ours; return those written."""

        written: list[str] = []
        candidates = [email_index_key(record.email)]
        if record.billing_customer_id:
            candidates.append(billing_index_key(record.billing_customer_id))

        try:
            for key in candidates:
                if await self._store.set_if_absent(key, record.identity_id):
                    written.append(key)
                    continue
                owner = await self._store.get(key)
                if owner != record.identity_id:
                    logger.warning(
                        "identity.index_conflict",
                        extra={
                            "identity_hash": hash_identifier(record.identity_id),
                            "index": key.split(":", 1)[0],
                            "owner_hash": hash_identifier(owner),
                        },
                    )
        except StoreError:
            await self._compensate(written, record.identity_id)
            raise
        return written

    async def _compensate(self, keys: list[str], identity_id: str) -> None:
        for key in keys:
            try:
                await self._store.delete(key)
            except StoreError as exc:
                logger.error(
                    "identity.compensation_failed",
                    extra={
                        "identity_hash": hash_identifier(identity_id),
                        "index": key.split(":", 1)[0],
                        "error_code": exc.code,
                    },
                )

    async def update(self, identity_id: str, **changes: Any) -> IdentityRecord | None:
        """Apply business changes to an existing record.

        Read-modify-write without a lock: concurrent updates are last-writer-
        wins. New index keys are written before the record and removed again
        if the record write fails.

        Returns:
            The updated record, or None when the identity does not exist.

        Raises:
            ValueError: When ``changes`` names an immutable field or an empty
                email.
            BusinessRuleError: The new email or billing customer id already
                belongs to another identity; nothing was written.
            StoreError: On infrastructure failure.
        """
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update fields: {sorted(unknown)}")

        existing = await self.get(identity_id)
        if existing is None:
            logger.warning("identity.update_missing", extra={"identity_hash": hash_identifier(identity_id)})
            return None

        if "email" in changes:
            email = changes["email"]
            if not isinstance(email, str) or not email.strip():
                raise ValueError("email must be a non-empty string")
            changes["email"] = email.strip().lower()
        updated = IdentityRecord.model_validate(
            {**existing.model_dump(), **changes, "updated_at": self._now()}
        )

        new_indexes: list[str] = []
        if updated.email != existing.email:
            new_indexes.append(email_index_key(updated.email))
        if updated.billing_customer_id and updated.billing_customer_id != existing.billing_customer_id:
            new_indexes.append(billing_index_key(updated.billing_customer_id))

        written: list[str] = []
        try:
            for key in new_indexes:
                if await self._store.set_if_absent(key, identity_id):
                    written.append(key)
                    continue
                owner = await self._store.get(key)
                if owner != identity_id:
                    await self._compensate(written, identity_id)
                    logger.warning(
                        "identity.index_conflict",
                        extra={
                            "identity_hash": hash_identifier(identity_id),
                            "index": key.split(":", 1)[0],
                            "owner_hash": hash_identifier(owner),
                        },
                    )
                    raise BusinessRuleError(
                        code="identity_index_conflict",
                        message="Another identity already owns this lookup key",
                        details={"operation": "update", "key_prefix": key.split(":", 1)[0]},
                    )
            await self._store.set(entity_key(identity_id), updated.model_dump_json())
        except StoreError:
            await self._compensate(written, identity_id)
            raise

        if updated.email != existing.email:
            stale = email_index_key(existing.email)
            if await self._store.get(stale) == identity_id:
                await self._store.delete(stale)

        return updated
