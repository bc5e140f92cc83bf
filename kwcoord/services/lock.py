"""Short-lived distributed lock built on conditional set with TTL.

The lock is a value under ``lock:<identity>``: acquiring is
``set_if_absent`` with a random token and a TTL, releasing deletes the key.
There is no lock manager behind it, which bounds what it can promise:

- The TTL always wins. A holder that stalls past the TTL loses the lock and
  another process may acquire it; both then believe they hold it until the
  first one finishes. This lock only gates create-if-absent sequences whose
  final write is itself conditional, so the overlap cannot corrupt data.
- ``release`` deletes only when the stored token is still ours. The
  compare and the delete are two separate store calls, so a lock that
  expires and is re-acquired in between can still be removed. The window is
  a single round trip instead of the holder's whole critical section.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable

from kwcoord.adapters.store.base import AbstractKeyValueStore
from kwcoord.core.errors import StoreError
from kwcoord.core.logging import hash_identifier

logger = logging.getLogger(__name__)

LOCK_PREFIX = "lock:"


def lock_key(identity: str) -> str:
    return f"{LOCK_PREFIX}{identity}"


@dataclass(frozen=True)
class LockLease:
    """Proof of a successful acquire.

    Attributes:
        identity: Identity string the lock protects.
        token: Random value stored in the lock key.
        expires_at: UNIX time after which the store reclaims the lock.
    """

    identity: str
    token: str
    expires_at: float

    @property
    def key(self) -> str:
        return lock_key(self.identity)


class DistributedLock:
    """Mutual exclusion token keyed by an identity string."""

    def __init__(
        self,
        store: AbstractKeyValueStore,
        *,
        ttl_seconds: int = 10,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl_seconds < 1:
            raise ValueError("ttl_seconds must be >= 1")
        self._store = store
        self._ttl = ttl_seconds
        self._clock = clock

    async def acquire(self, identity: str) -> LockLease | None:
        """Try once to take the lock.

        Returns:
            A lease when acquired, None when another holder has it.

        Raises:
            StoreError: The store could not answer; "busy" is never inferred.
        """
        if not identity:
            raise ValueError("identity must be a non-empty string")

        token = uuid.uuid4().hex
        acquired = await self._store.set_if_absent(lock_key(identity), token, self._ttl)
        if not acquired:
            logger.debug("lock.busy", extra={"identity_hash": hash_identifier(identity)})
            return None

        logger.debug(
            "lock.acquired",
            extra={"identity_hash": hash_identifier(identity), "ttl_s": self._ttl},
        )
        return LockLease(identity=identity, token=token, expires_at=self._clock() + self._ttl)

    async def release(self, lease: LockLease) -> bool:
        """Best-effort release of a lease.

        Never raises: a lock that cannot be deleted expires on its own.

        Returns:
            True when our lock key was deleted.
        """
        identity_hash = hash_identifier(lease.identity)
        try:
            current = await self._store.get(lease.key)
            if current != lease.token:
                logger.warning(
                    "lock.release_skipped",
                    extra={
                        "identity_hash": identity_hash,
                        "reason": "expired" if current is None else "held_by_other",
                    },
                )
                return False
            deleted = await self._store.delete(lease.key)
        except StoreError as exc:
            logger.warning(
                "lock.release_failed",
                extra={"identity_hash": identity_hash, "error_code": exc.code},
            )
            return False

        logger.debug("lock.released", extra={"identity_hash": identity_hash})
        return deleted
