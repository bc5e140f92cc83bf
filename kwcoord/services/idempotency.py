"""Idempotency ledger for externally delivered events.

Billing providers deliver webhooks at least once. The ledger turns that into
at most one business effect per event id with a mark-before-process
protocol:

    unseen -> marked -> committed
                     -> retryable_failure  (marker removed, sender retries)
                     -> business_failure   (marker kept, anomaly logged)

An event already marked is a ``duplicate`` and is acknowledged without
running the handler.

The two store-facing checks fail in opposite directions on purpose:
``is_processed`` reports True when the store cannot answer (never risk a
double charge), while ``mark_processed`` propagates the error so the caller
answers with a retryable status instead of treating an unrecorded event as
done.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from kwcoord.adapters.store.base import AbstractKeyValueStore
from kwcoord.core.errors import BusinessRuleError, StoreError

logger = logging.getLogger(__name__)

PROCESSED_PREFIX = "processed:"
_MARKER = "1"


def processed_key(event_id: str) -> str:
    return f"{PROCESSED_PREFIX}{event_id}"


class EventState(str, Enum):
    DUPLICATE = "duplicate"
    COMMITTED = "committed"
    RETRYABLE_FAILURE = "retryable_failure"
    BUSINESS_FAILURE = "business_failure"


@dataclass(frozen=True)
class EventOutcome:
    """Terminal state of one delivery attempt.

    Attributes:
        event_id: Provider event id.
        state: Where the delivery ended in the state machine.
        error_code: Code of the handler failure, if any.
        unmarked: For retryable failures, whether the marker was removed.
            False means the next redelivery will be treated as a duplicate
            until the marker expires.
    """

    event_id: str
    state: EventState
    error_code: str | None = None
    unmarked: bool = False

    @property
    def should_retry(self) -> bool:
        return self.state is EventState.RETRYABLE_FAILURE


class IdempotencyLedger:
    """Tracks which event ids have been handled."""

    def __init__(self, store: AbstractKeyValueStore, *, ttl_seconds: int = 72 * 60 * 60) -> None:
        if ttl_seconds < 1:
            raise ValueError("ttl_seconds must be >= 1")
        self._store = store
        self._ttl = ttl_seconds

    async def is_processed(self, event_id: str) -> bool:
        """Whether ``event_id`` was already marked. Fails closed."""

        try:
            return await self._store.get(processed_key(event_id)) is not None
        except StoreError as exc:
            logger.error(
                "idempotency.check_failed_closed",
                extra={"event_id": event_id, "error_code": exc.code},
            )
            return True

    async def mark_processed(self, event_id: str) -> bool:
        """Claim ``event_id`` for processing.

        Returns:
            True when this call placed the marker, False when another
            delivery already holds it.

        Raises:
            StoreError: The marker could not be written.
        """
        return await self._store.set_if_absent(processed_key(event_id), _MARKER, self._ttl)

    async def unmark(self, event_id: str) -> None:
        """Remove the marker so a redelivery is processed again."""

        await self._store.delete(processed_key(event_id))

    async def process(
        self,
        event_id: str,
        handler: Callable[[], Awaitable[None]],
    ) -> EventOutcome:
        """Run ``handler`` at most once for ``event_id``.

        Raises:
            ValueError: For an empty event id.
            StoreError: When the marker cannot be written; nothing ran.
        """
        if not event_id:
            raise ValueError("event_id must be a non-empty string")

        if await self.is_processed(event_id):
            logger.info("webhook.duplicate", extra={"event_id": event_id})
            return EventOutcome(event_id=event_id, state=EventState.DUPLICATE)

        if not await self.mark_processed(event_id):
            # A concurrent delivery claimed it between the check and the mark.
            logger.info("webhook.duplicate", extra={"event_id": event_id, "reason": "concurrent"})
            return EventOutcome(event_id=event_id, state=EventState.DUPLICATE)

        try:
            await handler()
        except BusinessRuleError as exc:
            logger.warning(
                "webhook.business_failure",
                extra={"event_id": event_id, "error_code": exc.code, "error_message": exc.message},
            )
            return EventOutcome(event_id=event_id, state=EventState.BUSINESS_FAILURE, error_code=exc.code)
        except Exception as exc:
            error_code = getattr(exc, "code", type(exc).__name__)
            unmarked = await self._try_unmark(event_id)
            logger.error(
                "webhook.retryable_failure",
                extra={
                    "event_id": event_id,
                    "error_type": type(exc).__name__,
                    "error_code": error_code,
                    "unmarked": unmarked,
                },
            )
            return EventOutcome(
                event_id=event_id,
                state=EventState.RETRYABLE_FAILURE,
                error_code=error_code,
                unmarked=unmarked,
            )

        logger.info("webhook.committed", extra={"event_id": event_id})
        return EventOutcome(event_id=event_id, state=EventState.COMMITTED)

    async def _try_unmark(self, event_id: str) -> bool:
        try:
            await self.unmark(event_id)
        except StoreError as exc:
            logger.error(
                "idempotency.unmark_failed",
                extra={"event_id": event_id, "error_code": exc.code, "ttl_s": self._ttl},
            )
            return False
        return True
