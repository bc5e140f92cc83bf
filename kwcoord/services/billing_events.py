"""Billing webhook event dispatch.

``BillingEventDispatcher`` routes each event to the handler registered for
its type and runs it through the idempotency ledger, so a redelivered event
never applies its effect twice. Types without a handler are acknowledged
(and marked) without any effect.

Handlers signal a business failure (retrying will not help, e.g. the
referenced customer is unknown) by raising ``BusinessRuleError``; anything
else they raise makes the delivery retryable.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from kwcoord.schemas.billing import BillingEvent
from kwcoord.services.idempotency import EventOutcome, IdempotencyLedger

logger = logging.getLogger(__name__)

EventHandler = Callable[[BillingEvent], Awaitable[None]]


class BillingEventDispatcher:
    """Runs billing event handlers at most once per event id."""

    def __init__(self, ledger: IdempotencyLedger) -> None:
        self._ledger = ledger
        self._handlers: dict[str, EventHandler] = {}

    def register(self, event_type: str, handler: EventHandler) -> None:
        if event_type in self._handlers:
            raise ValueError(f"handler already registered for {event_type!r}")
        self._handlers[event_type] = handler

    @property
    def event_types(self) -> frozenset[str]:
        return frozenset(self._handlers)

    async def dispatch(self, event: BillingEvent) -> EventOutcome:
        """Process ``event`` through the ledger.

        Raises:
            StoreError: The processed marker could not be written; the
                handler did not run and the sender should retry.
        """
        logger.info("webhook.received", extra={"event_id": event.id, "event_type": event.type})
        handler = self._handlers.get(event.type)

        async def run() -> None:
            if handler is None:
                logger.info("webhook.unhandled_type", extra={"event_id": event.id, "event_type": event.type})
                return
            await handler(event)

        return await self._ledger.process(event.id, run)
