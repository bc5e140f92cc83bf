"""Tests for billing event dispatch."""

from unittest.mock import AsyncMock

import pytest

from kwcoord.core.errors import BusinessRuleError
from kwcoord.schemas.billing import BillingEvent
from kwcoord.services.billing_events import BillingEventDispatcher
from kwcoord.services.idempotency import EventState, IdempotencyLedger


@pytest.fixture
def dispatcher(store) -> BillingEventDispatcher:
    return BillingEventDispatcher(IdempotencyLedger(store))


def _event(event_id: str, event_type: str = "invoice.paid") -> BillingEvent:
    return BillingEvent(id=event_id, type=event_type, data={"object": {"customer": "cus_1"}})


def test_duplicate_registration_rejected(dispatcher) -> None:
    dispatcher.register("invoice.paid", AsyncMock())

    with pytest.raises(ValueError):
        dispatcher.register("invoice.paid", AsyncMock())
    assert dispatcher.event_types == {"invoice.paid"}


@pytest.mark.asyncio
async def test_routes_by_type_once_per_event(dispatcher) -> None:
    paid = AsyncMock()
    failed = AsyncMock()
    dispatcher.register("invoice.paid", paid)
    dispatcher.register("invoice.payment_failed", failed)

    first = await dispatcher.dispatch(_event("evt_1"))
    again = await dispatcher.dispatch(_event("evt_1"))

    assert first.state is EventState.COMMITTED
    assert again.state is EventState.DUPLICATE
    paid.assert_awaited_once()
    assert paid.await_args.args[0].id == "evt_1"
    failed.assert_not_awaited()


@pytest.mark.asyncio
async def test_unhandled_type_is_acknowledged_and_marked(dispatcher) -> None:
    outcome = await dispatcher.dispatch(_event("evt_1", "customer.created"))

    assert outcome.state is EventState.COMMITTED
    assert (await dispatcher.dispatch(_event("evt_1", "customer.created"))).state is EventState.DUPLICATE


@pytest.mark.asyncio
async def test_business_rule_error_is_business_failure(dispatcher) -> None:
    dispatcher.register(
        "invoice.paid",
        AsyncMock(side_effect=BusinessRuleError(code="identity_not_found", message="unknown customer")),
    )

    outcome = await dispatcher.dispatch(_event("evt_1"))

    assert outcome.state is EventState.BUSINESS_FAILURE
    assert outcome.error_code == "identity_not_found"
