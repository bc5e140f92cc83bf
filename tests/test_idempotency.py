"""Tests for the idempotency ledger's per-event state machine."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from kwcoord.core.errors import BusinessRuleError, StoreUnavailableError
from kwcoord.services.idempotency import EventState, IdempotencyLedger, processed_key


def _unavailable() -> StoreUnavailableError:
    return StoreUnavailableError(code="store_unavailable", message="down")


@pytest.mark.asyncio
async def test_handler_runs_once_for_redelivery(store) -> None:
    ledger = IdempotencyLedger(store)
    handler = AsyncMock()

    first = await ledger.process("evt_1", handler)
    second = await ledger.process("evt_1", handler)

    assert first.state is EventState.COMMITTED
    assert second.state is EventState.DUPLICATE
    handler.assert_awaited_once()
    assert store.ttl(processed_key("evt_1")) == pytest.approx(72 * 3600)


@pytest.mark.asyncio
async def test_concurrent_deliveries_run_handler_once(store) -> None:
    ledger = IdempotencyLedger(store)
    calls = 0

    async def handler() -> None:
        nonlocal calls
        calls += 1
        await asyncio.sleep(0)

    outcomes = await asyncio.gather(*(ledger.process("evt_1", handler) for _ in range(10)))

    assert calls == 1
    states = [o.state for o in outcomes]
    assert states.count(EventState.COMMITTED) == 1
    assert states.count(EventState.DUPLICATE) == 9


@pytest.mark.asyncio
async def test_infrastructure_failure_unmarks_for_retry(store) -> None:
    ledger = IdempotencyLedger(store)
    handler = AsyncMock(side_effect=[_unavailable(), None])

    failed = await ledger.process("evt_1", handler)
    assert failed.state is EventState.RETRYABLE_FAILURE
    assert failed.should_retry is True
    assert failed.unmarked is True
    assert failed.error_code == "store_unavailable"
    assert await ledger.is_processed("evt_1") is False

    retried = await ledger.process("evt_1", handler)
    assert retried.state is EventState.COMMITTED
    assert handler.await_count == 2


@pytest.mark.asyncio
async def test_unexpected_exception_is_retryable(store) -> None:
    ledger = IdempotencyLedger(store)

    outcome = await ledger.process("evt_1", AsyncMock(side_effect=RuntimeError("boom")))

    assert outcome.state is EventState.RETRYABLE_FAILURE
    assert outcome.error_code == "RuntimeError"


@pytest.mark.asyncio
async def test_business_failure_keeps_marker(store) -> None:
    ledger = IdempotencyLedger(store)
    handler = AsyncMock(
        side_effect=BusinessRuleError(code="identity_not_found", message="no such customer")
    )

    outcome = await ledger.process("evt_1", handler)

    assert outcome.state is EventState.BUSINESS_FAILURE
    assert outcome.should_retry is False
    assert outcome.error_code == "identity_not_found"
    assert await ledger.is_processed("evt_1") is True
    assert (await ledger.process("evt_1", handler)).state is EventState.DUPLICATE


@pytest.mark.asyncio
async def test_is_processed_fails_closed() -> None:
    failing = AsyncMock()
    failing.get.side_effect = _unavailable()
    ledger = IdempotencyLedger(failing)

    assert await ledger.is_processed("evt_1") is True


@pytest.mark.asyncio
async def test_mark_processed_fails_loud() -> None:
    failing = AsyncMock()
    failing.get.return_value = None
    failing.set_if_absent.side_effect = _unavailable()
    ledger = IdempotencyLedger(failing)
    handler = AsyncMock()

    with pytest.raises(StoreUnavailableError):
        await ledger.process("evt_1", handler)
    handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_failed_unmark_is_reported(store) -> None:
    ledger = IdempotencyLedger(store)
    store_delete = store.delete

    async def broken_delete(key):
        raise _unavailable()

    store.delete = broken_delete
    try:
        outcome = await ledger.process("evt_1", AsyncMock(side_effect=RuntimeError("boom")))
    finally:
        store.delete = store_delete

    assert outcome.state is EventState.RETRYABLE_FAILURE
    assert outcome.unmarked is False


@pytest.mark.asyncio
async def test_empty_event_id_rejected(store) -> None:
    with pytest.raises(ValueError):
        await IdempotencyLedger(store).process("", AsyncMock())
