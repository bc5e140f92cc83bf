from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from kwcoord.core.dependencies import get_billing_dispatcher
from kwcoord.core.logging import get_request_id
from kwcoord.core.webhook_auth import verify_webhook_signature
from kwcoord.schemas.billing import BillingEvent, WebhookAck
from kwcoord.services.billing_events import BillingEventDispatcher

router = APIRouter(tags=["Webhooks"])


@router.post(
    "/webhooks/billing",
    response_model=WebhookAck,
    dependencies=[Depends(verify_webhook_signature)],
    responses={
        400: {"description": "Missing or invalid signature."},
        500: {"description": "Handler failed; the provider should redeliver."},
    },
)
async def receive_billing_event(
    event: BillingEvent,
    dispatcher: BillingEventDispatcher = Depends(get_billing_dispatcher),
) -> WebhookAck | JSONResponse:
    """Receive one billing provider event.

    Only deliveries signed with the shared webhook secret are accepted.
    Duplicates and business failures are acknowledged with 200 so the
    provider stops redelivering. A failed handler answers 500 so it
    redelivers; a store failure before the handler ran answers 503 (via the
    store error handler).
    """

    outcome = await dispatcher.dispatch(event)
    if outcome.should_retry:
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "code": "webhook_handler_failed",
                    "message": "Event handling failed; retry delivery.",
                    "request_id": get_request_id(),
                }
            },
        )

    return WebhookAck(event_id=outcome.event_id, state=outcome.state.value)
