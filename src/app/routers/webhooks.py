# src/app/routers/webhooks.py
from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel

from src.app.deps import get_entitlement_service, require_billing_webhook
from src.app.domain.errors import WebhookPayloadError
from src.app.domain.models import ReconcileOutcome
from src.app.services.billing_events import parse_billing_event
from src.app.services.entitlements import EntitlementService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/webhooks", tags=["Webhooks"])


class WebhookResponse(BaseModel):
    outcome: str


async def read_json_payload(request: Request) -> Any:
    """Decode the raw body; an empty or unparseable body is a 400."""
    body = await request.body()
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("Unparseable billing webhook body: %s", e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")


@router.post(
    "/billing",
    response_model=WebhookResponse,
    dependencies=[Depends(require_billing_webhook)],
    responses={204: {"description": "Event does not concern the tracked entitlement"}},
)
def billing_webhook(
    payload: Any = Depends(read_json_payload),
    entitlements: EntitlementService = Depends(get_entitlement_service),
):
    """
    Subscription lifecycle events from the billing provider.

    Out-of-order deliveries are detected by event timestamp and acknowledged
    without writing, so the provider stops retrying them.
    """
    try:
        event = parse_billing_event(payload)
    except WebhookPayloadError as e:
        logger.warning("Rejected billing webhook: %s", e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    outcome = entitlements.apply_event(event)
    logger.info(
        "Billing event %s for %s: %s",
        event.event_type,
        event.app_user_id,
        outcome.value,
    )

    if outcome is ReconcileOutcome.IGNORED:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return WebhookResponse(outcome=outcome.value)
