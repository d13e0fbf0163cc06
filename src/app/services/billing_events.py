"""
Defensive extraction of billing webhook payloads.

Providers rename and add fields between API versions, so every logical field
is looked up through an ordered list of candidate keys instead of a fixed
schema. Nothing here decides what an event means; see `entitlements`.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from src.app.domain.clock import parse_datetime
from src.app.domain.errors import WebhookPayloadError
from src.app.domain.models import BillingEvent

APP_USER_ID_KEYS = ("app_user_id", "appUserId", "original_app_user_id", "originalAppUserId", "subscriber_id")
EVENT_TYPE_KEYS = ("type", "event_type", "eventType")
ENTITLEMENT_IDS_KEYS = ("entitlement_ids", "entitlementIds", "entitlements")
ENTITLEMENT_ID_KEYS = ("entitlement_id", "entitlementId")
EXPIRES_AT_KEYS = ("expiration_at_ms", "expires_at_ms", "expiration_at", "expires_at", "expiresAt", "expires_date")
PERIOD_START_KEYS = ("purchased_at_ms", "period_start_ms", "purchased_at", "purchase_date", "periodStart")
EVENT_TIMESTAMP_KEYS = ("event_timestamp_ms", "updated_at_ms", "event_timestamp", "updatedAt", "timestamp")
PRODUCT_ID_KEYS = ("product_id", "productId")

# Values above this are treated as epoch milliseconds, below as seconds.
_EPOCH_MILLIS_THRESHOLD = 10_000_000_000


def lookup(source: Mapping[str, Any], candidates: tuple[str, ...]) -> Any:
    for key in candidates:
        value = source.get(key)
        if value is not None and value != "":
            return value
    return None


def parse_event_time(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) >= _EPOCH_MILLIS_THRESHOLD else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return parse_event_time(int(value.strip()))
    return parse_datetime(value)


def _string_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, Mapping):
        return [str(key) for key in value.keys()]
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if isinstance(item, (str, int)) and str(item).strip()]
    return []


def event_body(payload: Any) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise WebhookPayloadError("Webhook payload must be a JSON object")
    inner = payload.get("event")
    return inner if isinstance(inner, Mapping) else payload


def parse_billing_event(payload: Any) -> BillingEvent:
    """
    Reduce a provider envelope to a `BillingEvent`.

    Raises:
        WebhookPayloadError: If the payload is not an object or names no user
    """
    body = event_body(payload)

    app_user_id = lookup(body, APP_USER_ID_KEYS)
    if not isinstance(app_user_id, (str, int)) or not str(app_user_id).strip():
        raise WebhookPayloadError("Webhook event has no app user id")

    event_type = lookup(body, EVENT_TYPE_KEYS)
    entitlement_ids = _string_list(lookup(body, ENTITLEMENT_IDS_KEYS))
    if not entitlement_ids:
        entitlement_ids = _string_list(lookup(body, ENTITLEMENT_ID_KEYS))
    product_id = lookup(body, PRODUCT_ID_KEYS)

    return BillingEvent(
        app_user_id=str(app_user_id).strip(),
        event_type=str(event_type).upper() if event_type is not None else None,
        entitlement_ids=entitlement_ids,
        expires_at=parse_event_time(lookup(body, EXPIRES_AT_KEYS)),
        period_start=parse_event_time(lookup(body, PERIOD_START_KEYS)),
        event_timestamp=parse_event_time(lookup(body, EVENT_TIMESTAMP_KEYS)),
        product_id=str(product_id) if product_id is not None else None,
    )
