"""
Subscription entitlement reconciliation.
Maps billing webhook events onto the plan/period fields the quota ledger reads.
"""
from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any, Optional

from src.app.domain.clock import parse_datetime, utc_now
from src.app.domain.models import (
    BillingEvent,
    ExistingBillingState,
    IncomingBillingState,
    Plan,
    ReconcileOutcome,
)
from src.app.infra.db.base import DocumentStore, Transaction, user_ref
from src.app.services.quota_service import add_one_month, monthly_key

logger = logging.getLogger(__name__)

DEFAULT_ENTITLEMENT_ID = os.getenv("REVENUECAT_ENTITLEMENT_ID", "premium")

EXPIRATION_EVENT = "EXPIRATION"
# Events that may arrive without entitlement ids but still concern the tracked one.
UNSCOPED_RELEVANT_EVENTS = {EXPIRATION_EVENT, "CANCELLATION"}


def is_stale(stored_updated_at: Any, incoming_updated_at: datetime) -> bool:
    stored = parse_datetime(stored_updated_at)
    if stored is None:
        return False
    return stored >= incoming_updated_at


def is_entitlement_active(event_type: Optional[str], expires_at: Optional[datetime], now: datetime) -> bool:
    if event_type and event_type.upper() == EXPIRATION_EVENT:
        return False
    if expires_at is not None:
        return expires_at > now
    return True


def resolve_monthly_minutes_used(
    existing: Optional[ExistingBillingState],
    incoming: IncomingBillingState,
) -> int:
    """
    Decide whether reconciliation keeps or resets the monthly counter.

    Redelivering an event for the same premium period must keep usage, a new
    premium period (or a fresh upgrade) starts from zero, and a move to free
    leaves the counter for the ledger to roll over.
    """
    existing_used = existing.monthly_minutes_used if existing and isinstance(existing.monthly_minutes_used, int) else 0

    if existing is None or existing.period_start is None or existing.renews_at is None:
        return 0

    if incoming.plan is not Plan.PREMIUM:
        return existing_used

    if Plan.from_record(existing.plan) is not Plan.PREMIUM:
        return 0

    if incoming.period_start > existing.period_start or incoming.renews_at > existing.renews_at:
        return 0

    return existing_used


class EntitlementService:
    def __init__(self, store: DocumentStore, entitlement_id: str = DEFAULT_ENTITLEMENT_ID):
        self._store = store
        self.entitlement_id = entitlement_id

    def is_relevant(self, event: BillingEvent) -> bool:
        if event.entitlement_ids:
            return self.entitlement_id in event.entitlement_ids
        return (event.event_type or "") in UNSCOPED_RELEVANT_EVENTS

    def apply_event(self, event: BillingEvent, now: Optional[datetime] = None) -> ReconcileOutcome:
        now = now or utc_now()

        if not self.is_relevant(event):
            logger.info(
                "Ignoring billing event: user=%s, type=%s, entitlements=%s",
                event.app_user_id,
                event.event_type,
                event.entitlement_ids,
            )
            return ReconcileOutcome.IGNORED

        active = is_entitlement_active(event.event_type, event.expires_at, now)
        period_start = event.period_start or now
        renews_at = event.expires_at or add_one_month(period_start)
        if renews_at <= period_start:
            renews_at = add_one_month(period_start)
        incoming = IncomingBillingState(
            plan=Plan.PREMIUM if active else Plan.FREE,
            period_start=period_start,
            renews_at=renews_at,
        )
        incoming_updated_at = event.event_timestamp or now

        def _reconcile(tx: Transaction) -> ReconcileOutcome:
            if is_stale(tx.get("rcUpdatedAt"), incoming_updated_at):
                return ReconcileOutcome.STALE

            existing = None
            if tx.exists:
                stored_used = tx.get("monthlyMinutesUsed")
                existing = ExistingBillingState(
                    plan=tx.get("plan"),
                    period_start=parse_datetime(tx.get("periodStart")),
                    renews_at=parse_datetime(tx.get("renewsAt")),
                    monthly_minutes_used=stored_used if isinstance(stored_used, int) else None,
                )

            updates: dict[str, Any] = {
                "plan": incoming.plan.value,
                "monthlyMinutesUsed": resolve_monthly_minutes_used(existing, incoming),
                "rcUpdatedAt": incoming_updated_at,
                "rcEventType": event.event_type,
                "entitlementExpiresAt": event.expires_at,
            }
            keep_period = (
                incoming.plan is Plan.FREE
                and existing is not None
                and existing.period_start is not None
                and existing.renews_at is not None
            )
            if not keep_period:
                updates.update({
                    "periodStart": incoming.period_start,
                    "renewsAt": incoming.renews_at,
                    "monthlyKey": monthly_key(incoming.period_start),
                })
            tx.update(updates)
            return ReconcileOutcome.APPLIED

        outcome = self._store.run_transaction(user_ref(event.app_user_id), _reconcile)
        logger.info(
            "Billing event %s: user=%s, type=%s, plan=%s",
            outcome.value,
            event.app_user_id,
            event.event_type,
            incoming.plan.value,
        )
        return outcome
