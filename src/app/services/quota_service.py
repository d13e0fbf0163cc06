# src/app/services/quota_service.py
"""
Quota ledger.
Handles billing-period rollover and debit/refund of metered minutes.
"""
from __future__ import annotations

import calendar
import logging
import math
from datetime import datetime
from typing import Optional

from src.app.domain.clock import parse_datetime, utc_now
from src.app.domain.errors import QuotaExceededError
from src.app.domain.models import BillingPeriod, Plan, QuotaReason, QuotaUsage
from src.app.infra.db.base import DocumentStore, Transaction, user_ref

logger = logging.getLogger(__name__)

PER_FILE_CAP_MINUTES = 70
FREE_LIFETIME_LIMIT_MINUTES = 60
PREMIUM_MONTHLY_LIMIT_MINUTES = 500


def monthly_key(period_start: datetime) -> str:
    """YYYY-MM-DD key of the billing period anchored at `period_start`."""
    return period_start.strftime("%Y-%m-%d")


def add_one_month(date: datetime) -> datetime:
    """Same day next month; clamped to the last day when that day does not exist."""
    year = date.year + (1 if date.month == 12 else 0)
    month = 1 if date.month == 12 else date.month + 1
    day = min(date.day, calendar.monthrange(year, month)[1])
    return date.replace(year=year, month=month, day=day)


def minutes_from_seconds(seconds: float) -> int:
    return max(1, int(math.floor(seconds / 60 + 0.5)))


def _counter(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(0, int(value))


def resolve_period(tx: Transaction, now: datetime) -> BillingPeriod:
    """
    Roll the user's billing window forward until it contains `now`.

    Every advance resets the monthly counter. The resolved window is written
    back only when it differs from what is stored, so a second call with the
    same `now` records no writes.
    """
    stored_start = parse_datetime(tx.get("periodStart"))
    stored_renews = parse_datetime(tx.get("renewsAt"))
    stored_used = _counter(tx.get("monthlyMinutesUsed"))

    period_start = stored_start or now
    renews_at = stored_renews
    if renews_at is None or renews_at <= period_start:
        renews_at = add_one_month(period_start)
    monthly_used = stored_used

    while now >= renews_at:
        period_start = renews_at
        renews_at = add_one_month(period_start)
        monthly_used = 0

    key = monthly_key(period_start)

    needs_update = (
        key != tx.get("monthlyKey")
        or monthly_used != tx.get("monthlyMinutesUsed")
        or period_start != stored_start
        or renews_at != stored_renews
    )
    if needs_update:
        tx.update({
            "monthlyKey": key,
            "monthlyMinutesUsed": monthly_used,
            "periodStart": period_start,
            "renewsAt": renews_at,
        })

    return BillingPeriod(
        monthly_key=key,
        monthly_minutes_used=monthly_used,
        period_start=period_start,
        renews_at=renews_at,
    )


def check_per_file_cap(minutes: int) -> None:
    if minutes < 1:
        raise ValueError(f"minutes must be positive, got {minutes}")
    if minutes > PER_FILE_CAP_MINUTES:
        raise QuotaExceededError(
            QuotaReason.PER_FILE_CAP.value,
            f"Recording exceeds {PER_FILE_CAP_MINUTES}-minute per-file cap.",
        )


def check_and_debit(tx: Transaction, minutes: int, now: datetime) -> int:
    """
    Enforce the per-file cap and the plan quota, then debit.

    Returns:
        The charged minutes

    Raises:
        QuotaExceededError: The transaction must abort; nothing is written
    """
    check_per_file_cap(minutes)

    plan = Plan.from_record(tx.get("plan"))
    period = resolve_period(tx, now)
    new_monthly_total = period.monthly_minutes_used + minutes

    if plan is Plan.FREE:
        new_lifetime_total = _counter(tx.get("freeLifetimeMinutesUsed")) + minutes
        if new_lifetime_total > FREE_LIFETIME_LIMIT_MINUTES:
            raise QuotaExceededError(
                QuotaReason.FREE_LIFETIME_EXCEEDED.value,
                "Free plan lifetime minutes exceeded.",
            )
        tx.update({
            "plan": plan.value,
            "freeLifetimeMinutesUsed": new_lifetime_total,
            "monthlyMinutesUsed": new_monthly_total,
        })
        return minutes

    if new_monthly_total > PREMIUM_MONTHLY_LIMIT_MINUTES:
        raise QuotaExceededError(
            QuotaReason.PREMIUM_MONTHLY_EXCEEDED.value,
            "Premium monthly minutes exceeded.",
        )
    tx.update({
        "plan": plan.value,
        "monthlyMinutesUsed": new_monthly_total,
    })
    return minutes


def apply_refund(tx: Transaction, minutes: int, now: datetime) -> None:
    period = resolve_period(tx, now)
    updates: dict[str, int] = {
        "monthlyMinutesUsed": max(0, period.monthly_minutes_used - minutes),
    }
    if Plan.from_record(tx.get("plan")) is Plan.FREE:
        updates["freeLifetimeMinutesUsed"] = max(0, _counter(tx.get("freeLifetimeMinutesUsed")) - minutes)
    tx.update(updates)


class QuotaService:
    """
    Service for metering transcription minutes against the user's plan.

    Responsibilities:
    - Debit minutes before a recording is transcribed
    - Refund minutes when a later stage produces nothing usable
    - Provide usage statistics
    """

    def __init__(self, store: DocumentStore):
        self._store = store

    def resolve(self, user_id: str, now: Optional[datetime] = None) -> BillingPeriod:
        now = now or utc_now()
        return self._store.run_transaction(user_ref(user_id), lambda tx: resolve_period(tx, now))

    def debit(self, user_id: str, minutes: int, now: Optional[datetime] = None) -> int:
        """
        Debit `minutes` from the user's quota.

        Raises:
            QuotaExceededError: If the recording is over the per-file cap or the plan limit
        """
        now = now or utc_now()
        check_per_file_cap(minutes)

        charged = self._store.run_transaction(
            user_ref(user_id),
            lambda tx: check_and_debit(tx, minutes, now),
        )
        logger.info("Quota debited: user=%s, minutes=%d", user_id, charged)
        return charged

    def refund(self, user_id: str, minutes: int, now: Optional[datetime] = None) -> None:
        if minutes <= 0:
            return
        now = now or utc_now()
        self._store.run_transaction(user_ref(user_id), lambda tx: apply_refund(tx, minutes, now))
        logger.info("Quota refunded: user=%s, minutes=%d", user_id, minutes)

    def get_usage(self, user_id: str, now: Optional[datetime] = None) -> QuotaUsage:
        now = now or utc_now()

        def _read(tx: Transaction) -> QuotaUsage:
            period = resolve_period(tx, now)
            plan = Plan.from_record(tx.get("plan"))
            lifetime_used = _counter(tx.get("freeLifetimeMinutesUsed"))
            if plan is Plan.FREE:
                remaining = FREE_LIFETIME_LIMIT_MINUTES - lifetime_used
            else:
                remaining = PREMIUM_MONTHLY_LIMIT_MINUTES - period.monthly_minutes_used
            return QuotaUsage(
                plan=plan,
                monthly_key=period.monthly_key,
                monthly_minutes_used=period.monthly_minutes_used,
                monthly_limit=PREMIUM_MONTHLY_LIMIT_MINUTES if plan is Plan.PREMIUM else None,
                free_lifetime_minutes_used=lifetime_used,
                free_lifetime_limit=FREE_LIFETIME_LIMIT_MINUTES if plan is Plan.FREE else None,
                minutes_remaining=max(0, remaining),
                renews_at=period.renews_at,
            )

        return self._store.run_transaction(user_ref(user_id), _read)
