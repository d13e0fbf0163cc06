"""
Per-user, per-operation admission control for calls to the AI providers.

Each operation kind keeps a one-minute counter and an in-flight gauge on the
user record. Both are checked and bumped inside one transaction just before
the external call; the caller releases the in-flight slot when the call ends.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator, Mapping, Optional

from src.app.domain.clock import parse_datetime, to_millis, utc_now
from src.app.domain.errors import RateLimitExceededError
from src.app.domain.models import (
    OperationKind,
    Plan,
    RateLimitConfig,
    RateLimitDecision,
    RateLimitFields,
    RateLimitReason,
)
from src.app.infra.db.base import DocumentStore, Transaction, user_ref

logger = logging.getLogger(__name__)

RATE_LIMIT_BUCKET_MS = 60 * 1000
RATE_LIMIT_IN_FLIGHT_TTL = timedelta(minutes=20)

RATE_LIMITS: dict[OperationKind, dict[Plan, RateLimitConfig]] = {
    kind: {
        Plan.FREE: RateLimitConfig(per_minute=2, max_in_flight=2),
        Plan.PREMIUM: RateLimitConfig(per_minute=3, max_in_flight=3),
    }
    for kind in OperationKind
}


def utc_minute_key(now: datetime) -> str:
    return now.astimezone(timezone.utc).strftime("%Y%m%d%H%M")


def clamp_counter(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if value != value:  # NaN
        return 0
    return max(0, int(value))


def evaluate_rate_limit(
    record: Mapping[str, Any],
    now: datetime,
    config: RateLimitConfig,
    fields: RateLimitFields,
) -> RateLimitDecision:
    minute_key = utc_minute_key(now)
    stored_minute_key = record.get(fields.minute_key)
    minute_count = clamp_counter(record.get(fields.minute_count))
    in_flight = clamp_counter(record.get(fields.in_flight))
    in_flight_updated_at = parse_datetime(record.get(fields.in_flight_updated_at))

    # A worker that died mid-call never released its slot.
    if in_flight > 0 and (
        in_flight_updated_at is None or now - in_flight_updated_at > RATE_LIMIT_IN_FLIGHT_TTL
    ):
        in_flight = 0

    if stored_minute_key != minute_key:
        minute_count = 0

    if in_flight >= config.max_in_flight:
        return RateLimitDecision(allowed=False, reason=RateLimitReason.IN_FLIGHT)

    if minute_count >= config.per_minute:
        retry_after_ms = RATE_LIMIT_BUCKET_MS - (to_millis(now) % RATE_LIMIT_BUCKET_MS)
        return RateLimitDecision(
            allowed=False,
            reason=RateLimitReason.PER_MINUTE,
            retry_after_ms=retry_after_ms,
        )

    return RateLimitDecision(
        allowed=True,
        updates={
            fields.minute_key: minute_key,
            fields.minute_count: minute_count + 1,
            fields.in_flight: in_flight + 1,
            fields.in_flight_updated_at: now,
        },
    )


class RateLimiter:
    def __init__(self, store: DocumentStore, limits: Optional[dict[OperationKind, dict[Plan, RateLimitConfig]]] = None):
        self._store = store
        self._limits = limits or RATE_LIMITS

    def acquire(self, user_id: str, kind: OperationKind, now: Optional[datetime] = None) -> None:
        """
        Take one slot for `kind`.

        Raises:
            RateLimitExceededError: With `retry_after_ms` set for per-minute rejections
        """
        now = now or utc_now()
        fields = RateLimitFields.for_kind(kind)

        def _evaluate(tx: Transaction) -> RateLimitDecision:
            config = self._limits[kind][Plan.from_record(tx.get("plan"))]
            decision = evaluate_rate_limit(tx.data, now, config, fields)
            if decision.allowed:
                tx.update(decision.updates)
            return decision

        decision = self._store.run_transaction(user_ref(user_id), _evaluate)
        if not decision.allowed:
            logger.info(
                "Rate limited: user=%s, operation=%s, reason=%s, retry_after_ms=%s",
                user_id,
                kind.value,
                decision.reason.value,
                decision.retry_after_ms,
            )
            raise RateLimitExceededError(decision.reason.value, decision.retry_after_ms, kind.value)

    def release(self, user_id: str, kind: OperationKind, now: Optional[datetime] = None) -> None:
        now = now or utc_now()
        fields = RateLimitFields.for_kind(kind)

        def _decrement(tx: Transaction) -> None:
            in_flight = clamp_counter(tx.get(fields.in_flight))
            tx.update({
                fields.in_flight: max(0, in_flight - 1),
                fields.in_flight_updated_at: now,
            })

        self._store.run_transaction(user_ref(user_id), _decrement)

    @contextmanager
    def slot(self, user_id: str, kind: OperationKind) -> Iterator[None]:
        """Hold one in-flight slot for the duration of the block; released once, whatever happens."""
        self.acquire(user_id, kind)
        try:
            yield
        finally:
            self.release(user_id, kind)
