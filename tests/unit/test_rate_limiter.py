from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.app.domain.errors import RateLimitExceededError
from src.app.domain.models import OperationKind, RateLimitConfig, RateLimitFields, RateLimitReason
from src.app.infra.db.base import user_ref
from src.app.infra.db.memory_store import InMemoryDocumentStore
from src.app.services.rate_limiter import RateLimiter, clamp_counter, evaluate_rate_limit, utc_minute_key

FIELDS = RateLimitFields.for_kind(OperationKind.SUMMARY)
FREE = RateLimitConfig(per_minute=2, max_in_flight=2)


def at(second: int = 0, minute: int = 30) -> datetime:
    return datetime(2024, 4, 5, 12, minute, second, tzinfo=timezone.utc)


class TestHelpers:
    def test_minute_key_is_utc(self) -> None:
        local = datetime(2024, 4, 5, 14, 30, tzinfo=timezone(timedelta(hours=2)))
        assert utc_minute_key(local) == "202404051230"

    def test_field_names_are_prefixed_by_operation(self) -> None:
        fields = RateLimitFields.for_kind(OperationKind.TRANSCRIBE)
        assert fields.minute_key == "transcribeMinuteKey"
        assert fields.in_flight_updated_at == "transcribeInFlightUpdatedAt"

    @pytest.mark.parametrize("value, expected", [(None, 0), ("3", 0), (-2, 0), (True, 0), (4, 4), (2.7, 2)])
    def test_clamp_counter(self, value: object, expected: int) -> None:
        assert clamp_counter(value) == expected


class TestEvaluateRateLimit:
    def test_admits_first_call_and_starts_bucket(self) -> None:
        decision = evaluate_rate_limit({}, at(), FREE, FIELDS)

        assert decision.allowed
        assert decision.updates == {
            "summaryMinuteKey": "202404051230",
            "summaryMinuteCount": 1,
            "summaryInFlight": 1,
            "summaryInFlightUpdatedAt": at(),
        }

    def test_rejects_when_minute_bucket_is_full(self) -> None:
        record = {"summaryMinuteKey": "202404051230", "summaryMinuteCount": 2}

        decision = evaluate_rate_limit(record, at(second=15), FREE, FIELDS)

        assert not decision.allowed
        assert decision.reason is RateLimitReason.PER_MINUTE
        assert decision.retry_after_ms == 45_000
        assert decision.updates == {}

    def test_new_minute_resets_count(self) -> None:
        record = {"summaryMinuteKey": "202404051229", "summaryMinuteCount": 2}

        decision = evaluate_rate_limit(record, at(), FREE, FIELDS)

        assert decision.allowed
        assert decision.updates["summaryMinuteCount"] == 1

    def test_rejects_when_in_flight_is_full(self) -> None:
        record = {"summaryInFlight": 2, "summaryInFlightUpdatedAt": at(minute=25)}

        decision = evaluate_rate_limit(record, at(), FREE, FIELDS)

        assert not decision.allowed
        assert decision.reason is RateLimitReason.IN_FLIGHT
        assert decision.retry_after_ms is None

    def test_stale_in_flight_is_ignored(self) -> None:
        record = {"summaryInFlight": 2, "summaryInFlightUpdatedAt": at() - timedelta(minutes=21)}

        decision = evaluate_rate_limit(record, at(), FREE, FIELDS)

        assert decision.allowed
        assert decision.updates["summaryInFlight"] == 1

    def test_in_flight_without_timestamp_is_stale(self) -> None:
        decision = evaluate_rate_limit({"summaryInFlight": 5}, at(), FREE, FIELDS)

        assert decision.allowed


class TestRateLimiter:
    def test_third_call_in_same_minute_is_rejected_for_free_user(self) -> None:
        store = InMemoryDocumentStore()
        store.put(user_ref("u1"), {"plan": "free"})
        limiter = RateLimiter(store)
        now = at(second=10)

        limiter.acquire("u1", OperationKind.SUMMARY, now)
        limiter.release("u1", OperationKind.SUMMARY, now)
        limiter.acquire("u1", OperationKind.SUMMARY, now)
        limiter.release("u1", OperationKind.SUMMARY, now)

        with pytest.raises(RateLimitExceededError) as exc_info:
            limiter.acquire("u1", OperationKind.SUMMARY, now)

        assert exc_info.value.reason == "per_minute"
        assert 0 < exc_info.value.retry_after_ms <= 60_000
        assert exc_info.value.operation == "summary"

    def test_premium_user_gets_three_calls(self) -> None:
        store = InMemoryDocumentStore()
        store.put(user_ref("u1"), {"plan": "premium"})
        limiter = RateLimiter(store)
        now = at()

        for _ in range(3):
            limiter.acquire("u1", OperationKind.TRANSLATION, now)
            limiter.release("u1", OperationKind.TRANSLATION, now)

        with pytest.raises(RateLimitExceededError):
            limiter.acquire("u1", OperationKind.TRANSLATION, now)

    def test_operation_kinds_are_independent(self) -> None:
        store = InMemoryDocumentStore()
        limiter = RateLimiter(store)
        now = at()

        limiter.acquire("u1", OperationKind.SUMMARY, now)
        limiter.acquire("u1", OperationKind.SUMMARY, now)
        limiter.acquire("u1", OperationKind.TRANSCRIBE, now)

        record = store.get(user_ref("u1"))
        assert record["summaryInFlight"] == 2
        assert record["transcribeInFlight"] == 1

    def test_release_floors_at_zero(self) -> None:
        store = InMemoryDocumentStore()
        limiter = RateLimiter(store)

        limiter.release("u1", OperationKind.SUMMARY, at())

        assert store.get(user_ref("u1"))["summaryInFlight"] == 0

    def test_slot_releases_on_exception(self) -> None:
        store = InMemoryDocumentStore()
        limiter = RateLimiter(store)

        with pytest.raises(RuntimeError):
            with limiter.slot("u1", OperationKind.TRANSCRIBE):
                assert store.get(user_ref("u1"))["transcribeInFlight"] == 1
                raise RuntimeError("provider down")

        assert store.get(user_ref("u1"))["transcribeInFlight"] == 0

    def test_rejected_acquire_writes_nothing(self) -> None:
        store = InMemoryDocumentStore()
        store.put(user_ref("u1"), {"plan": "free", "summaryInFlight": 2, "summaryInFlightUpdatedAt": at()})
        limiter = RateLimiter(store)

        with pytest.raises(RateLimitExceededError) as exc_info:
            limiter.acquire("u1", OperationKind.SUMMARY, at(second=5))

        assert exc_info.value.reason == "in_flight"
        assert store.commit_count == 0
