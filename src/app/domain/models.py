# src/app/domain/models.py
"""
Domain models for the lecture pipeline and the billing ledger.
These are pure data structures with no infrastructure dependencies.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


USERS_COLLECTION = "users"
LECTURES_COLLECTION = "lectures"


class Plan(str, Enum):
    FREE = "free"
    PREMIUM = "premium"

    @classmethod
    def from_record(cls, value: object) -> "Plan":
        return cls.PREMIUM if value == cls.PREMIUM.value else cls.FREE


class JobStatus(str, Enum):
    """Status enum for lecture jobs."""
    PROCESSING = "processing"
    TRANSCRIBED = "transcribed"
    SUMMARIZING = "summarizing"
    READY = "ready"
    FAILED = "failed"
    BLOCKED_QUOTA = "blocked_quota"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.READY, JobStatus.FAILED)


# Forward-only ordering used to drop duplicate upload triggers.
STATUS_RANK: dict[str, int] = {
    JobStatus.PROCESSING.value: 0,
    JobStatus.BLOCKED_QUOTA.value: 1,
    JobStatus.TRANSCRIBED.value: 2,
    JobStatus.SUMMARIZING.value: 3,
    JobStatus.READY.value: 4,
    JobStatus.FAILED.value: 4,
}


class OperationKind(str, Enum):
    TRANSCRIBE = "transcribe"
    SUMMARY = "summary"
    TRANSLATION = "translation"


class QuotaReason(str, Enum):
    PER_FILE_CAP = "per_file_cap"
    FREE_LIFETIME_EXCEEDED = "free_lifetime_exceeded"
    PREMIUM_MONTHLY_EXCEEDED = "premium_monthly_exceeded"


class RateLimitReason(str, Enum):
    PER_MINUTE = "per_minute"
    IN_FLIGHT = "in_flight"


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    STALE = "stale"
    IGNORED = "ignored"


@dataclass
class BillingPeriod:
    """The current billing window [period_start, renews_at) and its usage."""
    monthly_key: str
    monthly_minutes_used: int
    period_start: datetime
    renews_at: datetime


@dataclass
class QuotaUsage:
    plan: Plan
    monthly_key: str
    monthly_minutes_used: int
    monthly_limit: Optional[int]
    free_lifetime_minutes_used: int
    free_lifetime_limit: Optional[int]
    minutes_remaining: int
    renews_at: datetime


@dataclass(frozen=True)
class RateLimitConfig:
    per_minute: int
    max_in_flight: int


@dataclass(frozen=True)
class RateLimitFields:
    """Names of the user-record fields holding one operation's counters."""
    minute_key: str
    minute_count: str
    in_flight: str
    in_flight_updated_at: str

    @classmethod
    def for_kind(cls, kind: OperationKind) -> "RateLimitFields":
        prefix = kind.value
        return cls(
            minute_key=f"{prefix}MinuteKey",
            minute_count=f"{prefix}MinuteCount",
            in_flight=f"{prefix}InFlight",
            in_flight_updated_at=f"{prefix}InFlightUpdatedAt",
        )


@dataclass
class RateLimitDecision:
    allowed: bool
    reason: Optional[RateLimitReason] = None
    retry_after_ms: Optional[int] = None
    updates: dict[str, Any] = field(default_factory=dict)


@dataclass
class LectureSummary:
    main_theme: str
    key_points: list[str]
    explicit_quotes: list[str]
    weekly_actions: list[str]

    def to_record(self) -> dict[str, Any]:
        return {
            "mainTheme": self.main_theme,
            "keyPoints": list(self.key_points),
            "explicitQuotes": list(self.explicit_quotes),
            "weeklyActions": list(self.weekly_actions),
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "LectureSummary":
        return cls(
            main_theme=str(data.get("mainTheme") or ""),
            key_points=list(data.get("keyPoints") or []),
            explicit_quotes=list(data.get("explicitQuotes") or []),
            weekly_actions=list(data.get("weeklyActions") or []),
        )


@dataclass
class TranscriptionResult:
    """Result of transcribing one audio file (or one chunk of it)."""
    text: str
    language: str
    duration_sec: float
    model_version: str


@dataclass(frozen=True)
class StorageObjectEvent:
    """An object-finalized notification from the upload bucket."""
    bucket: str
    name: str
    content_type: str = ""
    size_bytes: int = 0


@dataclass(frozen=True)
class AudioObjectKey:
    """Parsed `audio/{user_id}/{job_id}.{ext}` upload path."""
    path: str
    user_id: str
    job_id: str
    extension: str


@dataclass
class BillingEvent:
    """A billing webhook event reduced to the fields reconciliation needs."""
    app_user_id: str
    event_type: Optional[str]
    entitlement_ids: list[str]
    expires_at: Optional[datetime]
    period_start: Optional[datetime]
    event_timestamp: Optional[datetime]
    product_id: Optional[str] = None


@dataclass
class ExistingBillingState:
    plan: Optional[str] = None
    period_start: Optional[datetime] = None
    renews_at: Optional[datetime] = None
    monthly_minutes_used: Optional[int] = None


@dataclass
class IncomingBillingState:
    plan: Plan
    period_start: datetime
    renews_at: datetime
