from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Optional

import pytest

from src.app.domain.clock import utc_now
from src.app.domain.errors import (
    InvalidJobStateError,
    JobNotFoundError,
    NotificationDeliveryError,
    RateLimitExceededError,
    UnsupportedLanguageError,
)
from src.app.domain.models import JobStatus, LectureSummary, StorageObjectEvent, TranscriptionResult
from src.app.infra.db.base import lecture_ref, user_ref
from src.app.infra.db.memory_store import InMemoryDocumentStore
from src.app.infra.storage.base import StorageProvider
from src.app.services.job_orchestrator import EMPTY_TRANSCRIPT_MESSAGE, JobOrchestrator
from src.app.services.notifications import Notifier
from src.app.services.quota_service import QuotaService
from src.app.services.rate_limiter import RateLimiter

SUMMARY = LectureSummary("Patience in hardship", ["Be patient"], [], ["Call a relative"])


class StubStorage(StorageProvider):
    def __init__(self) -> None:
        self.downloads: list[str] = []

    def download_to_path(self, object_key: str, target_path: Path) -> Path:
        self.downloads.append(object_key)
        target_path.write_bytes(b"audio")
        return target_path

    def get_object_metadata(self, object_key: str) -> dict:
        return {"content_type": "audio/mp4", "content_length": 5, "metadata": {}}


class StubTranscriber:
    def __init__(self, texts: list[str], error: Optional[Exception] = None) -> None:
        self.texts = list(texts)
        self.error = error
        self.files: list[Path] = []

    def transcribe_file(self, media_path: Path) -> TranscriptionResult:
        self.files.append(media_path)
        if self.error:
            raise self.error
        return TranscriptionResult(self.texts.pop(0), "en", 300.0, "stub")


class StubSummarizer:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.transcripts: list[str] = []

    def summarize(self, transcript: str) -> LectureSummary:
        self.transcripts.append(transcript)
        if self.error:
            raise self.error
        return SUMMARY


class StubTranslator:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.languages: list[str] = []

    def translate_summary(self, summary: LectureSummary, language: str) -> LectureSummary:
        self.languages.append(language)
        if self.error:
            raise self.error
        return LectureSummary(f"[{language}] {summary.main_theme}", summary.key_points, [], summary.weekly_actions)


class StubNotifier(Notifier):
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.sent: list[tuple[str, str, Optional[str]]] = []

    def send_summary_ready(self, user_id: str, job_id: str, title: Optional[str] = None) -> None:
        if self.error:
            raise self.error
        self.sent.append((user_id, job_id, title))


@dataclass
class Pipeline:
    store: InMemoryDocumentStore
    orchestrator: JobOrchestrator
    storage: StubStorage
    transcriber: StubTranscriber
    summarizer: StubSummarizer
    translator: StubTranslator
    notifier: StubNotifier
    temp_dir: Path
    split_calls: list = field(default_factory=list)

    def lecture(self, job_id: str = "j1", user_id: str = "u1") -> Optional[dict]:
        return self.store.get(lecture_ref(user_id, job_id))

    def user(self, user_id: str = "u1") -> Optional[dict]:
        return self.store.get(user_ref(user_id))


def build_pipeline(
    tmp_path: Path,
    texts: Optional[list[str]] = None,
    duration_seconds: Optional[float] = 600.0,
    transcriber_error: Optional[Exception] = None,
    summarizer_error: Optional[Exception] = None,
    translator_error: Optional[Exception] = None,
    notifier_error: Optional[Exception] = None,
) -> Pipeline:
    store = InMemoryDocumentStore()
    storage = StubStorage()
    transcriber = StubTranscriber(texts if texts is not None else ["Praise be to God.", "Be patient."], transcriber_error)
    summarizer = StubSummarizer(summarizer_error)
    translator = StubTranslator(translator_error)
    notifier = StubNotifier(notifier_error)
    split_calls: list = []

    def splitter(media_path: Path, output_dir: Path, duration_seconds: Optional[float] = None) -> list[Path]:
        split_calls.append((media_path, duration_seconds))
        return [media_path] * len(transcriber.texts or [None])

    orchestrator = JobOrchestrator(
        store=store,
        storage=storage,
        quota=QuotaService(store),
        rate_limiter=RateLimiter(store),
        transcriber=transcriber,
        summarizer=summarizer,
        translator=translator,
        notifier=notifier,
        temp_dir=str(tmp_path),
        splitter=splitter,
        probe=lambda path: duration_seconds,
    )
    return Pipeline(store, orchestrator, storage, transcriber, summarizer, translator, notifier, tmp_path, split_calls)


def upload(name: str = "audio/u1/j1.m4a", content_type: str = "audio/mp4", size: int = 2048) -> StorageObjectEvent:
    return StorageObjectEvent(bucket="uploads", name=name, content_type=content_type, size_bytes=size)


def seed_transcribed(pipeline: Pipeline, job_id: str = "j1", **extra) -> None:
    record = {"status": "transcribed", "userId": "u1", "transcript": "Praise be to God. Be patient."}
    record.update(extra)
    pipeline.store.put(lecture_ref("u1", job_id), record)


def seed_ready(pipeline: Pipeline, job_id: str = "j1", **extra) -> None:
    record = {"status": "ready", "userId": "u1", "summary": SUMMARY.to_record()}
    record.update(extra)
    pipeline.store.put(lecture_ref("u1", job_id), record)


class TestUploadHandling:
    def test_audio_upload_is_transcribed_and_charged(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)

        status = pipeline.orchestrator.handle_upload(upload())

        record = pipeline.lecture()
        assert status is JobStatus.TRANSCRIBED
        assert record["status"] == "transcribed"
        assert record["transcript"] == "Praise be to God. Be patient."
        assert record["userId"] == "u1"
        assert record["audioPath"] == "audio/u1/j1.m4a"
        assert record["durationMinutes"] == 10
        assert record["chargedMinutes"] == 10
        assert "errorMessage" not in record
        assert pipeline.user()["freeLifetimeMinutesUsed"] == 10
        assert pipeline.user()["transcribeInFlight"] == 0
        assert pipeline.split_calls[0][1] == 600.0
        assert not (tmp_path / "u1_j1").exists()

    @pytest.mark.parametrize(
        "event",
        [
            upload(name="images/u1/j1.png"),
            upload(content_type="video/mp4"),
            upload(content_type=""),
            upload(size=101 * 1024 * 1024),
            upload(name="audio/j1.m4a"),
        ],
    )
    def test_non_audio_objects_are_ignored(self, tmp_path: Path, event: StorageObjectEvent) -> None:
        pipeline = build_pipeline(tmp_path)

        assert pipeline.orchestrator.handle_upload(event) is None
        assert pipeline.storage.downloads == []
        assert pipeline.store.find("lectures", {}) == []

    def test_duplicate_trigger_is_dropped(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        pipeline.orchestrator.handle_upload(upload())

        assert pipeline.orchestrator.handle_upload(upload()) is None
        assert pipeline.storage.downloads == ["audio/u1/j1.m4a"]
        assert pipeline.user()["freeLifetimeMinutesUsed"] == 10

    def test_redelivery_while_processing_is_dropped(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        pipeline.store.put(user_ref("u1"), {"plan": "free", "freeLifetimeMinutesUsed": 10})
        pipeline.store.put(lecture_ref("u1", "j1"), {
            "status": "processing",
            "processingStartedAt": utc_now() - timedelta(minutes=2),
        })

        assert pipeline.orchestrator.handle_upload(upload()) is None
        assert pipeline.storage.downloads == []
        assert pipeline.lecture()["status"] == "processing"
        assert pipeline.user()["freeLifetimeMinutesUsed"] == 10

    @pytest.mark.parametrize("minutes_ago", [None, 30], ids=["unstamped", "expired"])
    def test_abandoned_processing_claim_is_taken_over(self, tmp_path: Path, minutes_ago: Optional[int]) -> None:
        pipeline = build_pipeline(tmp_path)
        record = {"status": "processing"}
        if minutes_ago is not None:
            record["processingStartedAt"] = utc_now() - timedelta(minutes=minutes_ago)
        pipeline.store.put(lecture_ref("u1", "j1"), record)

        status = pipeline.orchestrator.handle_upload(upload())

        assert status is JobStatus.TRANSCRIBED
        assert pipeline.user()["freeLifetimeMinutesUsed"] == 10

    def test_redelivery_of_blocked_lecture_waits_for_resubmit(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        pipeline.store.put(user_ref("u1"), {"plan": "free", "freeLifetimeMinutesUsed": 55})
        pipeline.orchestrator.handle_upload(upload())
        pipeline.store.update(user_ref("u1"), {"plan": "premium"})

        assert pipeline.orchestrator.handle_upload(upload()) is None
        assert pipeline.lecture()["status"] == "blocked_quota"
        assert pipeline.transcriber.files == []
        assert pipeline.user().get("monthlyMinutesUsed", 0) == 0

    def test_failed_lecture_is_not_retried_by_redelivery(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path, transcriber_error=RuntimeError("decoder crashed"))
        pipeline.orchestrator.handle_upload(upload())

        assert pipeline.orchestrator.handle_upload(upload()) is None
        assert pipeline.storage.downloads == ["audio/u1/j1.m4a"]

    def test_supplied_duration_is_billed_instead_of_probe(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        pipeline.store.put(lecture_ref("u1", "j1"), {"durationMinutes": 3})

        pipeline.orchestrator.handle_upload(upload())

        assert pipeline.lecture()["chargedMinutes"] == 3
        assert pipeline.user()["freeLifetimeMinutesUsed"] == 3

    def test_unknown_duration_fails_without_charge(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path, duration_seconds=None)

        status = pipeline.orchestrator.handle_upload(upload())

        assert status is JobStatus.FAILED
        assert pipeline.lecture()["errorMessage"] == "Could not determine audio duration"
        assert pipeline.transcriber.files == []

    def test_quota_exhaustion_blocks_without_transcribing(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        pipeline.store.put(user_ref("u1"), {"plan": "free", "freeLifetimeMinutesUsed": 55})

        status = pipeline.orchestrator.handle_upload(upload())

        record = pipeline.lecture()
        assert status is JobStatus.BLOCKED_QUOTA
        assert record["status"] == "blocked_quota"
        assert record["quotaReason"] == "free_lifetime_exceeded"
        assert record["durationMinutes"] == 10
        assert pipeline.transcriber.files == []
        assert pipeline.user()["freeLifetimeMinutesUsed"] == 55

    def test_transcription_failure_refunds_minutes(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path, transcriber_error=RuntimeError("decoder crashed"))

        status = pipeline.orchestrator.handle_upload(upload())

        record = pipeline.lecture()
        assert status is JobStatus.FAILED
        assert record["errorMessage"] == "decoder crashed"
        assert record["chargedMinutes"] == 0
        assert pipeline.user()["freeLifetimeMinutesUsed"] == 0
        assert not (tmp_path / "u1_j1").exists()

    def test_empty_transcript_fails_and_refunds(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path, texts=["  ", ""])

        status = pipeline.orchestrator.handle_upload(upload())

        assert status is JobStatus.FAILED
        assert pipeline.lecture()["errorMessage"] == EMPTY_TRANSCRIPT_MESSAGE
        assert pipeline.user()["freeLifetimeMinutesUsed"] == 0

    def test_rate_limited_upload_leaves_no_record(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        pipeline.store.put(user_ref("u1"), {"transcribeInFlight": 2, "transcribeInFlightUpdatedAt": utc_now()})

        with pytest.raises(RateLimitExceededError):
            pipeline.orchestrator.handle_upload(upload())

        assert pipeline.lecture() is None


class TestResubmit:
    def test_blocked_lecture_is_retried_after_quota_frees_up(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        pipeline.store.put(user_ref("u1"), {"plan": "free", "freeLifetimeMinutesUsed": 55})
        pipeline.orchestrator.handle_upload(upload())
        pipeline.store.update(user_ref("u1"), {"plan": "premium"})

        status = pipeline.orchestrator.resubmit("u1", "j1")

        record = pipeline.lecture()
        assert status is JobStatus.TRANSCRIBED
        assert "quotaReason" not in record
        assert pipeline.user()["monthlyMinutesUsed"] == 10
        assert pipeline.storage.downloads == ["audio/u1/j1.m4a", "audio/u1/j1.m4a"]

    def test_missing_lecture(self, tmp_path: Path) -> None:
        with pytest.raises(JobNotFoundError):
            build_pipeline(tmp_path).orchestrator.resubmit("u1", "nope")

    def test_only_blocked_lectures_can_be_resubmitted(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        seed_transcribed(pipeline, audioPath="audio/u1/j1.m4a")

        with pytest.raises(InvalidJobStateError):
            pipeline.orchestrator.resubmit("u1", "j1")


class TestSummarization:
    def test_transcribed_lecture_becomes_ready(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        seed_transcribed(pipeline)

        assert pipeline.orchestrator.summarize("u1", "j1")

        record = pipeline.lecture()
        assert record["status"] == "ready"
        assert record["summary"] == SUMMARY.to_record()
        assert "summaryInProgress" not in record
        assert "summaryClaimedAt" not in record
        assert pipeline.user()["summaryInFlight"] == 0

    def test_second_trigger_does_not_summarize_again(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        seed_transcribed(pipeline)

        pipeline.orchestrator.summarize("u1", "j1")

        assert not pipeline.orchestrator.summarize("u1", "j1")
        assert len(pipeline.summarizer.transcripts) == 1

    def test_claimed_lecture_is_skipped(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        seed_transcribed(pipeline, summaryInProgress=True)

        assert not pipeline.orchestrator.summarize("u1", "j1")
        assert pipeline.summarizer.transcripts == []

    def test_failure_is_recorded_and_claim_released(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path, summarizer_error=RuntimeError("Invalid summary schema"))
        seed_transcribed(pipeline)

        assert not pipeline.orchestrator.summarize("u1", "j1")

        record = pipeline.lecture()
        assert record["status"] == "failed"
        assert record["errorMessage"] == "Invalid summary schema"
        assert "summaryInProgress" not in record
        assert pipeline.user()["summaryInFlight"] == 0

    def test_failure_refunds_transcription_minutes(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path, summarizer_error=RuntimeError("Invalid summary schema"))
        pipeline.orchestrator.handle_upload(upload())
        assert pipeline.user()["freeLifetimeMinutesUsed"] == 10

        assert not pipeline.orchestrator.summarize("u1", "j1")

        record = pipeline.lecture()
        assert record["status"] == "failed"
        assert record["chargedMinutes"] == 0
        assert pipeline.user()["freeLifetimeMinutesUsed"] == 0
        assert pipeline.user()["monthlyMinutesUsed"] == 0

    def test_failure_without_charge_leaves_usage_alone(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path, summarizer_error=RuntimeError("Invalid summary schema"))
        pipeline.store.put(user_ref("u1"), {"plan": "free", "freeLifetimeMinutesUsed": 7})
        seed_transcribed(pipeline)

        pipeline.orchestrator.summarize("u1", "j1")

        assert pipeline.user()["freeLifetimeMinutesUsed"] == 7

    def test_rate_limit_rejects_before_claiming(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        seed_transcribed(pipeline)
        pipeline.store.put(user_ref("u1"), {"summaryInFlight": 2, "summaryInFlightUpdatedAt": utc_now()})

        with pytest.raises(RateLimitExceededError):
            pipeline.orchestrator.summarize("u1", "j1")

        record = pipeline.lecture()
        assert record["status"] == "transcribed"
        assert "summaryInProgress" not in record


class TestTranslation:
    def test_request_marks_lecture_open(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        seed_ready(pipeline, summaryTranslationErrors={"ar": "old failure"})

        assert pipeline.orchestrator.request_translation("u1", "j1", "ar")

        record = pipeline.lecture()
        assert "ar" in record["summaryTranslationRequests"]
        assert record["summaryTranslationErrors"] == {}
        assert record["translationsOpen"] is True

    def test_request_validation(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        seed_transcribed(pipeline)

        with pytest.raises(UnsupportedLanguageError):
            pipeline.orchestrator.request_translation("u1", "j1", "xx")
        with pytest.raises(InvalidJobStateError):
            pipeline.orchestrator.request_translation("u1", "j1", "ar")
        with pytest.raises(JobNotFoundError):
            pipeline.orchestrator.request_translation("u1", "missing", "ar")

    def test_pending_request_is_translated_once(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        seed_ready(pipeline)
        pipeline.orchestrator.request_translation("u1", "j1", "ar")

        assert pipeline.orchestrator.translate_pending("u1", "j1") == ["ar"]

        record = pipeline.lecture()
        assert record["summaryTranslations"]["ar"]["mainTheme"] == "[ar] Patience in hardship"
        assert record["summaryTranslationRequests"] == {}
        assert record["summaryTranslationInProgress"] == {}
        assert record["translationsOpen"] is False
        assert not pipeline.orchestrator.request_translation("u1", "j1", "ar")
        assert pipeline.translator.languages == ["ar"]

    def test_failure_is_recorded_per_language(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path, translator_error=RuntimeError("Translation fr: Empty response"))
        seed_ready(pipeline)
        pipeline.orchestrator.request_translation("u1", "j1", "fr")

        assert pipeline.orchestrator.translate_pending("u1", "j1") == []

        record = pipeline.lecture()
        assert record["summaryTranslationErrors"] == {"fr": "Translation fr: Empty response"}
        assert "fr" not in record.get("summaryTranslations", {})
        assert record["translationsOpen"] is False

    def test_unsupported_request_is_rejected_without_model_call(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        seed_ready(pipeline, summaryTranslationRequests={"xx": utc_now()}, translationsOpen=True)

        assert not pipeline.orchestrator.translate("u1", "j1", "xx")

        record = pipeline.lecture()
        assert record["summaryTranslationErrors"] == {"xx": "Unsupported language: xx"}
        assert record["summaryTranslationRequests"] == {}
        assert record["translationsOpen"] is False
        assert pipeline.translator.languages == []

    def test_already_translated_request_is_dropped(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        seed_ready(
            pipeline,
            summaryTranslations={"ar": SUMMARY.to_record()},
            summaryTranslationRequests={"ar": utc_now()},
            translationsOpen=True,
        )

        assert not pipeline.orchestrator.translate("u1", "j1", "ar")
        assert pipeline.lecture()["summaryTranslationRequests"] == {}
        assert pipeline.translator.languages == []


class TestNotification:
    def test_sends_once(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        seed_ready(pipeline, title="Friday khutbah")

        assert pipeline.orchestrator.notify_ready("u1", "j1")
        assert not pipeline.orchestrator.notify_ready("u1", "j1")

        record = pipeline.lecture()
        assert pipeline.notifier.sent == [("u1", "j1", "Friday khutbah")]
        assert record["summaryNotificationSentAt"] is not None
        assert "summaryNotificationInProgress" not in record

    def test_not_sent_before_ready(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        seed_transcribed(pipeline)

        assert not pipeline.orchestrator.notify_ready("u1", "j1")
        assert pipeline.notifier.sent == []

    def test_delivery_failure_releases_claim_and_propagates(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path, notifier_error=NotificationDeliveryError("j1", "HTTP 503", 503))
        seed_ready(pipeline)

        with pytest.raises(NotificationDeliveryError):
            pipeline.orchestrator.notify_ready("u1", "j1")

        record = pipeline.lecture()
        assert "summaryNotificationInProgress" not in record
        assert "summaryNotificationSentAt" not in record


class TestLectureWritten:
    def test_transcribed_lecture_is_summarized_and_announced(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        seed_transcribed(pipeline)

        pipeline.orchestrator.handle_lecture_written("u1", "j1")

        record = pipeline.lecture()
        assert record["status"] == "ready"
        assert record["summaryNotificationSentAt"] is not None
        assert len(pipeline.notifier.sent) == 1

    def test_ready_lecture_with_request_is_translated(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        seed_ready(pipeline, summaryNotificationSentAt=utc_now())
        pipeline.orchestrator.request_translation("u1", "j1", "ur")

        pipeline.orchestrator.handle_lecture_written("u1", "j1")

        assert "ur" in pipeline.lecture()["summaryTranslations"]
        assert pipeline.notifier.sent == []

    def test_missing_lecture_is_a_no_op(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)

        pipeline.orchestrator.handle_lecture_written("u1", "missing")

        assert pipeline.lecture("missing") is None


class TestReleaseStaleClaims:
    def test_old_notification_claim_is_released(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        now = utc_now()
        seed_ready(pipeline, summaryNotificationInProgress=True, summaryNotificationClaimedAt=now - timedelta(minutes=30))

        released = pipeline.orchestrator.release_stale_claims("u1", "j1", timedelta(minutes=15), now=now)

        assert released == 1
        assert "summaryNotificationInProgress" not in pipeline.lecture()

    def test_fresh_notification_claim_is_kept(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        now = utc_now()
        seed_ready(pipeline, summaryNotificationInProgress=True, summaryNotificationClaimedAt=now - timedelta(minutes=5))

        assert pipeline.orchestrator.release_stale_claims("u1", "j1", timedelta(minutes=15), now=now) == 0
        assert pipeline.lecture()["summaryNotificationInProgress"] is True

    def test_summary_and_translation_claims_need_a_claim_ttl(self, tmp_path: Path) -> None:
        pipeline = build_pipeline(tmp_path)
        now = utc_now()
        old = now - timedelta(hours=2)
        seed_transcribed(
            pipeline,
            status="summarizing",
            summaryInProgress=True,
            summaryClaimedAt=old,
            summaryTranslationInProgress={"ar": True},
            summaryTranslationClaimedAt={"ar": old},
        )

        assert pipeline.orchestrator.release_stale_claims("u1", "j1", timedelta(minutes=15), now=now) == 0

        released = pipeline.orchestrator.release_stale_claims(
            "u1", "j1", timedelta(minutes=15), claim_ttl=timedelta(minutes=30), now=now
        )

        record = pipeline.lecture()
        assert released == 2
        assert record["status"] == "transcribed"
        assert "summaryInProgress" not in record
        assert record["summaryTranslationInProgress"] == {}
        assert record["summaryTranslationRequests"] == {"ar": now}
        assert record["translationsOpen"] is True
