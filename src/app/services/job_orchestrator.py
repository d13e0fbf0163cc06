# src/app/services/job_orchestrator.py
"""
Lecture pipeline: transcription -> summarization -> translation -> notification.

Every stage starts with a transactional claim on the lecture record so that
duplicate or concurrent triggers do the external work at most once, and every
claim is released on both the success and the failure path. Calls to storage,
speech-to-text, the LLM and the push provider always run outside a
transaction.
"""
from __future__ import annotations

import logging
import os
import shutil
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from src.app.domain.clock import parse_datetime, utc_now
from src.app.domain.errors import (
    InvalidJobStateError,
    InvalidObjectKeyError,
    JobNotFoundError,
    QuotaExceededError,
    TranscriptionProcessingError,
    UnsupportedLanguageError,
)
from src.app.domain.models import (
    STATUS_RANK,
    AudioObjectKey,
    JobStatus,
    LectureSummary,
    OperationKind,
    StorageObjectEvent,
    TranscriptionResult,
)
from src.app.infra.db.base import DELETE_FIELD, DocumentRef, DocumentStore, Transaction, lecture_ref
from src.app.infra.storage.base import StorageProvider, is_processable_upload, parse_audio_object_key
from src.app.services.audio import probe_duration_seconds, split_audio
from src.app.services.notifications import Notifier
from src.app.services.quota_service import QuotaService, minutes_from_seconds
from src.app.services.rate_limiter import RateLimiter
from src.app.services.summarizer import Summarizer
from src.app.services.translator import Translator, is_supported_language

logger = logging.getLogger(__name__)

DEFAULT_TEMP_DIR = os.getenv("PIPELINE_TEMP_DIR", "/tmp/khutbah-pipeline")
EMPTY_TRANSCRIPT_MESSAGE = "Transcription returned empty text."
_CLAIM_FLAGS = ("summaryInProgress", "summaryNotificationInProgress")
# Longer than the transcription trigger's platform timeout (9 minutes).
PROCESSING_CLAIM_TTL = timedelta(minutes=20)


class SpeechToText(Protocol):
    def transcribe_file(self, media_path: Path) -> TranscriptionResult:
        ...


def _dict_field(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def _has_summary(data: dict[str, Any]) -> bool:
    return isinstance(data.get("summary"), dict)


def _is_older_than(value: Any, ttl: timedelta, now: datetime) -> bool:
    stamped = parse_datetime(value)
    return stamped is None or now - stamped > ttl


def update_translation_state(tx: Transaction, updates: dict[str, Any]) -> None:
    """
    Apply per-language translation updates and refresh `translationsOpen`.

    The flag is true while any language is requested or in progress, so the
    sweep worker can find such lectures with an equality query.
    """
    tx.update(updates)
    data = tx.data
    in_progress = _dict_field(data, "summaryTranslationInProgress").values()
    is_open = bool(_dict_field(data, "summaryTranslationRequests")) or any(flag is True for flag in in_progress)
    if data.get("translationsOpen") is not is_open:
        tx.update({"translationsOpen": is_open})


class JobOrchestrator:
    def __init__(
        self,
        store: DocumentStore,
        storage: StorageProvider,
        quota: QuotaService,
        rate_limiter: RateLimiter,
        transcriber: SpeechToText,
        summarizer: Summarizer,
        translator: Translator,
        notifier: Notifier,
        temp_dir: str = DEFAULT_TEMP_DIR,
        splitter: Callable[..., list[Path]] = split_audio,
        probe: Callable[[Path], Optional[float]] = probe_duration_seconds,
    ):
        self.store = store
        self.storage = storage
        self.quota = quota
        self.rate_limiter = rate_limiter
        self.transcriber = transcriber
        self.summarizer = summarizer
        self.translator = translator
        self.notifier = notifier
        self.temp_dir = temp_dir
        self.splitter = splitter
        self.probe = probe

    # ------------------------------------------------------------------
    # Transcription
    # ------------------------------------------------------------------

    def handle_upload(self, event: StorageObjectEvent) -> Optional[JobStatus]:
        """
        Entry point for an object-finalized notification.

        Returns:
            The status the lecture ended in, or None when the event was ignored
        """
        if not is_processable_upload(event):
            logger.info(
                "Ignoring object: name=%s, content_type=%s, size=%d",
                event.name,
                event.content_type,
                event.size_bytes,
            )
            return None

        try:
            key = parse_audio_object_key(event.name)
        except InvalidObjectKeyError as error:
            logger.error("Unexpected audio path format: %s", error)
            return None

        return self.process_audio(key)

    def process_audio(
        self,
        key: AudioObjectKey,
        now: Optional[datetime] = None,
        allow_blocked: bool = False,
    ) -> Optional[JobStatus]:
        """
        Transcribe one uploaded recording.

        Args:
            key: Parsed object key of the upload
            now: Claim time, defaults to the current time
            allow_blocked: Re-run a lecture held in `blocked_quota`; only a
                manual resubmission passes this

        Returns:
            The status the lecture ended in, or None for a duplicate trigger
        """
        ref = lecture_ref(key.user_id, key.job_id)
        now = now or utc_now()

        if not self._can_start(self.store.get(ref), now, allow_blocked):
            logger.info("Lecture already processed, skipping: %s", key.job_id)
            return None

        with self.rate_limiter.slot(key.user_id, OperationKind.TRANSCRIBE):
            started = self.store.run_transaction(ref, lambda tx: self._mark_processing(tx, key, now, allow_blocked))
            if started is None:
                logger.info("Lecture already processed, skipping: %s", key.job_id)
                return None
            return self._transcribe(ref, key, started)

    def _can_start(self, record: Optional[dict[str, Any]], now: datetime, allow_blocked: bool) -> bool:
        if record is None:
            return True
        status = record.get("status")
        if status == JobStatus.BLOCKED_QUOTA.value:
            return allow_blocked
        if status == JobStatus.PROCESSING.value:
            # A claim older than the TTL belongs to a worker that died mid-run.
            return _is_older_than(record.get("processingStartedAt"), PROCESSING_CLAIM_TTL, now)
        rank = STATUS_RANK.get(str(status), -1)
        return rank < STATUS_RANK[JobStatus.TRANSCRIBED.value]

    def _mark_processing(
        self,
        tx: Transaction,
        key: AudioObjectKey,
        now: datetime,
        allow_blocked: bool,
    ) -> Optional[dict[str, Any]]:
        if not self._can_start(tx.data if tx.exists else None, now, allow_blocked):
            return None
        tx.update({
            "status": JobStatus.PROCESSING.value,
            "userId": key.user_id,
            "audioPath": key.path,
            "processingStartedAt": now,
            "chargedMinutes": 0,
            "errorMessage": DELETE_FIELD,
            "quotaReason": DELETE_FIELD,
        })
        return tx.data

    def _transcribe(self, ref: DocumentRef, key: AudioObjectKey, record: dict[str, Any]) -> JobStatus:
        work_dir = Path(self.temp_dir) / f"{key.user_id}_{key.job_id}"
        charged_minutes = 0

        try:
            media_path = self._download(key, work_dir)
            duration_seconds = self.probe(media_path)
            minutes = self._billable_minutes(record, duration_seconds)

            try:
                self.quota.debit(key.user_id, minutes)
            except QuotaExceededError as error:
                logger.info("Quota exceeded for %s: %s", key.user_id, error.reason)
                self.store.update(ref, {
                    "status": JobStatus.BLOCKED_QUOTA.value,
                    "quotaReason": error.reason,
                    "durationMinutes": minutes,
                })
                return JobStatus.BLOCKED_QUOTA
            charged_minutes = minutes

            transcript = self._run_speech_to_text(media_path, work_dir, duration_seconds)
            if not transcript:
                logger.warning("Empty transcript returned for lecture: %s", key.job_id)
                raise TranscriptionProcessingError(EMPTY_TRANSCRIPT_MESSAGE)

            self.store.update(ref, {
                "status": JobStatus.TRANSCRIBED.value,
                "transcript": transcript,
                "durationMinutes": minutes,
                "chargedMinutes": charged_minutes,
                "processedAt": utc_now(),
                "errorMessage": DELETE_FIELD,
                "quotaReason": DELETE_FIELD,
            })
            logger.info("Lecture transcribed: %s (%d min, %d chars)", key.job_id, minutes, len(transcript))
            return JobStatus.TRANSCRIBED

        except Exception as error:
            logger.exception("Transcription failed for lecture %s", key.job_id)
            if charged_minutes:
                self.quota.refund(key.user_id, charged_minutes)
            self.store.update(ref, {
                "status": JobStatus.FAILED.value,
                "errorMessage": str(error) or "Transcription failed",
                "chargedMinutes": 0,
            })
            return JobStatus.FAILED

        finally:
            self._cleanup_work_dir(work_dir)

    def _download(self, key: AudioObjectKey, work_dir: Path) -> Path:
        work_dir.mkdir(parents=True, exist_ok=True)
        suffix = f".{key.extension}" if key.extension else ".m4a"
        target = work_dir / f"{key.job_id}{suffix}"
        return self.storage.download_to_path(key.path, target)

    def _billable_minutes(self, record: dict[str, Any], duration_seconds: Optional[float]) -> int:
        supplied = record.get("durationMinutes")
        if isinstance(supplied, (int, float)) and not isinstance(supplied, bool) and supplied > 0:
            return max(1, int(supplied))
        if duration_seconds is None:
            raise TranscriptionProcessingError("Could not determine audio duration")
        return minutes_from_seconds(duration_seconds)

    def _run_speech_to_text(self, media_path: Path, work_dir: Path, duration_seconds: Optional[float]) -> str:
        pieces = self.splitter(media_path, work_dir / "chunks", duration_seconds=duration_seconds)
        texts = [self.transcriber.transcribe_file(piece).text.strip() for piece in pieces]
        return " ".join(text for text in texts if text).strip()

    def _cleanup_work_dir(self, work_dir: Path) -> None:
        if not work_dir.exists():
            return
        try:
            shutil.rmtree(work_dir)
            logger.debug("Cleaned up temp dir: %s", work_dir)
        except OSError as os_error:
            logger.warning("Failed to cleanup temp dir %s: %s", work_dir, os_error)

    def resubmit(self, user_id: str, job_id: str) -> Optional[JobStatus]:
        """Run transcription again for a lecture that was blocked by quota."""
        record = self.store.get(lecture_ref(user_id, job_id))
        if record is None:
            raise JobNotFoundError(job_id)
        status = record.get("status")
        if status != JobStatus.BLOCKED_QUOTA.value:
            raise InvalidJobStateError(job_id, status, "resubmit")
        audio_path = record.get("audioPath")
        if not isinstance(audio_path, str) or not audio_path:
            raise InvalidJobStateError(job_id, status, "resubmit without an audio path")

        key = parse_audio_object_key(audio_path)
        if key.user_id != user_id or key.job_id != job_id:
            raise InvalidObjectKeyError(audio_path, "Audio path does not belong to this lecture")
        return self.process_audio(key, allow_blocked=True)

    # ------------------------------------------------------------------
    # Summarization
    # ------------------------------------------------------------------

    @staticmethod
    def _needs_summary(data: dict[str, Any]) -> bool:
        return (
            data.get("status") == JobStatus.TRANSCRIBED.value
            and not _has_summary(data)
            and data.get("summaryInProgress") is not True
            and isinstance(data.get("transcript"), str)
            and bool(data["transcript"].strip())
        )

    def summarize(self, user_id: str, job_id: str) -> bool:
        """
        Summarize a transcribed lecture.

        Returns:
            True if this call produced the summary
        """
        ref = lecture_ref(user_id, job_id)
        record = self.store.get(ref)
        if record is None or not self._needs_summary(record):
            return False

        with self.rate_limiter.slot(user_id, OperationKind.SUMMARY):
            claimed = self.store.run_transaction(ref, lambda tx: self._claim_summary(tx, utc_now()))
            if claimed is None:
                logger.info("Summary already claimed or done: %s", job_id)
                return False
            transcript, charged_minutes = claimed

            try:
                summary = self.summarizer.summarize(transcript)
            except Exception as error:
                logger.exception("Summarization failed for lecture %s", job_id)
                if charged_minutes:
                    self.quota.refund(user_id, charged_minutes)
                self.store.update(ref, {
                    "status": JobStatus.FAILED.value,
                    "errorMessage": str(error) or "Summarization failed",
                    "chargedMinutes": 0,
                    "summaryInProgress": DELETE_FIELD,
                    "summaryClaimedAt": DELETE_FIELD,
                })
                return False

        self.store.update(ref, {
            "status": JobStatus.READY.value,
            "summary": summary.to_record(),
            "summarizedAt": utc_now(),
            "summaryInProgress": DELETE_FIELD,
            "summaryClaimedAt": DELETE_FIELD,
            "errorMessage": DELETE_FIELD,
        })
        logger.info("Lecture summarized: %s", job_id)
        return True

    def _claim_summary(self, tx: Transaction, now: datetime) -> Optional[tuple[str, int]]:
        data = tx.data
        if not tx.exists or not self._needs_summary(data):
            return None
        charged = data.get("chargedMinutes")
        charged_minutes = charged if isinstance(charged, int) and not isinstance(charged, bool) and charged > 0 else 0
        tx.update({
            "summaryInProgress": True,
            "summaryClaimedAt": now,
            "status": JobStatus.SUMMARIZING.value,
        })
        return data["transcript"], charged_minutes

    # ------------------------------------------------------------------
    # Translation
    # ------------------------------------------------------------------

    def request_translation(self, user_id: str, job_id: str, language: str) -> bool:
        """
        Record a client request for a summary translation.

        Returns:
            False when the translation already exists or is being produced
        """
        if not is_supported_language(language):
            raise UnsupportedLanguageError(language)

        def _request(tx: Transaction) -> bool:
            if not tx.exists:
                raise JobNotFoundError(job_id)
            data = tx.data
            if data.get("status") != JobStatus.READY.value or not _has_summary(data):
                raise InvalidJobStateError(job_id, data.get("status"), "translate")
            if language in _dict_field(data, "summaryTranslations"):
                return False
            if _dict_field(data, "summaryTranslationInProgress").get(language) is True:
                return False
            update_translation_state(tx, {
                f"summaryTranslationRequests.{language}": utc_now(),
                f"summaryTranslationErrors.{language}": DELETE_FIELD,
            })
            return True

        return self.store.run_transaction(lecture_ref(user_id, job_id), _request)

    def translate_pending(self, user_id: str, job_id: str) -> list[str]:
        """Translate every requested language; returns the languages completed by this call."""
        record = self.store.get(lecture_ref(user_id, job_id))
        if record is None:
            return []
        completed = []
        for language in sorted(_dict_field(record, "summaryTranslationRequests")):
            if self.translate(user_id, job_id, language):
                completed.append(language)
        return completed

    def translate(self, user_id: str, job_id: str, language: str) -> bool:
        ref = lecture_ref(user_id, job_id)
        record = self.store.get(ref)
        if record is None or language not in _dict_field(record, "summaryTranslationRequests"):
            return False

        if not is_supported_language(language):
            self.store.run_transaction(ref, lambda tx: self._claim_translation(tx, language, utc_now()))
            return False

        with self.rate_limiter.slot(user_id, OperationKind.TRANSLATION):
            summary = self.store.run_transaction(ref, lambda tx: self._claim_translation(tx, language, utc_now()))
            if summary is None:
                return False

            try:
                translated = self.translator.translate_summary(summary, language)
            except Exception as error:
                logger.exception("Translation to %s failed for lecture %s", language, job_id)
                failure = {
                    f"summaryTranslationErrors.{language}": str(error) or "Translation failed",
                    f"summaryTranslationInProgress.{language}": DELETE_FIELD,
                    f"summaryTranslationClaimedAt.{language}": DELETE_FIELD,
                }
                self.store.run_transaction(ref, lambda tx: update_translation_state(tx, failure))
                return False

        success = {
            f"summaryTranslations.{language}": translated.to_record(),
            f"summaryTranslationInProgress.{language}": DELETE_FIELD,
            f"summaryTranslationClaimedAt.{language}": DELETE_FIELD,
            f"summaryTranslationErrors.{language}": DELETE_FIELD,
        }
        self.store.run_transaction(ref, lambda tx: update_translation_state(tx, success))
        logger.info("Lecture %s translated into %s", job_id, language)
        return True

    def _claim_translation(self, tx: Transaction, language: str, now: datetime) -> Optional[LectureSummary]:
        data = tx.data
        if not tx.exists or language not in _dict_field(data, "summaryTranslationRequests"):
            return None

        request_key = f"summaryTranslationRequests.{language}"
        if not is_supported_language(language):
            update_translation_state(tx, {
                request_key: DELETE_FIELD,
                f"summaryTranslationErrors.{language}": str(UnsupportedLanguageError(language)),
            })
            return None
        if language in _dict_field(data, "summaryTranslations"):
            update_translation_state(tx, {request_key: DELETE_FIELD})
            return None
        if _dict_field(data, "summaryTranslationInProgress").get(language) is True:
            return None
        if data.get("status") != JobStatus.READY.value or not _has_summary(data):
            return None

        update_translation_state(tx, {
            request_key: DELETE_FIELD,
            f"summaryTranslationInProgress.{language}": True,
            f"summaryTranslationClaimedAt.{language}": now,
        })
        return LectureSummary.from_record(data["summary"])

    # ------------------------------------------------------------------
    # Notification
    # ------------------------------------------------------------------

    def notify_ready(self, user_id: str, job_id: str) -> bool:
        """
        Send the summary-ready push notification once per lecture.

        A delivery failure clears the claim and propagates so the trigger
        is redelivered.
        """
        ref = lecture_ref(user_id, job_id)
        claimed = self.store.run_transaction(ref, lambda tx: self._claim_notification(tx, utc_now()))
        if claimed is None:
            return False

        try:
            self.notifier.send_summary_ready(user_id, job_id, claimed.get("title"))
        except Exception:
            self.store.update(ref, {
                "summaryNotificationInProgress": DELETE_FIELD,
                "summaryNotificationClaimedAt": DELETE_FIELD,
            })
            raise

        self.store.update(ref, {
            "summaryNotificationSentAt": utc_now(),
            "summaryNotificationInProgress": DELETE_FIELD,
            "summaryNotificationClaimedAt": DELETE_FIELD,
        })
        return True

    @staticmethod
    def _claim_notification(tx: Transaction, now: datetime) -> Optional[dict[str, Any]]:
        data = tx.data
        if not tx.exists or data.get("status") != JobStatus.READY.value or not _has_summary(data):
            return None
        if data.get("summaryNotificationSentAt") or data.get("summaryNotificationInProgress") is True:
            return None
        tx.update({
            "summaryNotificationInProgress": True,
            "summaryNotificationClaimedAt": now,
        })
        return data

    # ------------------------------------------------------------------
    # Document-change dispatch and claim recovery
    # ------------------------------------------------------------------

    def handle_lecture_written(self, user_id: str, job_id: str) -> None:
        """Advance a lecture by whatever stage its record currently calls for."""
        record = self.store.get(lecture_ref(user_id, job_id))
        if record is None:
            return

        if self._needs_summary(record) and self.summarize(user_id, job_id):
            record = self.store.get(lecture_ref(user_id, job_id)) or {}

        if record.get("status") != JobStatus.READY.value:
            return
        if _dict_field(record, "summaryTranslationRequests"):
            self.translate_pending(user_id, job_id)
        if not record.get("summaryNotificationSentAt"):
            self.notify_ready(user_id, job_id)

    def release_stale_claims(
        self,
        user_id: str,
        job_id: str,
        notification_ttl: timedelta,
        claim_ttl: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Clear claim flags left behind by a worker that died mid-stage.

        Notification claims are released after `notification_ttl`. Summary and
        translation claims are released only when `claim_ttl` is given; the
        summary goes back to `transcribed` and translations back to requested.

        Returns:
            Number of claims released
        """
        now = now or utc_now()

        def _release(tx: Transaction) -> int:
            data = tx.data
            updates: dict[str, Any] = {}
            if data.get("summaryNotificationInProgress") is True and _is_older_than(
                data.get("summaryNotificationClaimedAt"), notification_ttl, now
            ):
                updates["summaryNotificationInProgress"] = DELETE_FIELD
                updates["summaryNotificationClaimedAt"] = DELETE_FIELD

            if claim_ttl is not None:
                if data.get("summaryInProgress") is True and _is_older_than(
                    data.get("summaryClaimedAt"), claim_ttl, now
                ):
                    updates["summaryInProgress"] = DELETE_FIELD
                    updates["summaryClaimedAt"] = DELETE_FIELD
                    if data.get("status") == JobStatus.SUMMARIZING.value:
                        updates["status"] = JobStatus.TRANSCRIBED.value

                claimed_at = _dict_field(data, "summaryTranslationClaimedAt")
                for language, in_progress in _dict_field(data, "summaryTranslationInProgress").items():
                    if in_progress is True and _is_older_than(claimed_at.get(language), claim_ttl, now):
                        updates[f"summaryTranslationInProgress.{language}"] = DELETE_FIELD
                        updates[f"summaryTranslationClaimedAt.{language}"] = DELETE_FIELD
                        updates[f"summaryTranslationRequests.{language}"] = now

            if updates:
                update_translation_state(tx, updates)
            return sum(
                1 for key in updates
                if key in _CLAIM_FLAGS or key.startswith("summaryTranslationInProgress.")
            )

        released = self.store.run_transaction(lecture_ref(user_id, job_id), _release)
        if released:
            logger.info("Released %d stale claim(s) on lecture %s", released, job_id)
        return released
