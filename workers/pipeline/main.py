from __future__ import annotations

import logging
import signal
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from src.app.domain.errors import (
    NotificationDeliveryError,
    RateLimitExceededError,
    TransactionConflictError,
    WorkerConfigurationError,
)
from src.app.domain.models import LECTURES_COLLECTION, JobStatus
from src.app.infra.db.base import DocumentRef, DocumentStore
from src.app.services.job_orchestrator import JobOrchestrator
from workers.pipeline.config import WorkerConfig, get_config

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("pipeline-worker")

# Errors that leave the lecture untouched; the next sweep tries again.
RETRY_LATER_ERRORS = (RateLimitExceededError, NotificationDeliveryError, TransactionConflictError)


def lecture_ids(ref: DocumentRef) -> tuple[str, str]:
    user_id, _, job_id = ref.doc_id.partition("/")
    return user_id, job_id


class PipelineWorker:
    """
    Periodic sweep over lecture records.

    Picks up lectures whose document-change trigger was lost: transcribed
    lectures without a summary, ready lectures with open translation requests
    or an unsent notification. Also clears claims abandoned by a crashed
    process.
    """

    def __init__(self, config: WorkerConfig, store: DocumentStore, orchestrator: JobOrchestrator):
        self.config = config
        self.store = store
        self.orchestrator = orchestrator
        self.running = False
        self.sweeps_completed = 0
        self.lectures_advanced = 0
        self.last_stale_check: datetime | None = None

    def start(self) -> None:
        self._validate_configuration()
        self._setup_signal_handlers()
        self._log_startup_info()
        self.running = True
        self._run_main_loop()
        self._shutdown()

    def _validate_configuration(self) -> None:
        errors = self.config.validate()
        if errors:
            raise WorkerConfigurationError(errors)

    def _setup_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self._handle_shutdown_signal)
        signal.signal(signal.SIGINT, self._handle_shutdown_signal)

    def _log_startup_info(self) -> None:
        logger.info(
            "Starting pipeline worker: id=%s, poll_interval=%ds, batch_size=%d",
            self.config.worker_id,
            self.config.poll_interval_seconds,
            self.config.batch_size,
        )

    def _run_main_loop(self) -> None:
        poll_interval = float(self.config.poll_interval_seconds)

        while self.running:
            self._maybe_release_stale_claims()
            advanced = self.sweep()
            self.sweeps_completed += 1

            if self._reached_max_sweeps():
                break

            if advanced:
                poll_interval = float(self.config.poll_interval_seconds)
            else:
                poll_interval = self._calculate_backoff_interval(poll_interval)
                logger.debug("Nothing to do, sleeping %.1fs", poll_interval)

            time.sleep(poll_interval)

    def _reached_max_sweeps(self) -> bool:
        if self.config.max_sweeps_per_run <= 0:
            return False
        if self.sweeps_completed >= self.config.max_sweeps_per_run:
            logger.info("Reached max sweeps per run (%d), shutting down", self.config.max_sweeps_per_run)
            return True
        return False

    def _calculate_backoff_interval(self, current_interval: float) -> float:
        return min(
            current_interval * 1.5,
            float(self.config.max_poll_interval_seconds),
        )

    def sweep(self) -> int:
        """Run one pass; returns how many lectures moved forward."""
        advanced = 0

        for ref, _ in self._find({"status": JobStatus.TRANSCRIBED.value}):
            advanced += self._advance(ref, self.orchestrator.summarize)

        for ref, _ in self._find({"status": JobStatus.READY.value, "translationsOpen": True}):
            advanced += self._advance(ref, lambda user_id, job_id: bool(self.orchestrator.translate_pending(user_id, job_id)))

        for ref, _ in self._find({
            "status": JobStatus.READY.value,
            "summaryNotificationSentAt": None,
            "summaryNotificationInProgress": None,
        }):
            advanced += self._advance(ref, self.orchestrator.notify_ready)

        self.lectures_advanced += advanced
        return advanced

    def _find(self, equals: dict[str, Any]) -> list[tuple[DocumentRef, dict[str, Any]]]:
        return self.store.find(LECTURES_COLLECTION, equals, limit=self.config.batch_size)

    def _advance(self, ref: DocumentRef, action: Callable[[str, str], bool]) -> int:
        user_id, job_id = lecture_ids(ref)
        try:
            return 1 if action(user_id, job_id) else 0
        except RETRY_LATER_ERRORS as error:
            logger.warning("Deferring lecture %s: %s", job_id, error)
            return 0

    def _maybe_release_stale_claims(self) -> None:
        now = datetime.now(timezone.utc)

        if self.last_stale_check is not None:
            check_interval = timedelta(minutes=self.config.stale_claim_check_interval_minutes)
            if now - self.last_stale_check < check_interval:
                return
        self.last_stale_check = now

        released = self.release_stale_claims(now)
        if released > 0:
            logger.info("Released %d stale claims", released)

    def release_stale_claims(self, now: datetime) -> int:
        notification_ttl = timedelta(minutes=self.config.notification_claim_ttl_minutes)
        claim_ttl = (
            timedelta(minutes=self.config.claim_ttl_minutes)
            if self.config.claim_ttl_minutes > 0
            else None
        )

        candidates = {ref: None for ref, _ in self._find({"summaryNotificationInProgress": True})}
        if claim_ttl is not None:
            candidates.update((ref, None) for ref, _ in self._find({"status": JobStatus.SUMMARIZING.value}))
            candidates.update((ref, None) for ref, _ in self._find({"translationsOpen": True}))

        released = 0
        for ref in candidates:
            user_id, job_id = lecture_ids(ref)
            try:
                released += self.orchestrator.release_stale_claims(
                    user_id, job_id, notification_ttl, claim_ttl, now=now
                )
            except TransactionConflictError as error:
                logger.warning("Could not release claims on %s: %s", job_id, error)
        return released

    def _handle_shutdown_signal(self, signum: int, frame: object) -> None:
        logger.info("Received shutdown signal %d", signum)
        self.running = False

    def _shutdown(self) -> None:
        logger.info(
            "Worker shutting down: sweeps=%d, lectures_advanced=%d",
            self.sweeps_completed,
            self.lectures_advanced,
        )


def create_default_dependencies(config: WorkerConfig) -> tuple[DocumentStore, JobOrchestrator]:
    from src.app.infra.db.supabase_store import SupabaseDocumentStore
    from src.app.infra.storage.r2_provider import R2StorageProvider
    from src.app.services.llm_client import GeminiClient
    from src.app.services.notifications import OneSignalNotifier
    from src.app.services.quota_service import QuotaService
    from src.app.services.rate_limiter import RateLimiter
    from src.app.services.summarizer import Summarizer
    from src.app.services.transcription_pipeline import TranscriptionPipeline
    from src.app.services.translator import Translator

    store = SupabaseDocumentStore()
    llm = GeminiClient(api_key=config.google_api_key)
    orchestrator = JobOrchestrator(
        store=store,
        storage=R2StorageProvider(),
        quota=QuotaService(store),
        rate_limiter=RateLimiter(store),
        transcriber=TranscriptionPipeline(),
        summarizer=Summarizer(llm),
        translator=Translator(llm),
        notifier=OneSignalNotifier(app_id=config.onesignal_app_id, api_key=config.onesignal_api_key),
        temp_dir=config.temp_dir,
    )
    return store, orchestrator


def main() -> None:
    config = get_config()
    store, orchestrator = create_default_dependencies(config)

    worker = PipelineWorker(config=config, store=store, orchestrator=orchestrator)
    worker.start()


if __name__ == "__main__":
    main()
