# src/app/services/transcription_pipeline.py
"""
Speech-to-text for uploaded recordings.
This module has no storage or queue dependencies - only domain models.
"""
from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import BinaryIO, Optional

from faster_whisper import WhisperModel

from src.app.domain.errors import InvalidMediaError, TranscriptionProcessingError
from src.app.domain.models import TranscriptionResult

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration via environment variables
# =============================================================================
WHISPER_MODEL = os.getenv("WHISPER_MODEL", "medium")
WHISPER_DEVICE = os.getenv("WHISPER_DEVICE", "auto")  # auto, cuda, cpu
WHISPER_COMPUTE_TYPE = os.getenv("WHISPER_COMPUTE_TYPE", "default")
WHISPER_BEAM_SIZE = int(os.getenv("WHISPER_BEAM_SIZE", "5"))

# Loaded on first use; one model per process.
_model: Optional[WhisperModel] = None
_model_lock = threading.Lock()


def _get_model() -> WhisperModel:
    global _model

    with _model_lock:
        if _model is None:
            logger.info(
                "Initializing faster-whisper: model=%s, device=%s, compute_type=%s",
                WHISPER_MODEL,
                WHISPER_DEVICE,
                WHISPER_COMPUTE_TYPE,
            )
            try:
                _model = WhisperModel(
                    WHISPER_MODEL,
                    device=WHISPER_DEVICE,
                    compute_type=WHISPER_COMPUTE_TYPE,
                    num_workers=2,
                )
            except (RuntimeError, ValueError, OSError) as exc:
                raise TranscriptionProcessingError(f"Whisper model not available: {exc}") from exc
        return _model


class TranscriptionPipeline:
    """
    Turns an audio byte stream into text.

    Language is auto-detected unless one is configured; khutbahs mix Arabic
    with the congregation's language.
    """

    def __init__(self, language: Optional[str] = None):
        self.language = language or None
        self.model_version = WHISPER_MODEL

    def transcribe(self, audio: BinaryIO, label: str = "audio") -> TranscriptionResult:
        """
        Transcribe one audio stream.

        Raises:
            TranscriptionProcessingError: If the model is unavailable or decoding fails
        """
        model = _get_model()

        try:
            logger.info("Starting transcription: source=%s, language=%s", label, self.language or "auto")

            segments_iter, info = model.transcribe(
                audio,
                language=self.language,
                # VAD (Voice Activity Detection) - skip silences
                vad_filter=True,
                vad_parameters=dict(
                    min_silence_duration_ms=500,
                    speech_pad_ms=200,
                ),
                beam_size=WHISPER_BEAM_SIZE,
                condition_on_previous_text=False,
                word_timestamps=False,
            )

            text_parts = [segment.text.strip() for segment in segments_iter if segment.text.strip()]
            full_text = " ".join(text_parts).strip()
            duration_sec = getattr(info, "duration", 0) or 0
            detected_language = getattr(info, "language", None) or self.language or ""

        except Exception as e:
            logger.error("Transcription failed: %s", e)
            raise TranscriptionProcessingError(f"Transcription failed: {e}") from e

        logger.info(
            "Transcription complete: source=%s, duration=%.1fs, chars=%d, language=%s",
            label,
            duration_sec,
            len(full_text),
            detected_language,
        )
        return TranscriptionResult(
            text=full_text,
            language=detected_language,
            duration_sec=duration_sec,
            model_version=self.model_version,
        )

    def transcribe_file(self, media_path: Path) -> TranscriptionResult:
        if not media_path.exists():
            raise InvalidMediaError(f"Media file not found: {media_path}")
        with media_path.open("rb") as audio:
            return self.transcribe(audio, label=media_path.name)
