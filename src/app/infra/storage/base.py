# src/app/infra/storage/base.py
"""
Abstract base class for storage providers.
This interface allows easy swapping between different storage backends (R2, S3, GCS, etc.)
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath

from src.app.domain.errors import InvalidObjectKeyError
from src.app.domain.models import AudioObjectKey, StorageObjectEvent

AUDIO_PREFIX = "audio/"
MAX_AUDIO_BYTES = 100 * 1024 * 1024


class StorageProvider(ABC):
    """
    Abstract interface for the upload bucket.

    Implementations:
    - R2StorageProvider: Cloudflare R2 (S3-compatible)
    """

    @abstractmethod
    def download_to_path(
        self,
        object_key: str,
        target_path: Path,
    ) -> Path:
        """
        Download an object to a local file path.

        Args:
            object_key: The key/path of the object in storage
            target_path: Local path where to save the file

        Returns:
            The path where the file was saved

        Raises:
            StorageDownloadError: If the object is missing or the transfer fails
        """
        pass

    @abstractmethod
    def get_object_metadata(self, object_key: str) -> dict:
        """
        Returns:
            ``content_type``, ``content_length`` and ``metadata`` (user metadata) of the object
        """
        pass


def parse_audio_object_key(object_key: str) -> AudioObjectKey:
    """
    Parse an upload path of the form ``audio/{user_id}/{job_id}.{ext}``.

    Raises:
        InvalidObjectKeyError: If the path does not follow that layout
    """
    if not object_key.startswith(AUDIO_PREFIX):
        raise InvalidObjectKeyError(object_key, "Not an audio upload")

    parts = object_key.split("/")
    if len(parts) < 3 or not parts[1] or not parts[2]:
        raise InvalidObjectKeyError(object_key, "Expected audio/{user}/{lecture}.{ext}")

    filename = PurePosixPath(parts[2])
    job_id = filename.stem
    if not job_id:
        raise InvalidObjectKeyError(object_key, "Missing lecture id")

    return AudioObjectKey(
        path=object_key,
        user_id=parts[1],
        job_id=job_id,
        extension=filename.suffix.lstrip("."),
    )


def is_processable_upload(event: StorageObjectEvent) -> bool:
    """Whether an object-finalized event names an audio upload we should transcribe."""
    if not event.name.startswith(AUDIO_PREFIX):
        return False
    if not (event.content_type or "").startswith("audio/"):
        return False
    if event.size_bytes > MAX_AUDIO_BYTES:
        return False
    return len(event.name.split("/")) >= 3
