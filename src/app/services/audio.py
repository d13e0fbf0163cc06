"""
ffprobe/ffmpeg helpers for measuring and splitting uploaded recordings.
"""
from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Optional

from src.app.domain.errors import InvalidMediaError

logger = logging.getLogger(__name__)

FFPROBE_TIMEOUT_SECONDS = 10
FFMPEG_TIMEOUT_SECONDS = 300
# Keeps each upload to the speech-to-text backend well under provider size limits.
AUDIO_CHUNK_SECONDS = int(os.getenv("AUDIO_CHUNK_SECONDS", "600"))


def probe_duration_seconds(media_path: Path) -> Optional[float]:
    try:
        result = subprocess.run(
            [
                "ffprobe",
                "-v",
                "error",
                "-show_entries",
                "format=duration",
                "-of",
                "default=noprint_wrappers=1:nokey=1",
                str(media_path),
            ],
            capture_output=True,
            text=True,
            check=True,
            timeout=FFPROBE_TIMEOUT_SECONDS,
        )
    except (FileNotFoundError, subprocess.CalledProcessError, subprocess.TimeoutExpired) as error:
        logger.warning("ffprobe not available for duration check: %s", error)
        return None

    try:
        return float(result.stdout.strip())
    except ValueError:
        return None


def split_audio(
    media_path: Path,
    output_dir: Path,
    chunk_seconds: int = AUDIO_CHUNK_SECONDS,
    duration_seconds: Optional[float] = None,
) -> list[Path]:
    """
    Cut a recording into consecutive pieces of at most `chunk_seconds`.

    Short recordings are returned as-is. Segments are stream-copied so no
    re-encoding happens.

    Raises:
        InvalidMediaError: If ffmpeg cannot split the file
    """
    if duration_seconds is not None and duration_seconds <= chunk_seconds:
        return [media_path]

    output_dir.mkdir(parents=True, exist_ok=True)
    suffix = media_path.suffix or ".m4a"
    pattern = output_dir / f"{media_path.stem}_%03d{suffix}"

    try:
        subprocess.run(
            [
                "ffmpeg",
                "-v",
                "error",
                "-y",
                "-i",
                str(media_path),
                "-f",
                "segment",
                "-segment_time",
                str(chunk_seconds),
                "-c",
                "copy",
                "-reset_timestamps",
                "1",
                str(pattern),
            ],
            capture_output=True,
            text=True,
            check=True,
            timeout=FFMPEG_TIMEOUT_SECONDS,
        )
    except FileNotFoundError as error:
        raise InvalidMediaError("ffmpeg is not installed") from error
    except subprocess.CalledProcessError as error:
        raise InvalidMediaError(f"ffmpeg could not split {media_path.name}: {error.stderr.strip()}") from error
    except subprocess.TimeoutExpired as error:
        raise InvalidMediaError(f"ffmpeg timed out splitting {media_path.name}") from error

    pieces = sorted(output_dir.glob(f"{media_path.stem}_*{suffix}"))
    if not pieces:
        raise InvalidMediaError(f"ffmpeg produced no segments for {media_path.name}")

    logger.info("Split %s into %d chunks of <= %ds", media_path.name, len(pieces), chunk_seconds)
    return pieces
