from __future__ import annotations

CHUNK_CHAR_TARGET = 4000
CHUNK_CHAR_OVERLAP = 300


def chunk_transcript(
    text: str,
    target_chars: int = CHUNK_CHAR_TARGET,
    overlap_chars: int = CHUNK_CHAR_OVERLAP,
) -> list[str]:
    """
    Split a transcript into overlapping character windows.

    Each window starts `target_chars - overlap_chars` after the previous one,
    so consecutive chunks share `overlap_chars` characters. Text that already
    fits is returned as a single chunk.
    """
    if target_chars <= 0 or overlap_chars < 0 or overlap_chars >= target_chars:
        raise ValueError("Need target_chars > overlap_chars >= 0")

    cleaned = text.replace("\r\n", "\n").strip()
    if not cleaned:
        return []
    if len(cleaned) <= target_chars:
        return [cleaned]

    chunks: list[str] = []
    start = 0
    while start < len(cleaned):
        end = min(len(cleaned), start + target_chars)
        chunk = cleaned[start:end].strip()
        if chunk:
            chunks.append(chunk)
        if end >= len(cleaned):
            break
        start = end - overlap_chars

    return chunks
