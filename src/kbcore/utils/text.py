"""Text helpers including boundary-aware chunking."""

from __future__ import annotations

from typing import List

from kbcore.models import Chunk

CHUNK_SIZE = 2000  # ~500 tokens at 4 chars/token
CHUNK_OVERLAP = 200
MIN_CHUNK_SIZE = 50

# Sentence terminators, followed by a space or a newline
_SENTENCE_ENDINGS = (". ", ".\n", "! ", "!\n", "? ", "?\n")


def normalize_text(text: str) -> str:
    """Unify line endings and trim surrounding whitespace."""
    return text.replace("\r\n", "\n").replace("\r", "\n").strip()


def chunk_text(
    text: str,
    *,
    chunk_size: int = CHUNK_SIZE,
    overlap: int = CHUNK_OVERLAP,
    min_chunk_size: int = MIN_CHUNK_SIZE,
) -> List[Chunk]:
    """Split text into overlapping chunks cut at natural boundaries.

    Each window of ``chunk_size`` characters is shortened to the last
    paragraph break, sentence end or line break found past its midpoint.
    The next window starts ``overlap`` characters before the previous cut.
    Chunks shorter than ``min_chunk_size`` are dropped unless the whole
    text fits a single window.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    if not 0 <= overlap < chunk_size:
        raise ValueError("overlap must be in [0, chunk_size)")

    normalized = normalize_text(text)
    if not normalized:
        return []
    if len(normalized) <= chunk_size:
        return [Chunk(text=normalized, index=0)]

    chunks: List[Chunk] = []
    length = len(normalized)
    start = 0

    while start < length:
        end = min(start + chunk_size, length)
        if end < length:
            end = _find_break_point(normalized, start, end, chunk_size)

        piece = normalized[start:end].strip()
        if len(piece) >= min_chunk_size:
            chunks.append(Chunk(text=piece, index=len(chunks)))

        if end >= length:
            break

        next_start = end - overlap
        # Never restart at or before the previous window
        start = next_start if next_start > start else end

    return chunks


def _find_break_point(text: str, start: int, end: int, chunk_size: int) -> int:
    """Return the best cut position in ``text[start:end]``, or ``end``."""
    threshold = start + chunk_size // 2

    paragraph = text.rfind("\n\n", start, end)
    if paragraph > threshold:
        return paragraph + 2

    sentence = _find_last_sentence_end(text, start, end, threshold)
    if sentence > 0:
        return sentence

    line = text.rfind("\n", start, end)
    if line > threshold:
        return line + 1

    return end


def _find_last_sentence_end(text: str, start: int, end: int, threshold: int) -> int:
    last = -1
    for ending in _SENTENCE_ENDINGS:
        pos = text.rfind(ending, start, end)
        if pos > threshold:
            last = max(last, pos + len(ending))
    return last
