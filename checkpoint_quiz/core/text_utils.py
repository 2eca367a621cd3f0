"""
Text helpers for transcript processing.
Trimming to character budgets and boundary-aware chunking.
"""

import logging

logger = logging.getLogger(__name__)


def trim_text_to_limit(text: str, limit: int) -> str:
    """
    Cut text to at most `limit` characters (plus an ellipsis).
    Keeps the start of the text; a non-positive limit returns it unchanged.
    """
    if not text or limit <= 0:
        return text or ''
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + '...'


def split_text_into_chunks(text: str, chunk_size: int) -> list[str]:
    """
    Split text into chunks of roughly `chunk_size` characters.
    Prefers to break on a newline or sentence end when one falls in the
    last 60% of the window.
    """
    if not text or chunk_size <= 0:
        return []

    clean = text.strip()
    chunks = []
    cursor = 0

    while cursor < len(clean):
        slice_end = min(cursor + chunk_size, len(clean))
        end = slice_end

        if slice_end < len(clean):
            newline_idx = clean.rfind('\n', 0, slice_end + 1)
            sentence_idx = clean.rfind('. ', 0, slice_end + 1)
            boundary = max(newline_idx, sentence_idx)
            if boundary > cursor + int(chunk_size * 0.4):
                end = boundary + 1

        if end <= cursor:
            end = min(cursor + chunk_size, len(clean))

        chunk = clean[cursor:end].strip()
        if chunk:
            chunks.append(chunk)
        cursor = end

    logger.debug("Split %d chars into %d chunks of <= %d", len(clean), len(chunks), chunk_size)
    return chunks


def join_texts(texts: list[str]) -> str:
    """Join non-empty texts with single spaces."""
    return ' '.join(t.strip() for t in texts if t and t.strip())
