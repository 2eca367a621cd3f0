"""
Final-quiz input preparation.
Condenses the full transcript with an optional summariser, shrinking the
chunk size when the backend reports a quota error. Falls back to the
start of the transcript whenever summarisation is unavailable or fails.
"""

import logging
from typing import Awaitable, Callable, Optional

from checkpoint_quiz.core.constants import (
    SUMMARY_CHUNK_CHAR_LIMIT, SUMMARY_MIN_CHUNK_CHAR_LIMIT,
    SUMMARY_COMBINED_CHAR_LIMIT, QUIZ_INPUT_CHAR_LIMIT, CHUNK_REDUCTION_RATIO,
)
from checkpoint_quiz.core.error_codes import is_quota_exceeded
from checkpoint_quiz.core.text_utils import trim_text_to_limit, split_text_into_chunks

logger = logging.getLogger(__name__)

SummarizeFn = Callable[[str], Awaitable[Optional[str]]]


class _QuotaAtMinimum(Exception):
    pass


async def _summarize_chunks(source: str, summarize_fn: SummarizeFn) -> list[str]:
    """
    Summarise source chunk by chunk. A quota error restarts the pass with
    a chunk size reduced by CHUNK_REDUCTION_RATIO, down to the minimum.
    """
    chunk_size = SUMMARY_CHUNK_CHAR_LIMIT

    while chunk_size >= SUMMARY_MIN_CHUNK_CHAR_LIMIT:
        summaries = []
        retry = False

        for chunk in split_text_into_chunks(source, chunk_size):
            try:
                result = await summarize_fn(chunk)
            except Exception as e:
                if not is_quota_exceeded(e):
                    raise
                if chunk_size <= SUMMARY_MIN_CHUNK_CHAR_LIMIT:
                    raise _QuotaAtMinimum() from e
                chunk_size = max(SUMMARY_MIN_CHUNK_CHAR_LIMIT,
                                 int(chunk_size * CHUNK_REDUCTION_RATIO))
                logger.warning("Summary chunk exceeded quota, retrying with chunk size %d",
                               chunk_size)
                retry = True
                break
            if result and result.strip():
                summaries.append(result.strip())

        if not retry:
            return summaries

    return []


async def summarize_transcript(full_text: str,
                               summarize_fn: SummarizeFn | None = None) -> str | None:
    """
    Return at most QUIZ_INPUT_CHAR_LIMIT characters of final-quiz input.
    Returns None only for empty input.
    """
    source = (full_text or "").strip()
    if not source:
        return None

    fallback = trim_text_to_limit(source, QUIZ_INPUT_CHAR_LIMIT)
    if summarize_fn is None:
        logger.info("No summariser configured, using truncated transcript")
        return fallback

    try:
        pieces = await _summarize_chunks(source, summarize_fn)
    except _QuotaAtMinimum:
        logger.warning("Summary chunk exceeded quota at minimum chunk size, using truncated transcript")
        return fallback
    except Exception as e:
        logger.error("Error summarizing transcript: %s", e)
        return fallback

    combined = "\n\n".join(pieces).strip()
    if not combined:
        logger.info("Summariser returned nothing, using truncated transcript")
        return fallback

    if len(combined) > SUMMARY_COMBINED_CHAR_LIMIT:
        limited = trim_text_to_limit(combined, SUMMARY_COMBINED_CHAR_LIMIT)
        try:
            second_pass = await summarize_fn(limited)
            combined = second_pass.strip() if second_pass and second_pass.strip() else limited
        except Exception as e:
            if not is_quota_exceeded(e):
                logger.error("Error summarizing transcript: %s", e)
                return fallback
            logger.warning("Second-pass summary exceeded quota, using trimmed combined summary")
            combined = limited

    logger.info("Summarized transcript for final quiz (%d -> %d chars)", len(source), len(combined))
    return trim_text_to_limit(combined, QUIZ_INPUT_CHAR_LIMIT)
