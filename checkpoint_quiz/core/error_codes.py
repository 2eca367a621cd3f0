"""
Standardised error handling for CheckpointQuiz.
"""

import re

from checkpoint_quiz.core.constants import ErrorCode, RETRYABLE_ERRORS


class QuizError(Exception):
    """Raised when the pipeline encounters a known error condition."""

    default_code = ErrorCode.GENERATION_FAILED

    def __init__(self, message: str, code: str | None = None, retryable: bool | None = None):
        self.code = code or self.default_code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (self.code in RETRYABLE_ERRORS)
        super().__init__(f"[{self.code}] {message}")


class TranscriptUnavailable(QuizError):
    """Transcript not scraped yet; the caller should try again later."""
    default_code = ErrorCode.TRANSCRIPT_UNAVAILABLE


class GenerationError(QuizError):
    """The question generator raised, returned too few or malformed questions."""
    default_code = ErrorCode.GENERATION_FAILED


class QuotaExceededError(GenerationError):
    default_code = ErrorCode.QUOTA_EXCEEDED


class CacheCorruption(QuizError):
    default_code = ErrorCode.CACHE_CORRUPT


class PersistenceError(QuizError):
    default_code = ErrorCode.PERSISTENCE


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS


def is_quota_exceeded(error: BaseException) -> bool:
    """Quota errors come either typed or as a backend message mentioning the quota."""
    if isinstance(error, QuotaExceededError):
        return True
    return re.search(r"quota ?exceeded", str(error), re.IGNORECASE) is not None


def error_message(error: BaseException, fallback: str) -> str:
    """Short message for a status record; QuizError carries it without the code prefix."""
    if isinstance(error, QuizError):
        return error.message or fallback
    return str(error) or fallback
