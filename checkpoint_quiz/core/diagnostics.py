"""
Diagnostics: cache, generation status and settings report.
"""

import logging
from datetime import datetime, timezone

from checkpoint_quiz.core.cache_store import QuizCache
from checkpoint_quiz.core.config import AppConfig
from checkpoint_quiz.core.constants import APP_VERSION, STATUS_KEY
from checkpoint_quiz.core.error_codes import PersistenceError
from checkpoint_quiz.core.status_tracker import compute_overall_status
from checkpoint_quiz.core.models import GenerationStatus

logger = logging.getLogger(__name__)


def _format_ms(ms) -> str | None:
    if not ms:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


async def get_status_summary(cache: QuizCache) -> dict:
    """Overall status per video from the shared status map."""
    try:
        statuses = await cache.store.get(STATUS_KEY)
    except PersistenceError as e:
        logger.error("Error loading generation status: %s", e)
        return {}
    if not isinstance(statuses, dict):
        return {}

    summary = {}
    for video_id, raw in statuses.items():
        try:
            status = GenerationStatus.from_dict(raw)
        except (KeyError, TypeError, ValueError, AttributeError):
            summary[video_id] = "unreadable"
            continue
        summary[video_id] = compute_overall_status(status)
    return summary


async def get_diagnostics(cache: QuizCache, config: AppConfig) -> dict:
    """Gather all diagnostic information."""
    entries = await cache.cache_info()
    for row in entries:
        row['cached_at'] = _format_ms(row.get('cached_at'))

    settings = config.as_dict()
    return {
        "version": APP_VERSION,
        "store_path": str(cache.store.db_path),
        "cache_capacity": cache.capacity,
        "cache_entries": entries,
        "generation_status": await get_status_summary(cache),
        "settings": settings,
        "api_key_configured": config.api_key is not None,
    }
