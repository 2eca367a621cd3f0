"""
Cleanup: purge every cached quiz bundle and transcript.
"""

import logging

from checkpoint_quiz.core.constants import QUIZ_PREFIX, TRANSCRIPT_PREFIX, LRU_KEY, STATUS_KEY
from checkpoint_quiz.core.error_codes import PersistenceError
from checkpoint_quiz.core.storage import KeyValueStore

logger = logging.getLogger(__name__)


async def clear_all_cache(store: KeyValueStore, include_status: bool = True) -> int:
    """
    Delete all quiz:/transcript: entries and the LRU index.
    Returns the number of cache entries removed. Progress is kept.
    """
    try:
        keys = await store.keys(QUIZ_PREFIX) + await store.keys(TRANSCRIPT_PREFIX)
        extra = [LRU_KEY, STATUS_KEY] if include_status else [LRU_KEY]
        await store.remove(keys + extra)
    except PersistenceError as e:
        logger.error("Error clearing cache: %s", e)
        return 0

    logger.info("Cleared %d cache items", len(keys))
    return len(keys)
