"""
LRU cache of transcripts and generated quiz bundles, keyed by video id.

Layout in the key-value store:
    quiz:<id>          CacheEntry dict
    transcript:<id>    list of transcript entries
    cache_lru          list of ids, most recently touched first
Storage failures are logged and the operation behaves as if it never
happened: reads become misses, writes are dropped.
"""

import logging
import time

from checkpoint_quiz.core.constants import (
    QUIZ_PREFIX, TRANSCRIPT_PREFIX, LRU_KEY, STATUS_KEY,
    CACHE_LIMIT, CACHE_VERSION, SUPPORTED_CACHE_VERSIONS,
)
from checkpoint_quiz.core.error_codes import PersistenceError, CacheCorruption
from checkpoint_quiz.core.models import CacheEntry, GenerationStatus, Question, Segment, TranscriptEntry
from checkpoint_quiz.core.storage import KeyValueStore

logger = logging.getLogger(__name__)


def quiz_key(video_id: str) -> str:
    return f"{QUIZ_PREFIX}{video_id}"


def transcript_key(video_id: str) -> str:
    return f"{TRANSCRIPT_PREFIX}{video_id}"


def now_ms() -> int:
    return int(time.time() * 1000)


def build_cache_entry(segments: list[Segment],
                      final_quiz: list[Question] | None,
                      status_snapshot: GenerationStatus | None) -> CacheEntry:
    return CacheEntry(
        version=CACHE_VERSION,
        timestamp=now_ms(),
        segment_count=len(segments),
        segments=list(segments),
        final_quiz=final_quiz,
        status_snapshot=status_snapshot,
    )


def parse_cache_entry(raw) -> CacheEntry:
    """Validate a stored quiz bundle. Raises CacheCorruption on any shape violation."""
    if not isinstance(raw, dict):
        raise CacheCorruption("Cache entry is not an object")
    if raw.get('version') not in SUPPORTED_CACHE_VERSIONS:
        raise CacheCorruption(f"Unsupported cache version {raw.get('version')!r}")
    if not isinstance(raw.get('segments'), list):
        raise CacheCorruption("Cache entry has no segment list")
    try:
        entry = CacheEntry.from_dict(raw)
    except (KeyError, TypeError, ValueError) as e:
        raise CacheCorruption(f"Malformed cache entry: {e}") from e
    if entry.segment_count != len(entry.segments):
        raise CacheCorruption(
            f"segmentCount {entry.segment_count} != {len(entry.segments)} segments")
    return entry


class QuizCache:
    """LRU-bounded cache of quiz bundles and transcripts."""

    def __init__(self, store: KeyValueStore, capacity: int = CACHE_LIMIT):
        self.store = store
        self.capacity = capacity

    # ── LRU index ─────────────────────────────────────────────────────

    async def lru(self) -> list[str]:
        try:
            current = await self.store.get(LRU_KEY)
        except PersistenceError as e:
            logger.error("Error reading cache order: %s", e)
            return []
        return [k for k in current if isinstance(k, str)] if isinstance(current, list) else []

    async def touch(self, video_id: str) -> list[str]:
        """
        Move video_id to the front of the LRU index and evict overflow.
        Returns the ids that were evicted.
        """
        if not video_id:
            return []
        order = await self.lru()
        order = [video_id] + [k for k in order if k != video_id]
        return await self._write_order(order)

    async def evict_if_over_capacity(self) -> list[str]:
        return await self._write_order(await self.lru())

    async def _write_order(self, order: list[str]) -> list[str]:
        evicted = []
        while len(order) > self.capacity:
            evicted.append(order.pop())

        try:
            await self.store.set(LRU_KEY, order)
            if evicted:
                keys = []
                for vid in evicted:
                    keys.extend((quiz_key(vid), transcript_key(vid)))
                await self.store.remove(keys)
                logger.info("Evicted %d cached video(s): %s", len(evicted), ", ".join(evicted))
        except PersistenceError as e:
            logger.error("Error updating cache order: %s", e)
            return []
        return evicted

    # ── Quiz bundles ──────────────────────────────────────────────────

    async def get(self, video_id: str) -> CacheEntry | None:
        if not video_id:
            return None
        try:
            raw = await self.store.get(quiz_key(video_id))
        except PersistenceError as e:
            logger.error("Error loading cached quizzes: %s", e)
            return None
        if raw is None:
            return None

        try:
            entry = parse_cache_entry(raw)
        except CacheCorruption as e:
            logger.warning("Invalid cache entry for %s (%s); clearing", video_id, e.message)
            await self.clear(video_id)
            return None

        await self.touch(video_id)
        return entry

    async def put(self, video_id: str, entry: CacheEntry) -> bool:
        if not video_id:
            return False
        entry.segment_count = len(entry.segments)
        try:
            await self.store.set(quiz_key(video_id), entry.to_dict())
        except PersistenceError as e:
            logger.error("Error caching quizzes: %s", e)
            return False
        await self.touch(video_id)
        logger.info("Cached %d segments for %s", entry.segment_count, video_id)
        return True

    # ── Transcripts ───────────────────────────────────────────────────

    async def put_transcript(self, video_id: str, transcript: list[TranscriptEntry]) -> bool:
        if not video_id or not transcript:
            return False
        try:
            await self.store.set(transcript_key(video_id), [e.to_dict() for e in transcript])
        except PersistenceError as e:
            logger.error("Error caching transcript: %s", e)
            return False
        await self.touch(video_id)
        return True

    async def get_transcript(self, video_id: str) -> list[TranscriptEntry] | None:
        if not video_id:
            return None
        try:
            raw = await self.store.get(transcript_key(video_id))
        except PersistenceError as e:
            logger.error("Error loading cached transcript: %s", e)
            return None
        if not raw or not isinstance(raw, list):
            return None
        try:
            transcript = [TranscriptEntry.from_dict(e) for e in raw]
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Invalid cached transcript for %s (%s); removing", video_id, e)
            await self._remove_quietly([transcript_key(video_id)])
            return None
        await self.touch(video_id)
        return transcript

    # ── Clearing ──────────────────────────────────────────────────────

    async def clear(self, video_id: str):
        """Remove quiz bundle, transcript, LRU slot and status for video_id. Idempotent."""
        if not video_id:
            return
        await self._remove_quietly([quiz_key(video_id), transcript_key(video_id)])

        try:
            order = await self.store.get(LRU_KEY)
            if isinstance(order, list) and video_id in order:
                await self.store.set(LRU_KEY, [k for k in order if k != video_id])

            statuses = await self.store.get(STATUS_KEY)
            if isinstance(statuses, dict) and video_id in statuses:
                del statuses[video_id]
                await self.store.set(STATUS_KEY, statuses)
        except PersistenceError as e:
            logger.error("Error clearing cache: %s", e)

    async def _remove_quietly(self, keys: list[str]):
        try:
            await self.store.remove(keys)
        except PersistenceError as e:
            logger.error("Error removing %s: %s", ", ".join(keys), e)

    # ── Info ──────────────────────────────────────────────────────────

    async def cache_info(self) -> list[dict]:
        """One summary row per cached video, most recently used first."""
        rows = []
        for vid in await self.lru():
            try:
                quiz = await self.store.get(quiz_key(vid))
                transcript = await self.store.get(transcript_key(vid))
            except PersistenceError as e:
                logger.error("Error getting cache info: %s", e)
                break
            quiz = quiz if isinstance(quiz, dict) else {}
            rows.append({
                'video_id': vid,
                'segments': quiz.get('segmentCount') or len(quiz.get('segments') or []),
                'cached_at': quiz.get('timestamp'),
                'has_transcript': bool(transcript),
                'has_quizzes': bool(quiz),
            })
        return rows
