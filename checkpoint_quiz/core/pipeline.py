"""
Quiz pipeline: one active session per process.

start() serves a video from the cache when possible (generating only the
missing pieces), otherwise fetches the transcript, segments it and runs
full generation. Starting a different video cancels the previous session
so its late results never reach storage.
"""

import logging
from typing import Awaitable, Callable, Optional

from checkpoint_quiz.core.cache_store import QuizCache
from checkpoint_quiz.core.config import AppConfig
from checkpoint_quiz.core.constants import (
    UnitStatus, FINAL_WAIT_TIMEOUT_SEC, BATCH_SIZE, DEFAULT_QUESTION_COUNT,
    FINAL_TRIGGER_FRACTION, BASE_SEGMENT_SEC,
)
from checkpoint_quiz.core.error_codes import TranscriptUnavailable
from checkpoint_quiz.core.models import Question, TranscriptEntry
from checkpoint_quiz.core.progress import record_answer
from checkpoint_quiz.core.scheduler import GenerationScheduler, QuizSession, GenerateFn, SummarizeFn
from checkpoint_quiz.core.segmenter import segment_transcript
from checkpoint_quiz.core.storage import KeyValueStore

logger = logging.getLogger(__name__)

TranscriptProvider = Callable[[], Awaitable[Optional[list[TranscriptEntry]]]]


class QuizPipeline:
    """
    Manages the current video's session.
    Emits nothing itself; observers read the status map in storage.
    """

    def __init__(self, store: KeyValueStore, generate_fn: GenerateFn,
                 summarize_fn: SummarizeFn | None = None,
                 config: AppConfig | None = None,
                 analytics=None,
                 cache: QuizCache | None = None):
        self.store = store
        self.config = config
        self.cache = cache or QuizCache(store)
        self.analytics = analytics
        self.scheduler = GenerationScheduler(
            self.cache, generate_fn, summarize_fn,
            analytics=analytics,
            batch_size=self._setting('batch_size', BATCH_SIZE),
        )
        self.session: Optional[QuizSession] = None
        self._active_video_id: Optional[str] = None
        # video id -> token of its in-flight start
        self._starting: dict[str, object] = {}
        self._start_token: Optional[object] = None

    # ── Config helpers ────────────────────────────────────────────────

    def _setting(self, key: str, default):
        if self.config is None:
            return default
        return self.config.get(key, default)

    @property
    def final_enabled(self) -> bool:
        return bool(self._setting('final_quiz_enabled', True))

    @property
    def question_target(self) -> int:
        return int(self._setting('question_count', DEFAULT_QUESTION_COUNT))

    # ── Session management ────────────────────────────────────────────

    def switch_video(self, video_id: str | None):
        """Cancel the current session if it belongs to another video."""
        if self.session is not None and self.session.video_id != video_id:
            logger.info("Video changed (%s -> %s), cancelling session",
                        self.session.video_id, video_id)
            self.session.cancel()
            self.session = None
        if video_id != self._active_video_id:
            # starts for the previous video are stale
            self._starting.clear()
            self._start_token = None
        self._active_video_id = video_id

    def reset(self):
        self.switch_video(None)

    def _is_active(self, token: object) -> bool:
        return token is not None and self._start_token is token

    def _new_session(self, video_id: str, title: str, segments, final_quiz=None) -> QuizSession:
        if self.session is not None:
            self.session.cancel()
        session = QuizSession(self.store, video_id, title, segments, final_quiz)
        self.session = session
        return session

    async def start(self, video_id: str, title: str = "", video_duration: float = 0.0,
                    transcript_provider: TranscriptProvider | None = None) -> bool:
        """
        Prepare quizzes for video_id. Returns False when nothing could be
        started yet (disabled, transcript unavailable, superseded, or a
        start for this video already running).
        """
        if not video_id:
            return False
        if not self._setting('enabled', True):
            logger.info("Quizzes disabled, not starting %s", video_id)
            return False
        if video_id in self._starting:
            logger.info("Start already in progress for %s, skipping duplicate call", video_id)
            return False

        self.switch_video(video_id)
        token = object()
        self._start_token = token
        self._starting[video_id] = token
        try:
            entry = await self.cache.get(video_id)
            if not self._is_active(token):
                return False
            if entry is not None and entry.segments:
                return await self._start_from_cache(video_id, title, entry)
            return await self._start_from_transcript(video_id, title, video_duration,
                                                     transcript_provider, token)
        except Exception:
            logger.exception("Quiz pipeline failed for %s", video_id)
            return False
        finally:
            if self._starting.get(video_id) is token:
                del self._starting[video_id]

    async def _start_from_cache(self, video_id: str, title: str, entry) -> bool:
        logger.info("Cache hit for %s: %d segments", video_id, len(entry.segments))
        if entry.final_quiz:
            logger.info("Final quiz also loaded from cache (%d questions)", len(entry.final_quiz))

        for segment in entry.segments:
            segment.status = UnitStatus.COMPLETED if segment.has_questions else UnitStatus.PENDING
            segment.error_message = ""

        session = self._new_session(video_id, title, entry.segments, entry.final_quiz)
        # seeds the drawn final target
        session.tracker.status = entry.status_snapshot
        await session.tracker.rebuild_from_segments(
            session.segments, session.final_quiz, self.final_enabled, self.question_target)

        await self.scheduler.run_missing(session, self.final_enabled, self.question_target)
        return session.is_current()

    async def _start_from_transcript(self, video_id: str, title: str, video_duration: float,
                                     transcript_provider: TranscriptProvider | None,
                                     token: object) -> bool:
        logger.info("Cache miss for %s, fetching transcript", video_id)
        transcript = await self.cache.get_transcript(video_id)
        if not transcript:
            if transcript_provider is None:
                logger.warning("No transcript source for %s", video_id)
                return False
            try:
                transcript = await transcript_provider()
            except TranscriptUnavailable as e:
                logger.warning("Transcript not available yet for %s: %s", video_id, e.message)
                return False
            if not transcript:
                logger.warning("Transcript not available yet for %s, will retry", video_id)
                return False
            if not self._is_active(token):
                return False
            await self.cache.put_transcript(video_id, transcript)

        segments = segment_transcript(
            transcript, video_duration,
            final_trigger_fraction=self._setting('final_trigger_fraction', FINAL_TRIGGER_FRACTION),
            base_segment_sec=self._setting('base_segment_sec', BASE_SEGMENT_SEC),
        )
        if not segments:
            logger.warning("Transcript segmentation produced no segments for %s", video_id)
            return False
        if not self._is_active(token):
            return False

        session = self._new_session(video_id, title, segments)
        await self.scheduler.run(session, self.final_enabled, self.question_target)
        return session.is_current()

    # ── Consumers ─────────────────────────────────────────────────────

    async def get_final_quiz(self, timeout: float = FINAL_WAIT_TIMEOUT_SEC) -> list[Question] | None:
        if self.session is None:
            return None
        if not self.final_enabled:
            return None
        return await self.scheduler.wait_for_final_quiz(self.session, timeout=timeout,
                                                        final_enabled=self.final_enabled)

    async def regenerate_segment(self, index: int) -> bool:
        if self.session is None:
            return False
        return await self.scheduler.regenerate_segment(self.session, index, self.question_target)

    async def regenerate_final(self) -> list[Question] | None:
        """Manual re-trigger of a failed final quiz."""
        if self.session is None:
            return None
        session = self.session
        try:
            questions = await self.scheduler.ensure_final_quiz(session, self.final_enabled)
        except Exception as e:
            logger.error("Final quiz regeneration failed for %s: %s", session.video_id, e)
            return None
        if questions and session.is_current():
            await self.scheduler.cache_session(session)
        return questions

    async def answer(self, segment_index: int, is_correct: bool, is_final: bool = False):
        if self.session is None:
            return None
        return await record_answer(self.store, self.session.video_id, segment_index,
                                   is_correct, is_final, analytics=self.analytics)

    async def clear_cache(self, video_id: str):
        """Drop cached data for video_id; cancels its session if it is current."""
        if self.session is not None and self.session.video_id == video_id:
            self.session.cancel()
            self.session = None
            self._active_video_id = None
            self._starting.clear()
            self._start_token = None
        await self.cache.clear(video_id)
