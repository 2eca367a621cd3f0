"""
Generation scheduler.
Drives question generation for one video: segment 0 alone, the rest in
fixed-size batches in index order, and the final quiz concurrently.
Every status and cache write is skipped once the session is stale.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional

from checkpoint_quiz.core.constants import (
    UnitStatus, BATCH_SIZE, BATCH_PAUSE_SEC, DEFAULT_QUESTION_COUNT,
    MAX_QUESTIONS_PER_UNIT, FINAL_QUIZ_QUESTIONS_MIN, FINAL_QUIZ_QUESTIONS_MAX,
    FINAL_WAIT_TIMEOUT_SEC, FINAL_WAIT_POLL_SEC, QUIZ_INPUT_CHAR_LIMIT,
)
from checkpoint_quiz.core.cache_store import QuizCache, build_cache_entry
from checkpoint_quiz.core.error_codes import GenerationError, error_message
from checkpoint_quiz.core.models import Question, Segment
from checkpoint_quiz.core.status_tracker import GenerationStatusTracker
from checkpoint_quiz.core.storage import KeyValueStore
from checkpoint_quiz.core.summarizer import summarize_transcript
from checkpoint_quiz.core.text_utils import trim_text_to_limit, join_texts

logger = logging.getLogger(__name__)

GenerateFn = Callable[[str, int], Awaitable[list[Question]]]
SummarizeFn = Callable[[str], Awaitable[Optional[str]]]


def required_question_count(desired_count: int) -> int:
    """Questions a unit must get back to count as completed."""
    return max(1, min(MAX_QUESTIONS_PER_UNIT, int(desired_count or 1)))


class QuizSession:
    """
    Generation state for one video. A session is current until cancelled;
    the pipeline cancels it when the video changes.
    """

    def __init__(self, store: KeyValueStore, video_id: str, video_title: str,
                 segments: list[Segment], final_quiz: list[Question] | None = None):
        self.video_id = video_id
        self.video_title = video_title
        self.segments = segments
        self.final_quiz = final_quiz
        self.tracker = GenerationStatusTracker(store, video_id, video_title,
                                               is_current=self.is_current)
        self._cancelled = False
        self._final_task: Optional[asyncio.Task] = None

    def is_current(self) -> bool:
        return not self._cancelled

    def cancel(self):
        self._cancelled = True

    @property
    def final_generating(self) -> bool:
        return self._final_task is not None and not self._final_task.done()

    @property
    def has_final_quiz(self) -> bool:
        return bool(self.final_quiz)


class GenerationScheduler:
    """Runs per-segment and final-quiz generation for a QuizSession."""

    def __init__(self, cache: QuizCache, generate_fn: GenerateFn,
                 summarize_fn: SummarizeFn | None = None,
                 analytics=None,
                 batch_size: int = BATCH_SIZE,
                 batch_pause: float = BATCH_PAUSE_SEC,
                 rng: random.Random | None = None):
        self.cache = cache
        self.generate_fn = generate_fn
        self.summarize_fn = summarize_fn
        self.analytics = analytics
        self.batch_size = max(1, batch_size)
        self.batch_pause = batch_pause
        self.rng = rng or random.Random()

    # ── Full runs ─────────────────────────────────────────────────────

    async def run(self, session: QuizSession, final_enabled: bool = True,
                  question_target: int = DEFAULT_QUESTION_COUNT) -> bool:
        """
        Generate every segment and the final quiz, then cache the bundle.
        Returns False if the session went stale before the cache write.
        """
        if not session.segments:
            return False

        await session.tracker.load(len(session.segments))
        await session.tracker.rebuild_from_segments(
            session.segments, session.final_quiz, final_enabled, question_target)

        final_task = self._start_final(session, final_enabled)

        await self.handle_segment(session, 0, question_target)
        await self._run_batches(session, list(range(1, len(session.segments))), question_target)

        return await self._finish(session, final_task)

    async def run_missing(self, session: QuizSession, final_enabled: bool = True,
                          question_target: int = DEFAULT_QUESTION_COUNT) -> bool:
        """Cache-hit path: generate only segments without questions, plus a missing final."""
        final_task = None
        if final_enabled and not session.has_final_quiz:
            final_task = self._start_final(session, final_enabled)

        missing = [i for i, s in enumerate(session.segments) if not s.has_questions]
        if missing:
            logger.info("%d segments missing questions for %s, generating", len(missing), session.video_id)
            await self._run_batches(session, missing, question_target)

        return await self._finish(session, final_task)

    async def _run_batches(self, session: QuizSession, indices: list[int], question_target: int):
        for start in range(0, len(indices), self.batch_size):
            if not session.is_current():
                logger.info("Session for %s is stale, stopping generation", session.video_id)
                return
            batch = indices[start:start + self.batch_size]
            await asyncio.gather(*(self.handle_segment(session, i, question_target) for i in batch))
            if start + self.batch_size < len(indices):
                await asyncio.sleep(self.batch_pause)

    def _start_final(self, session: QuizSession, final_enabled: bool) -> asyncio.Task | None:
        if not final_enabled:
            return None
        return asyncio.ensure_future(self._final_quietly(session, final_enabled))

    async def _final_quietly(self, session: QuizSession, final_enabled: bool):
        try:
            return await self.ensure_final_quiz(session, final_enabled)
        except Exception as e:
            logger.error("Final quiz generation failed for %s: %s", session.video_id, e)
            return None

    async def _finish(self, session: QuizSession, final_task: asyncio.Task | None) -> bool:
        if final_task is not None:
            await final_task
        if not session.is_current():
            return False
        await session.tracker.persist()
        return await self.cache_session(session)

    async def cache_session(self, session: QuizSession) -> bool:
        if not session.is_current():
            return False
        entry = build_cache_entry(session.segments, session.final_quiz, session.tracker.status)
        return await self.cache.put(session.video_id, entry)

    # ── Segments ──────────────────────────────────────────────────────

    async def handle_segment(self, session: QuizSession, index: int,
                             question_target: int = DEFAULT_QUESTION_COUNT,
                             force: bool = False) -> bool:
        """
        Generate one segment's questions. Failures are recorded on the
        segment and its status record; they never propagate.
        """
        segment = session.segments[index]
        tracker = session.tracker
        if segment.has_questions and not force:
            return True

        segment.status = UnitStatus.PROCESSING
        segment.error_message = ""
        await tracker.mark_segment(index, UnitStatus.PROCESSING, target=question_target, force=force)

        try:
            questions = await self.generate_fn(segment.text, question_target)
            required = required_question_count(question_target)
            if not questions or len(questions) < required:
                count = len(questions) if questions else 0
                raise GenerationError(f"Language model returned {count} question(s); expected {required}")
        except Exception as e:
            message = error_message(e, "Quiz generation failed")
            if not session.is_current():
                return False
            logger.error("Quiz generation failed for segment %d of %s: %s",
                         index + 1, session.video_id, message)
            if not segment.questions:
                segment.questions = []
            segment.status = UnitStatus.ERROR
            segment.error_message = message
            await tracker.mark_segment(index, UnitStatus.ERROR, 0, message, force=force)
            self._record_event(session.video_id, 'segment', index, 0, UnitStatus.ERROR, message)
            return False

        if not session.is_current():
            logger.debug("Discarding segment %d result for stale session %s", index, session.video_id)
            return False

        segment.questions = list(questions)
        segment.status = UnitStatus.COMPLETED
        segment.error_message = ""
        await tracker.mark_segment(index, UnitStatus.COMPLETED, len(questions), force=force)
        self._record_event(session.video_id, 'segment', index, len(questions), UnitStatus.COMPLETED)
        return True

    async def regenerate_segment(self, session: QuizSession, index: int,
                                 question_target: int = DEFAULT_QUESTION_COUNT) -> bool:
        """Manual re-trigger for one segment; writes the cache on success."""
        if not 0 <= index < len(session.segments):
            raise IndexError(f"Segment {index} out of range (0..{len(session.segments) - 1})")
        ok = await self.handle_segment(session, index, question_target, force=True)
        if session.is_current():
            await self.cache_session(session)
        return ok

    # ── Final quiz ────────────────────────────────────────────────────

    def draw_final_target(self, session: QuizSession) -> int:
        """Honour a persisted target, else draw one from the configured range."""
        persisted = session.tracker.final_target
        if persisted > 0:
            return persisted
        return self.rng.randint(FINAL_QUIZ_QUESTIONS_MIN, FINAL_QUIZ_QUESTIONS_MAX)

    async def ensure_final_quiz(self, session: QuizSession, final_enabled: bool = True,
                                allow_generation: bool = True) -> list[Question] | None:
        """
        Return the final quiz, generating it if needed. Only one generation
        runs per session; concurrent callers await the in-flight attempt.
        """
        if not final_enabled or not session.segments:
            return session.final_quiz

        if session.has_final_quiz:
            status = session.tracker.status
            if status is not None and status.final.status != UnitStatus.COMPLETED:
                await session.tracker.mark_final(UnitStatus.COMPLETED, len(session.final_quiz), force=True)
            return session.final_quiz

        if session._final_task is not None:
            try:
                await session._final_task
            except Exception:
                # already logged by the generating caller
                pass
            return session.final_quiz

        if not allow_generation:
            return None

        target = self.draw_final_target(session)
        session._final_task = asyncio.ensure_future(self._generate_final(session, target))
        try:
            return await session._final_task
        finally:
            session._final_task = None

    async def _generate_final(self, session: QuizSession, target: int) -> list[Question] | None:
        tracker = session.tracker
        await tracker.update_final_target(target)
        await tracker.mark_final(UnitStatus.PROCESSING)

        all_text = join_texts([s.text for s in session.segments])
        try:
            summary = await summarize_transcript(all_text, self.summarize_fn)
            text = summary or trim_text_to_limit(all_text, QUIZ_INPUT_CHAR_LIMIT)
            questions = await self.generate_fn(text, target)
            required = required_question_count(target)
            if not questions or len(questions) < required:
                count = len(questions) if questions else 0
                raise GenerationError(f"Final quiz generation returned {count} question(s); expected {required}")
        except Exception as e:
            message = error_message(e, "Final quiz generation failed")
            if session.is_current():
                logger.error("Final quiz generation failed for %s: %s", session.video_id, message)
                session.final_quiz = None
                await tracker.mark_final(UnitStatus.ERROR, 0, message)
                self._record_event(session.video_id, 'final', None, 0, UnitStatus.ERROR, message,
                                   flush_immediately=True)
            raise

        if not session.is_current():
            return None

        session.final_quiz = list(questions)
        await tracker.mark_final(UnitStatus.COMPLETED, len(questions))
        self._record_event(session.video_id, 'final', None, len(questions), UnitStatus.COMPLETED,
                           flush_immediately=True)
        logger.info("Final quiz ready for %s (%d questions)", session.video_id, len(questions))
        return session.final_quiz

    async def wait_for_final_quiz(self, session: QuizSession,
                                  timeout: float = FINAL_WAIT_TIMEOUT_SEC,
                                  poll_interval: float = FINAL_WAIT_POLL_SEC,
                                  final_enabled: bool = True) -> list[Question] | None:
        """
        Wait up to `timeout` seconds for an in-flight final generation.
        Returns the final quiz, or None if it is not ready.
        """
        if not final_enabled:
            return session.final_quiz

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while session.final_generating and loop.time() < deadline:
            await asyncio.sleep(poll_interval)

        questions = None
        if not session.final_generating:
            questions = await self.ensure_final_quiz(session, final_enabled, allow_generation=False)
        if questions:
            return questions

        logger.warning("Final quiz not ready for %s", session.video_id)
        status = session.tracker.status
        settled = (UnitStatus.ERROR, UnitStatus.SKIPPED)
        if session.is_current() and status is not None and status.final.status not in settled:
            await session.tracker.mark_final(UnitStatus.PROCESSING, 0, "Final quiz still generating")
        return None

    # ── Analytics ─────────────────────────────────────────────────────

    def _record_event(self, video_id: str, quiz_type: str, segment_index: int | None,
                      question_count: int, status: str, message: str = "",
                      flush_immediately: bool = False):
        if self.analytics is None:
            return
        self.analytics.enqueue_generation_event(video_id, {
            'quiz_type': quiz_type,
            'segment_index': segment_index,
            'question_count': question_count,
            'status': status,
            'error_message': message,
            'flush_immediately': flush_immediately,
        })
