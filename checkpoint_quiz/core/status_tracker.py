"""
Generation status tracking for one video.

Every transition builds the next snapshot, writes it through to the
shared status map in storage, and only then replaces the in-memory view.
Writes for a video that is no longer current are dropped.
"""

import asyncio
import copy
import logging
from typing import Callable, Optional

from checkpoint_quiz.core.constants import (
    UnitStatus, OverallStatus, SETTLED_STATUSES, STATUS_KEY, MAX_MESSAGE_LEN,
)
from checkpoint_quiz.core.cache_store import now_ms
from checkpoint_quiz.core.error_codes import PersistenceError
from checkpoint_quiz.core.models import (
    GenerationStatus, SegmentStatusRecord, FinalStatusRecord, Segment, Question,
)
from checkpoint_quiz.core.storage import KeyValueStore

logger = logging.getLogger(__name__)

_SEGMENT_TRANSITIONS = {
    UnitStatus.PENDING: {UnitStatus.PENDING, UnitStatus.PROCESSING, UnitStatus.COMPLETED, UnitStatus.ERROR},
    UnitStatus.PROCESSING: {UnitStatus.PROCESSING, UnitStatus.COMPLETED, UnitStatus.ERROR},
    UnitStatus.ERROR: {UnitStatus.PENDING, UnitStatus.PROCESSING, UnitStatus.ERROR},
    UnitStatus.COMPLETED: {UnitStatus.COMPLETED, UnitStatus.ERROR},
    UnitStatus.SKIPPED: {UnitStatus.SKIPPED, UnitStatus.PENDING, UnitStatus.PROCESSING},
}


def compute_overall_status(status: GenerationStatus | None) -> str:
    if status is None:
        return OverallStatus.IDLE

    records = [s.status for s in status.segments]
    final_status = status.final.status if status.final else UnitStatus.SKIPPED

    if UnitStatus.ERROR in records or final_status == UnitStatus.ERROR:
        return OverallStatus.ERROR

    segments_done = all(s in SETTLED_STATUSES for s in records)
    if segments_done and final_status in SETTLED_STATUSES:
        return OverallStatus.COMPLETED
    return OverallStatus.PROCESSING


def is_legal_transition(current: str, new: str) -> bool:
    return new in _SEGMENT_TRANSITIONS.get(current, {new})


class GenerationStatusTracker:
    """Persisted, observer-visible progress record for one video."""

    def __init__(self, store: KeyValueStore, video_id: str, video_title: str = "",
                 is_current: Optional[Callable[[], bool]] = None):
        self.store = store
        self.video_id = video_id
        self.video_title = video_title
        self._is_current = is_current or (lambda: True)
        self.status: Optional[GenerationStatus] = None
        # one transition at a time
        self._lock = asyncio.Lock()

    # ── Lifecycle ─────────────────────────────────────────────────────

    def build_initial(self, segment_count: int, final_enabled: bool,
                      question_target: int) -> GenerationStatus:
        return GenerationStatus(
            video_id=self.video_id,
            video_title=self.video_title,
            updated_at=now_ms(),
            overall_status=OverallStatus.PROCESSING,
            segments=[
                SegmentStatusRecord(index=i, target=question_target)
                for i in range(segment_count)
            ],
            final=FinalStatusRecord(
                status=UnitStatus.PENDING if final_enabled else UnitStatus.SKIPPED,
            ),
        )

    async def create(self, segment_count: int, final_enabled: bool,
                     question_target: int) -> GenerationStatus:
        snapshot = self.build_initial(segment_count, final_enabled, question_target)
        async with self._lock:
            await self._commit(snapshot)
        return self.status

    async def load(self, expected_segment_count: int | None = None) -> GenerationStatus | None:
        """
        Load the stored snapshot for this video.
        A snapshot whose segment count differs from the expected one is stale
        and ignored; the caller builds a fresh one.
        """
        statuses = await self._read_map()
        stored = statuses.get(self.video_id)
        if not isinstance(stored, dict):
            self.status = None
            return None

        try:
            snapshot = GenerationStatus.from_dict(stored)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Discarding unreadable status for %s: %s", self.video_id, e)
            self.status = None
            return None

        if expected_segment_count is not None and len(snapshot.segments) != expected_segment_count:
            logger.info("Stored status for %s has %d segments, expected %d; rebuilding",
                        self.video_id, len(snapshot.segments), expected_segment_count)
            self.status = None
            return None

        snapshot.video_id = self.video_id
        snapshot.video_title = self.video_title or snapshot.video_title
        async with self._lock:
            await self._commit(snapshot)
        return self.status

    async def clear(self):
        """Drop the stored snapshot for this video."""
        try:
            statuses = await self._read_map(raise_errors=True)
            if self.video_id in statuses:
                del statuses[self.video_id]
                await self.store.set(STATUS_KEY, statuses)
        except PersistenceError as e:
            logger.error("Error clearing generation status: %s", e)
        self.status = None

    # ── Transitions ───────────────────────────────────────────────────

    async def mark_segment(self, index: int, status: str, question_count: int = 0,
                           message: str = "", target: int | None = None,
                           force: bool = False) -> bool:
        """
        Record a segment transition. A completed segment never goes back to
        pending/processing unless force is set (manual regeneration).
        """
        async with self._lock:
            if self.status is None:
                return False
            snapshot = copy.deepcopy(self.status)
            while len(snapshot.segments) <= index:
                snapshot.segments.append(SegmentStatusRecord(index=len(snapshot.segments)))

            record = snapshot.segments[index]
            if not force and not is_legal_transition(record.status, status):
                logger.warning("Refusing segment %d transition %s -> %s for %s",
                               index, record.status, status, self.video_id)
                return False

            record.status = status
            record.question_count = question_count
            if target is not None:
                record.target = target
            record.message = (message or "")[:MAX_MESSAGE_LEN]
            return await self._commit(snapshot)

    async def mark_final(self, status: str, question_count: int = 0, message: str = "",
                         force: bool = False) -> bool:
        async with self._lock:
            if self.status is None:
                return False
            snapshot = copy.deepcopy(self.status)
            if not force and not is_legal_transition(snapshot.final.status, status):
                logger.warning("Refusing final transition %s -> %s for %s",
                               snapshot.final.status, status, self.video_id)
                return False

            snapshot.final.status = status
            snapshot.final.question_count = question_count
            snapshot.final.message = (message or "")[:MAX_MESSAGE_LEN]
            return await self._commit(snapshot)

    async def update_final_target(self, target: int) -> bool:
        async with self._lock:
            if self.status is None:
                return False
            snapshot = copy.deepcopy(self.status)
            snapshot.final.target = target
            if snapshot.final.status == UnitStatus.SKIPPED:
                snapshot.final.status = UnitStatus.PENDING
            return await self._commit(snapshot)

    @property
    def final_target(self) -> int:
        return self.status.final.target if self.status else 0

    async def rebuild_from_segments(self, segments: list[Segment],
                                    final_quiz: list[Question] | None,
                                    final_enabled: bool,
                                    question_target: int) -> GenerationStatus:
        """
        Derive the snapshot from segment state: questions -> completed,
        recorded error -> error, anything else -> pending. This is a reset,
        so it is not subject to the transition rules.
        """
        async with self._lock:
            previous = self.status
            snapshot = self.build_initial(len(segments), final_enabled, question_target)

            for index, segment in enumerate(segments):
                record = snapshot.segments[index]
                if segment.has_questions:
                    record.status = UnitStatus.COMPLETED
                    record.question_count = len(segment.questions)
                elif segment.status == UnitStatus.ERROR:
                    record.status = UnitStatus.ERROR
                    record.message = (segment.error_message or "Quiz generation failed")[:MAX_MESSAGE_LEN]

            if previous is not None and previous.final.target > 0:
                snapshot.final.target = previous.final.target

            if not final_enabled:
                snapshot.final = FinalStatusRecord(status=UnitStatus.SKIPPED, target=snapshot.final.target)
            elif final_quiz:
                snapshot.final.status = UnitStatus.COMPLETED
                snapshot.final.question_count = len(final_quiz)

            await self._commit(snapshot)
            return self.status

    # ── Persistence ───────────────────────────────────────────────────

    async def persist(self) -> bool:
        async with self._lock:
            if self.status is None:
                return False
            return await self._commit(copy.deepcopy(self.status))

    async def _commit(self, snapshot: GenerationStatus) -> bool:
        """Write snapshot through to storage, then make it the current view."""
        if not self._is_current():
            logger.debug("Dropping status write for stale video %s", self.video_id)
            return False

        snapshot.updated_at = now_ms()
        snapshot.overall_status = compute_overall_status(snapshot)

        persisted = True
        try:
            statuses = await self._read_map(raise_errors=True)
            statuses[self.video_id] = snapshot.to_dict()
            await self.store.set(STATUS_KEY, statuses)
        except PersistenceError as e:
            logger.error("Error saving generation status: %s", e)
            persisted = False

        if not self._is_current():
            return False
        self.status = snapshot
        return persisted

    async def _read_map(self, raise_errors: bool = False) -> dict:
        try:
            statuses = await self.store.get(STATUS_KEY)
        except PersistenceError as e:
            if raise_errors:
                raise
            logger.error("Error loading generation status: %s", e)
            return {}
        return statuses if isinstance(statuses, dict) else {}
