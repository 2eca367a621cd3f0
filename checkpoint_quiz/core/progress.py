"""
Per-video answer progress, stored under the global progress key.

    {video_id: {"segments": [{"score", "total"}, ...], "final": {"score", "total"}}}
"""

import logging

from checkpoint_quiz.core.constants import PROGRESS_KEY
from checkpoint_quiz.core.error_codes import PersistenceError
from checkpoint_quiz.core.storage import KeyValueStore

logger = logging.getLogger(__name__)


def _empty_video_progress() -> dict:
    return {'segments': [], 'final': {'score': 0, 'total': 0}}


def _add_score(totals: dict, record) -> None:
    if not isinstance(record, dict):
        return
    try:
        score = int(record.get('score') or 0)
        total = int(record.get('total') or 0)
    except (TypeError, ValueError):
        return
    totals['correct'] += score
    totals['incorrect'] += max(total - score, 0)


def compute_video_totals(video_progress) -> dict:
    totals = {'correct': 0, 'incorrect': 0, 'total': 0}
    if not isinstance(video_progress, dict):
        return totals
    segments = video_progress.get('segments')
    for record in segments if isinstance(segments, list) else []:
        _add_score(totals, record)
    _add_score(totals, video_progress.get('final'))
    totals['total'] = totals['correct'] + totals['incorrect']
    return totals


def compute_user_totals(progress) -> dict:
    totals = {'correct': 0, 'incorrect': 0, 'total': 0}
    if not isinstance(progress, dict):
        return totals
    for video_progress in progress.values():
        video = compute_video_totals(video_progress)
        totals['correct'] += video['correct']
        totals['incorrect'] += video['incorrect']
    totals['total'] = totals['correct'] + totals['incorrect']
    return totals


async def get_progress(store: KeyValueStore) -> dict:
    try:
        progress = await store.get(PROGRESS_KEY)
    except PersistenceError as e:
        logger.error("Error loading progress: %s", e)
        return {}
    return progress if isinstance(progress, dict) else {}


async def clear_progress(store: KeyValueStore):
    try:
        await store.remove(PROGRESS_KEY)
    except PersistenceError as e:
        logger.error("Error clearing progress: %s", e)


async def record_answer(store: KeyValueStore, video_id: str, segment_index: int,
                        is_correct: bool, is_final: bool = False,
                        analytics=None) -> tuple[dict, dict] | None:
    """
    Count one answered question and forward the user's running totals
    to analytics. Returns (video_totals, user_totals), or None if the
    progress could not be saved.
    """
    progress = await get_progress(store)
    video = progress.get(video_id)
    if not isinstance(video, dict):
        video = _empty_video_progress()
        progress[video_id] = video

    if is_final:
        record = video.setdefault('final', {'score': 0, 'total': 0})
    else:
        segments = video.setdefault('segments', [])
        while len(segments) <= segment_index:
            segments.append({'score': 0, 'total': 0})
        if not isinstance(segments[segment_index], dict):
            segments[segment_index] = {'score': 0, 'total': 0}
        record = segments[segment_index]

    record['total'] = int(record.get('total') or 0) + 1
    if is_correct:
        record['score'] = int(record.get('score') or 0) + 1
    else:
        record.setdefault('score', 0)

    video_totals = compute_video_totals(video)
    user_totals = compute_user_totals(progress)

    try:
        await store.set(PROGRESS_KEY, progress)
    except PersistenceError as e:
        logger.error("Error updating progress: %s", e)
        return None

    if analytics is not None:
        analytics.enqueue_answer(user_totals, is_final=is_final)
    return video_totals, user_totals
