"""
Time-based transcript segmentation.
Splits a transcript into quiz segments, leaving a trailing window free
for the final quiz.
"""

import json
import logging
import math
import re
from pathlib import Path

from checkpoint_quiz.core.constants import (
    BASE_SEGMENT_SEC, FINAL_TRIGGER_FRACTION,
    MIN_FINAL_GAP_SEC, MAX_FINAL_GAP_SEC, FINAL_GAP_RATIO,
    SHORT_VIDEO_WINDOW_SEC, MIN_SEGMENT_SEC, MAX_SEGMENT_SEC,
    DEFAULT_ENTRY_SEC,
)
from checkpoint_quiz.core.error_codes import TranscriptUnavailable
from checkpoint_quiz.core.models import Segment, TranscriptEntry

logger = logging.getLogger(__name__)

_TIMESTAMP_RE = re.compile(r'(\d+):(\d+)(?::(\d+))?')


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def transcript_end(transcript: list[TranscriptEntry]) -> float:
    """End of the spoken content: last entry start + duration."""
    if not transcript:
        return 0.0
    last = transcript[-1]
    return last.start + (last.duration or 0)


def usable_window(total_duration: float,
                  final_trigger_fraction: float = FINAL_TRIGGER_FRACTION) -> float:
    """Seconds available for per-segment quizzes before the final-quiz window."""
    cutoff = total_duration * final_trigger_fraction
    min_gap = _clamp(total_duration * FINAL_GAP_RATIO, MIN_FINAL_GAP_SEC, MAX_FINAL_GAP_SEC)
    return max(0.0, cutoff - min_gap)


def _whole_transcript_segment(transcript: list[TranscriptEntry], end: float) -> Segment:
    return Segment(
        start=0.0,
        end=end,
        text=' '.join(e.text for e in transcript),
        entries=list(transcript),
    )


def segment_transcript(transcript: list[TranscriptEntry],
                       video_duration: float = 0.0,
                       final_trigger_fraction: float = FINAL_TRIGGER_FRACTION,
                       base_segment_sec: float = BASE_SEGMENT_SEC) -> list[Segment]:
    """
    Split the transcript into segments of roughly `base_segment_sec`.

    Segments only cover entries starting inside the usable window; a
    segment's end is the end of its last entry, not the window edge.
    Short videos (usable window <= 30s) get one whole-transcript segment.
    """
    if not transcript:
        logger.warning("segment_transcript called with an empty transcript")
        return []

    spoken_end = transcript_end(transcript)
    total_duration = max(video_duration or 0.0, spoken_end)
    fallback_end = spoken_end or video_duration

    window = usable_window(total_duration, final_trigger_fraction)

    if window <= SHORT_VIDEO_WINDOW_SEC:
        logger.info("Short video (usable window %.1fs); single segment", window)
        return [_whole_transcript_segment(transcript, fallback_end)]

    # half-up rounding
    desired = max(1, math.floor(window / base_segment_sec + 0.5))
    segment_duration = _clamp(window / desired, MIN_SEGMENT_SEC, MAX_SEGMENT_SEC)

    segments = []
    seg_start = 0.0
    idx = 0

    while seg_start < window:
        seg_end = min(seg_start + segment_duration, window)
        entries = []

        while idx < len(transcript) and transcript[idx].start < seg_end:
            entry = transcript[idx]
            if entry.start >= seg_start:
                entries.append(entry)
            idx += 1

        if entries:
            last = entries[-1]
            segments.append(Segment(
                start=seg_start,
                end=last.start + (last.duration or 0),
                text=' '.join(e.text for e in entries),
                entries=entries,
            ))

        seg_start += segment_duration

    if not segments:
        logger.info("No entries inside the usable window; single segment fallback")
        return [_whole_transcript_segment(transcript, fallback_end)]

    logger.info("Created %d segments of ~%.0fs (window %.0fs)",
                len(segments), segment_duration, window)
    return segments


# ── Transcript input ──────────────────────────────────────────────────

def parse_timestamp(raw: str) -> int | None:
    """Parse 'M:SS' or 'H:MM:SS' into seconds. Returns None if unparseable."""
    if not raw:
        return None
    m = _TIMESTAMP_RE.search(raw.strip())
    if not m:
        return None
    if m.group(3) is not None:
        hours, minutes, seconds = int(m.group(1)), int(m.group(2)), int(m.group(3))
    else:
        hours, minutes, seconds = 0, int(m.group(1)), int(m.group(2))
    return hours * 3600 + minutes * 60 + seconds


def build_transcript_entries(rows: list[dict]) -> list[TranscriptEntry]:
    """
    Convert scraped transcript rows ({'time': '1:05', 'text': ...}) into entries.
    An entry ends where the next row starts; the last one lasts 3 seconds.
    """
    entries = []
    for i, row in enumerate(rows):
        text = (row.get('text') or '').strip()
        start = parse_timestamp(row.get('time') or '')
        if not text or start is None:
            continue

        end = start + DEFAULT_ENTRY_SEC
        if i + 1 < len(rows):
            next_start = parse_timestamp(rows[i + 1].get('time') or '')
            if next_start is not None:
                end = next_start

        entries.append(TranscriptEntry(start=float(start), end=float(end),
                                       duration=float(end - start), text=text))
    return entries


def load_transcript_file(path: Path) -> list[TranscriptEntry]:
    """
    Load a transcript JSON file: either a list of entries
    ({start, duration, text}) or scraped rows ({time, text}).
    Raises TranscriptUnavailable when it holds nothing usable.
    """
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    if not isinstance(data, list):
        raise TranscriptUnavailable(f"Transcript file {path} does not hold a list")

    if data and isinstance(data[0], dict) and 'time' in data[0]:
        entries = build_transcript_entries(data)
    else:
        entries = [TranscriptEntry.from_dict(d) for d in data if isinstance(d, dict) and 'start' in d]

    if not entries:
        raise TranscriptUnavailable(f"Transcript file {path} is empty")
    return entries
