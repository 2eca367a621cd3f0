"""
Debounced analytics batching.

Answer totals and generation outcomes are folded into a single pending
snapshot. The snapshot is sent after 15s of quiet, as soon as 8 events
are buffered, on a terminal event, or on process teardown.
"""

import asyncio
import atexit
import hashlib
import logging
import signal
import threading
import time
from typing import Callable, Optional

import requests

from checkpoint_quiz.core.constants import (
    APP_NAME, APP_VERSION,
    ANALYTICS_FLUSH_DELAY_SEC, ANALYTICS_MAX_BUFFERED,
    ANALYTICS_SNAPSHOT_EVENT, HASH_UNAVAILABLE,
)

logger = logging.getLogger(__name__)

Sink = Callable[[dict], None]

_hash_cache: dict[str, str] = {}


def hash_video_id(video_id: str) -> str:
    """SHA-256 hex digest of the video id; ids never leave the machine in clear."""
    if not video_id:
        return HASH_UNAVAILABLE
    cached = _hash_cache.get(video_id)
    if cached is None:
        cached = hashlib.sha256(video_id.encode('utf-8')).hexdigest()
        _hash_cache[video_id] = cached
    return cached


def _empty_payload() -> dict:
    return {
        'user_totals': {'correct': 0, 'incorrect': 0, 'total': 0},
        'generation_events': [],
    }


class AnalyticsBatcher:
    """Single pending accumulator with a debounce timer."""

    def __init__(self, sink: Sink | None, enabled: bool = True,
                 flush_delay: float = ANALYTICS_FLUSH_DELAY_SEC,
                 max_buffered: int = ANALYTICS_MAX_BUFFERED):
        self.sink = sink
        self.enabled = enabled
        self.flush_delay = flush_delay
        self.max_buffered = max_buffered
        self._payload: Optional[dict] = None
        self._buffered = 0
        self._timer = None
        self._lock = threading.RLock()
        self._hooks_installed = False

    @property
    def buffered(self) -> int:
        return self._buffered

    @property
    def pending(self) -> Optional[dict]:
        return self._payload

    # ── Enqueue ───────────────────────────────────────────────────────

    def enqueue_answer(self, user_totals: dict, is_final: bool = False):
        """Replace the running answer totals; the last answer of a quiz flushes."""
        if not self.enabled:
            return
        with self._lock:
            payload = self._payload or _empty_payload()
            payload['user_totals'] = {
                'correct': int(user_totals.get('correct', 0)),
                'incorrect': int(user_totals.get('incorrect', 0)),
                'total': int(user_totals.get('total', 0)),
            }
            self._payload = payload
            self._buffered += 1
            self._restart_timer()
            flush_now = self._buffered >= self.max_buffered or is_final

        if flush_now:
            self.flush()

    def enqueue_generation_event(self, video_id: str, details: dict | None = None):
        if not video_id or not self.enabled:
            return
        details = details or {}
        segment_index = details.get('segment_index')
        question_count = details.get('question_count')
        event = {
            'video_id_hash': hash_video_id(video_id),
            'quiz_type': details.get('quiz_type') or 'segment',
            'segment_index': segment_index if isinstance(segment_index, int) else None,
            'question_count': question_count if isinstance(question_count, int) else None,
            'status': details.get('status') or 'completed',
            'error_message': details.get('error_message') or '',
            'recorded_at': int(time.time() * 1000),
        }
        immediate = details.get('flush_immediately') is True

        with self._lock:
            payload = self._payload or _empty_payload()
            payload['generation_events'].append(event)
            self._payload = payload
            self._buffered += 1
            self._restart_timer()
            flush_now = self._buffered >= self.max_buffered or immediate

        if flush_now:
            self.flush(forced=immediate)

    # ── Flush ─────────────────────────────────────────────────────────

    def flush(self, forced: bool = False):
        """
        Send the pending snapshot and reset the accumulator. A snapshot with
        no answered questions and no generation events is dropped unsent.
        """
        with self._lock:
            self._cancel_timer()
            payload = self._payload
            self._payload = None
            self._buffered = 0

        if payload is None or not self.enabled:
            return

        totals = payload['user_totals']
        events = payload['generation_events']
        answered = totals.get('total', 0)
        if not answered and not events:
            return

        record = {
            'event': ANALYTICS_SNAPSHOT_EVENT,
            'params': {
                'user_correct_total': totals.get('correct', 0),
                'user_incorrect_total': totals.get('incorrect', 0),
                'user_total_answered': answered,
                'generation_event_count': len(events),
                'generation_events': events,
                'flush_reason': 'forced' if forced else 'scheduled',
            },
        }

        if self.sink is None:
            return
        try:
            self.sink(record)
        except Exception as e:
            logger.warning("Unable to send analytics event: %s", e)

    # ── Timer ─────────────────────────────────────────────────────────

    def _restart_timer(self):
        self._cancel_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            timer = threading.Timer(self.flush_delay, self.flush)
            timer.daemon = True
            timer.start()
            self._timer = timer
            return
        self._timer = loop.call_later(self.flush_delay, self.flush)

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    # ── Teardown ──────────────────────────────────────────────────────

    def install_teardown_hooks(self):
        """Force a flush at interpreter exit and on SIGTERM."""
        if self._hooks_installed:
            return
        self._hooks_installed = True
        atexit.register(self.flush, True)

        try:
            previous = signal.getsignal(signal.SIGTERM)
        except (AttributeError, ValueError):
            return

        def _on_sigterm(signum, frame):
            self.flush(forced=True)
            if callable(previous):
                previous(signum, frame)
            else:
                raise SystemExit(128 + signum)

        try:
            signal.signal(signal.SIGTERM, _on_sigterm)
        except ValueError:
            # not the main thread
            logger.debug("SIGTERM hook not installed outside the main thread")


class HttpTelemetrySink:
    """Posts analytics records as JSON on a background thread. Fire and forget."""

    def __init__(self, url: str, timeout: int = 10):
        self.url = url
        self.timeout = timeout

    def __call__(self, record: dict):
        if not self.url:
            logger.debug("No telemetry URL configured, dropping %s", record.get('event'))
            return
        thread = threading.Thread(target=self._post, args=(record,), daemon=True)
        thread.start()

    def _post(self, record: dict):
        body = dict(record)
        body['client'] = {'app': APP_NAME, 'version': APP_VERSION}
        try:
            resp = requests.post(self.url, json=body, timeout=self.timeout)
            if resp.status_code >= 400:
                logger.warning("Telemetry endpoint returned %s", resp.status_code)
        except requests.exceptions.RequestException as e:
            logger.warning("Telemetry delivery failed: %s", e)
