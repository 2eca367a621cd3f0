#!/usr/bin/env python3
"""
Unit tests for CheckpointQuiz core modules.
Tests cover: URL parsing, errors, config, segmentation, storage, cache LRU,
status tracking, summarisation, response parsing, scheduling, pipeline,
analytics, progress, cleanup.
"""

import sys
import json
import asyncio
import hashlib
import random
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest import mock

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from checkpoint_quiz.core.constants import (
    ErrorCode, UnitStatus, OverallStatus, STATUS_KEY, LRU_KEY, PROGRESS_KEY,
    CACHE_VERSION, QUIZ_INPUT_CHAR_LIMIT,
)
from checkpoint_quiz.core.url_parse import extract_video_id, validate_youtube_url, resolve_video_id
from checkpoint_quiz.core.error_codes import (
    QuizError, GenerationError, QuotaExceededError, TranscriptUnavailable,
    is_retryable, is_quota_exceeded,
)
from checkpoint_quiz.core.config import AppConfig
from checkpoint_quiz.core.models import Question, Segment, TranscriptEntry, CacheEntry
from checkpoint_quiz.core.text_utils import trim_text_to_limit, split_text_into_chunks
from checkpoint_quiz.core.segmenter import (
    segment_transcript, usable_window, parse_timestamp, build_transcript_entries,
    load_transcript_file,
)
from checkpoint_quiz.core.storage import KeyValueStore
from checkpoint_quiz.core.cache_store import QuizCache, build_cache_entry, quiz_key, transcript_key
from checkpoint_quiz.core.status_tracker import GenerationStatusTracker, compute_overall_status
from checkpoint_quiz.core.summarizer import summarize_transcript
from checkpoint_quiz.core.generation import QuestionGenerator, parse_quiz_response, build_quiz_prompt
from checkpoint_quiz.core.scheduler import GenerationScheduler, QuizSession
from checkpoint_quiz.core.pipeline import QuizPipeline
from checkpoint_quiz.core.analytics import AnalyticsBatcher, hash_video_id
from checkpoint_quiz.core.progress import record_answer, compute_user_totals
from checkpoint_quiz.core.cleanup import clear_all_cache


VIDEO_A = "aaaaaaaaaaa"
VIDEO_B = "bbbbbbbbbbb"


def make_transcript(total_sec: int, step: int = 10) -> list[TranscriptEntry]:
    return [
        TranscriptEntry(start=float(t), end=float(t + step), duration=float(step), text=f"line {t}")
        for t in range(0, total_sec, step)
    ]


def make_questions(n: int, prefix: str = "q") -> list[Question]:
    return [Question(question=f"{prefix} {i}?", options=["a", "b", "c", "d"], correct=i % 4)
            for i in range(n)]


def make_segments(n: int) -> list[Segment]:
    return [Segment(start=i * 100.0, end=i * 100.0 + 90, text=f"segment {i}") for i in range(n)]


class FakeGenerator:
    """Records calls; fails or under-delivers for chosen texts."""

    def __init__(self, fail=(), short=(), delay=0.0):
        self.fail = set(fail)
        self.short = set(short)
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0
        self.events = []

    async def __call__(self, text, count):
        self.calls.append((text, count))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.events.append(("start", text))
        try:
            await asyncio.sleep(self.delay)
            if text in self.fail:
                raise GenerationError("backend unavailable")
            n = 1 if text in self.short else count
            return make_questions(n, prefix=text)
        finally:
            self.active -= 1
            self.events.append(("end", text))

    def segment_calls(self):
        return [t for t, _ in self.calls if t.startswith("segment ") and len(t.split()) == 2]


class StoreTestCase(unittest.IsolatedAsyncioTestCase):
    """Base class: a fresh SQLite store per test."""

    async def asyncSetUp(self):
        self.tmpdir = Path(tempfile.mkdtemp())
        self.store = KeyValueStore(self.tmpdir / "store.db")
        self.cache = QuizCache(self.store)

    async def asyncTearDown(self):
        self.store.close()
        shutil.rmtree(self.tmpdir, ignore_errors=True)


class TestURLParsing(unittest.TestCase):
    """Test YouTube URL parsing and validation."""

    def test_standard_url(self):
        self.assertEqual(
            extract_video_id("https://www.youtube.com/watch?v=dQw4w9WgXcQ"),
            "dQw4w9WgXcQ",
        )

    def test_short_url(self):
        self.assertEqual(extract_video_id("https://youtu.be/dQw4w9WgXcQ"), "dQw4w9WgXcQ")

    def test_url_with_params(self):
        self.assertEqual(
            extract_video_id("https://www.youtube.com/watch?list=PL123&v=dQw4w9WgXcQ&t=42"),
            "dQw4w9WgXcQ",
        )

    def test_invalid_url(self):
        self.assertIsNone(extract_video_id("https://example.com/watch?v=dQw4w9WgXcQ"))
        self.assertIsNone(extract_video_id(""))

    def test_validate_raises_on_invalid(self):
        with self.assertRaises(QuizError) as ctx:
            validate_youtube_url("not a url")
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_URL)

    def test_resolve_bare_id(self):
        self.assertEqual(resolve_video_id("dQw4w9WgXcQ"), "dQw4w9WgXcQ")
        self.assertEqual(resolve_video_id("https://youtu.be/dQw4w9WgXcQ"), "dQw4w9WgXcQ")


class TestErrorCodes(unittest.TestCase):
    """Test error code handling."""

    def test_retryable_errors(self):
        self.assertTrue(is_retryable(ErrorCode.TRANSCRIPT_UNAVAILABLE))
        self.assertTrue(is_retryable(ErrorCode.PERSISTENCE))
        self.assertTrue(is_retryable(ErrorCode.NETWORK_TRANSIENT))

    def test_non_retryable_errors(self):
        self.assertFalse(is_retryable(ErrorCode.INVALID_URL))
        self.assertFalse(is_retryable(ErrorCode.GENERATION_FAILED))
        self.assertFalse(is_retryable(ErrorCode.CACHE_CORRUPT))

    def test_subclass_codes(self):
        self.assertEqual(TranscriptUnavailable("x").code, ErrorCode.TRANSCRIPT_UNAVAILABLE)
        self.assertTrue(TranscriptUnavailable("x").retryable)
        self.assertFalse(GenerationError("x").retryable)
        self.assertEqual(str(GenerationError("boom")), "[ERR_GENERATION_FAILED] boom")

    def test_quota_detection(self):
        self.assertTrue(is_quota_exceeded(QuotaExceededError("over budget")))
        self.assertTrue(is_quota_exceeded(RuntimeError("Quota exceeded for this model")))
        self.assertTrue(is_quota_exceeded(RuntimeError("QuotaExceeded")))
        self.assertFalse(is_quota_exceeded(RuntimeError("timeout")))


class TestConfig(unittest.TestCase):
    """Test settings validation and persistence."""

    def setUp(self):
        self.tmpdir = Path(tempfile.mkdtemp())
        self.path = self.tmpdir / "config.json"

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_defaults(self):
        config = AppConfig(self.path)
        self.assertEqual(config.question_count, 1)
        self.assertTrue(config.final_quiz_enabled)
        self.assertEqual(config.base_segment_sec, 180)
        self.assertEqual(config.batch_size, 3)

    def test_clamping(self):
        config = AppConfig(self.path)
        config.set('question_count', 9)
        self.assertEqual(config.question_count, 4)
        config.set('question_count', 0)
        self.assertEqual(config.question_count, 1)
        config.set('question_count', 'many')
        self.assertEqual(config.question_count, 1)
        config.set('base_segment_sec', 10)
        self.assertEqual(config.base_segment_sec, 60)
        config.set('final_trigger_fraction', 1.5)
        self.assertEqual(config.final_trigger_fraction, 0.99)
        config.set('batch_size', 20)
        self.assertEqual(config.batch_size, 8)

    def test_persisted_values_revalidated(self):
        self.path.write_text(json.dumps({'question_count': 7, 'analytics_enabled': 0}))
        config = AppConfig(self.path)
        self.assertEqual(config.question_count, 4)
        self.assertFalse(config.analytics_enabled)

    def test_set_persists(self):
        AppConfig(self.path).set('question_count', 3)
        self.assertEqual(AppConfig(self.path).question_count, 3)

    def test_api_key_from_env(self):
        with mock.patch.dict('os.environ', {'CHECKPOINT_QUIZ_API_KEY': 'sk-test'}):
            self.assertEqual(AppConfig(self.path).api_key, 'sk-test')


class TestModels(unittest.TestCase):
    """Test data model invariants."""

    def test_question_correct_index_out_of_range(self):
        with self.assertRaises(ValueError):
            Question(question="q", options=["a", "b"], correct=2)

    def test_question_needs_two_options(self):
        with self.assertRaises(ValueError):
            Question.from_dict({'question': "q", 'options': ["a"], 'correct': 0})

    def test_empty_final_quiz_survives_round_trip(self):
        entry = CacheEntry(version=CACHE_VERSION, timestamp=1, segment_count=0,
                           segments=[], final_quiz=[])
        self.assertEqual(CacheEntry.from_dict(entry.to_dict()).final_quiz, [])


class TestTextUtils(unittest.TestCase):

    def test_trim_keeps_start(self):
        self.assertEqual(trim_text_to_limit("abcdefghij", 4), "abcd...")
        self.assertEqual(trim_text_to_limit("abc", 10), "abc")

    def test_split_prefers_sentence_boundary(self):
        text = ("First sentence here. " * 10).strip()
        chunks = split_text_into_chunks(text, 50)
        self.assertTrue(all(len(c) <= 50 for c in chunks))
        self.assertTrue(all(c.endswith('.') for c in chunks[:-1]))
        self.assertEqual(' '.join(chunks), text)

    def test_split_empty(self):
        self.assertEqual(split_text_into_chunks("", 100), [])


class TestSegmentation(unittest.TestCase):
    """Test time-based transcript segmentation."""

    def test_1200s_scenario(self):
        transcript = make_transcript(1200)
        self.assertAlmostEqual(usable_window(1200), 1014.0)
        segments = segment_transcript(transcript)
        self.assertEqual(len(segments), 6)
        self.assertEqual(segments[0].start, 0.0)
        self.assertAlmostEqual(segments[1].start, 169.0)

    def test_coverage_inside_usable_window(self):
        transcript = make_transcript(1200)
        segments = segment_transcript(transcript)
        covered = [e for s in segments for e in s.entries]
        expected = [e for e in transcript if e.start < 1014]
        self.assertEqual(covered, expected)
        for seg in segments:
            self.assertLess(seg.start, 1014)
            self.assertEqual(seg.end, seg.entries[-1].start + seg.entries[-1].duration)

    def test_short_video_single_segment(self):
        transcript = make_transcript(60)
        segments = segment_transcript(transcript)
        self.assertEqual(len(segments), 1)
        self.assertEqual(segments[0].start, 0.0)
        self.assertEqual(segments[0].end, 60.0)
        self.assertEqual(len(segments[0].entries), len(transcript))

    def test_no_entries_in_window_falls_back(self):
        transcript = [TranscriptEntry(start=1100.0, end=1105.0, duration=5.0, text="late")]
        segments = segment_transcript(transcript, video_duration=1200)
        self.assertEqual(len(segments), 1)
        self.assertEqual(segments[0].end, 1105.0)
        self.assertEqual(segments[0].text, "late")

    def test_empty_transcript(self):
        self.assertEqual(segment_transcript([]), [])

    def test_parse_timestamp(self):
        self.assertEqual(parse_timestamp("1:05"), 65)
        self.assertEqual(parse_timestamp("1:02:03"), 3723)
        self.assertIsNone(parse_timestamp("soon"))

    def test_build_entries_from_rows(self):
        rows = [{'time': '0:00', 'text': 'hello'}, {'time': '0:05', 'text': 'world'}]
        entries = build_transcript_entries(rows)
        self.assertEqual([(e.start, e.end) for e in entries], [(0.0, 5.0), (5.0, 8.0)])

    def test_load_empty_transcript_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "t.json"
            path.write_text("[]")
            with self.assertRaises(TranscriptUnavailable):
                load_transcript_file(path)


class TestKeyValueStore(StoreTestCase):
    """Test SQLite key-value operations."""

    async def test_set_get_remove(self):
        await self.store.set("k", {"a": [1, 2]})
        self.assertEqual(await self.store.get("k"), {"a": [1, 2]})
        await self.store.remove("k")
        self.assertIsNone(await self.store.get("k"))

    async def test_keys_prefix_is_literal(self):
        await self.store.set("quiz:one", 1)
        await self.store.set("quiz_two", 2)
        await self.store.set("transcript:one", 3)
        self.assertEqual(await self.store.keys("quiz:"), ["quiz:one"])


class TestQuizCache(StoreTestCase):
    """Test the LRU cache of quiz bundles."""

    def _entry(self, n_segments=2):
        segments = make_segments(n_segments)
        for seg in segments:
            seg.questions = make_questions(1)
            seg.status = UnitStatus.COMPLETED
        return build_cache_entry(segments, make_questions(3, "final"), None)

    async def test_round_trip_and_promotion(self):
        await self.cache.put(VIDEO_A, self._entry())
        entry = self._entry(3)
        await self.cache.put(VIDEO_B, entry)
        await self.cache.put(VIDEO_A, self._entry())
        self.assertEqual((await self.cache.lru())[0], VIDEO_A)

        got = await self.cache.get(VIDEO_B)
        self.assertEqual(got.to_dict(), entry.to_dict())
        self.assertEqual(got.segment_count, 3)
        self.assertEqual((await self.cache.lru())[0], VIDEO_B)

    async def test_lru_bound_and_eviction(self):
        ids = [f"video{i:06d}" for i in range(11)]
        for vid in ids:
            await self.cache.put_transcript(vid, make_transcript(30))
            await self.cache.put(vid, self._entry())
        order = await self.cache.lru()
        self.assertEqual(len(order), 10)
        self.assertEqual(len(set(order)), 10)
        self.assertEqual(order[0], ids[-1])
        self.assertNotIn(ids[0], order)
        self.assertIsNone(await self.store.get(quiz_key(ids[0])))
        self.assertIsNone(await self.store.get(transcript_key(ids[0])))

    async def test_invalid_version_purged(self):
        await self.store.set(quiz_key(VIDEO_A), {'version': '0.9', 'segmentCount': 0, 'segments': []})
        self.assertIsNone(await self.cache.get(VIDEO_A))
        self.assertIsNone(await self.store.get(quiz_key(VIDEO_A)))

    async def test_segment_count_mismatch_purged(self):
        raw = self._entry(2).to_dict()
        raw['segmentCount'] = 5
        await self.store.set(quiz_key(VIDEO_A), raw)
        self.assertIsNone(await self.cache.get(VIDEO_A))
        self.assertIsNone(await self.store.get(quiz_key(VIDEO_A)))

    async def test_clear_is_idempotent(self):
        await self.cache.put(VIDEO_A, self._entry())
        await self.store.set(STATUS_KEY, {VIDEO_A: {'videoId': VIDEO_A}})
        await self.cache.clear(VIDEO_A)
        await self.cache.clear(VIDEO_A)
        self.assertIsNone(await self.cache.get(VIDEO_A))
        self.assertNotIn(VIDEO_A, await self.cache.lru())
        self.assertEqual(await self.store.get(STATUS_KEY), {})

    async def test_cache_info(self):
        await self.cache.put_transcript(VIDEO_A, make_transcript(30))
        await self.cache.put(VIDEO_A, self._entry(2))
        rows = await self.cache.cache_info()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['segments'], 2)
        self.assertTrue(rows[0]['has_transcript'])


class TestStatusTracker(StoreTestCase):
    """Test the generation status state machine."""

    async def test_overall_status(self):
        tracker = GenerationStatusTracker(self.store, VIDEO_A)
        self.assertEqual(compute_overall_status(None), OverallStatus.IDLE)
        status = await tracker.create(2, final_enabled=False, question_target=1)
        self.assertEqual(status.overall_status, OverallStatus.PROCESSING)
        await tracker.mark_segment(0, UnitStatus.COMPLETED, 1)
        await tracker.mark_segment(1, UnitStatus.COMPLETED, 1)
        self.assertEqual(tracker.status.overall_status, OverallStatus.COMPLETED)
        await tracker.mark_segment(1, UnitStatus.ERROR, 0, "boom")
        self.assertEqual(tracker.status.overall_status, OverallStatus.ERROR)

    async def test_write_through(self):
        tracker = GenerationStatusTracker(self.store, VIDEO_A, "Title")
        await tracker.create(2, final_enabled=True, question_target=1)
        await tracker.mark_segment(0, UnitStatus.PROCESSING)
        stored = (await self.store.get(STATUS_KEY))[VIDEO_A]
        self.assertEqual(stored['segments'][0]['status'], UnitStatus.PROCESSING)
        self.assertEqual(stored['final']['status'], UnitStatus.PENDING)
        self.assertEqual(stored['videoTitle'], "Title")

    async def test_completed_never_regresses(self):
        tracker = GenerationStatusTracker(self.store, VIDEO_A)
        await tracker.create(1, final_enabled=False, question_target=1)
        await tracker.mark_segment(0, UnitStatus.COMPLETED, 1)
        self.assertFalse(await tracker.mark_segment(0, UnitStatus.PENDING))
        self.assertFalse(await tracker.mark_segment(0, UnitStatus.PROCESSING))
        stored = (await self.store.get(STATUS_KEY))[VIDEO_A]
        self.assertEqual(stored['segments'][0]['status'], UnitStatus.COMPLETED)
        self.assertTrue(await tracker.mark_segment(0, UnitStatus.PROCESSING, force=True))

    async def test_segment_count_mismatch_discards(self):
        await GenerationStatusTracker(self.store, VIDEO_A).create(3, True, 1)
        self.assertIsNone(await GenerationStatusTracker(self.store, VIDEO_A).load(2))
        self.assertIsNotNone(await GenerationStatusTracker(self.store, VIDEO_A).load(3))

    async def test_stale_writes_dropped(self):
        tracker = GenerationStatusTracker(self.store, VIDEO_A, is_current=lambda: False)
        await tracker.create(2, True, 1)
        self.assertIsNone(tracker.status)
        self.assertIsNone(await self.store.get(STATUS_KEY))

    async def test_skipped_final_becomes_pending_on_target(self):
        tracker = GenerationStatusTracker(self.store, VIDEO_A)
        await tracker.create(1, final_enabled=False, question_target=1)
        self.assertEqual(tracker.status.final.status, UnitStatus.SKIPPED)
        await tracker.update_final_target(4)
        self.assertEqual(tracker.status.final.status, UnitStatus.PENDING)
        self.assertEqual(tracker.final_target, 4)

    async def test_rebuild_from_segments(self):
        segments = make_segments(3)
        segments[0].questions = make_questions(2)
        segments[1].status = UnitStatus.ERROR
        segments[1].error_message = "failed"
        tracker = GenerationStatusTracker(self.store, VIDEO_A)
        status = await tracker.rebuild_from_segments(segments, make_questions(3), True, 1)
        self.assertEqual([r.status for r in status.segments],
                         [UnitStatus.COMPLETED, UnitStatus.ERROR, UnitStatus.PENDING])
        self.assertEqual(status.segments[0].question_count, 2)
        self.assertEqual(status.final.status, UnitStatus.COMPLETED)

    async def test_message_truncated(self):
        tracker = GenerationStatusTracker(self.store, VIDEO_A)
        await tracker.create(1, False, 1)
        await tracker.mark_segment(0, UnitStatus.ERROR, 0, "x" * 5000)
        self.assertEqual(len(tracker.status.segments[0].message), 2000)


class TestSummarizer(unittest.IsolatedAsyncioTestCase):
    """Test final-quiz input preparation."""

    def setUp(self):
        self.text = " ".join(f"Sentence number {i} about the topic." for i in range(400))

    async def test_no_summarizer_truncates_start(self):
        result = await summarize_transcript(self.text, None)
        self.assertEqual(result, trim_text_to_limit(self.text, QUIZ_INPUT_CHAR_LIMIT))
        self.assertTrue(result.startswith("Sentence number 0"))

    async def test_empty_input(self):
        self.assertIsNone(await summarize_transcript("   ", None))

    async def test_quota_reduces_chunk_size(self):
        seen = []

        async def summarize(chunk):
            if len(chunk) > 2000:
                raise QuotaExceededError("quota exceeded")
            seen.append(len(chunk))
            return "point"

        result = await summarize_transcript(self.text, summarize)
        self.assertTrue(result.startswith("point"))
        self.assertTrue(seen)
        self.assertTrue(all(size <= 2000 for size in seen))

    async def test_quota_at_minimum_falls_back(self):
        async def summarize(chunk):
            raise RuntimeError("Quota exceeded")

        result = await summarize_transcript(self.text, summarize)
        self.assertEqual(result, trim_text_to_limit(self.text, QUIZ_INPUT_CHAR_LIMIT))

    async def test_other_error_falls_back(self):
        async def summarize(chunk):
            raise ConnectionError("down")

        result = await summarize_transcript(self.text, summarize)
        self.assertEqual(result, trim_text_to_limit(self.text, QUIZ_INPUT_CHAR_LIMIT))

    async def test_long_combined_summary_gets_second_pass(self):
        calls = []

        async def summarize(chunk):
            calls.append(chunk)
            if len(calls) == 1 or len(chunk) < 4500:
                return "k" * 1500
            return "condensed"

        # 5 chunks of ~4000 chars -> 5 * 1500 + separators > 6000
        text = "word " * 4000
        result = await summarize_transcript(text, summarize)
        self.assertEqual(result, "condensed")


class TestQuizResponseParsing(unittest.TestCase):
    """Test the strict Q1:/A)/Correct: parser."""

    RESPONSE = """Q1: Why does ice float?
A) It is denser than water
B) It is less dense than water
C) It is magnetic
D) It is warmer
Correct: B

Q2: How do plants make food?
A) Photosynthesis
B) Fermentation
C) Osmosis
D) Combustion
Correct: A"""

    def test_parse_blocks(self):
        questions = parse_quiz_response(self.RESPONSE, 2)
        self.assertEqual(len(questions), 2)
        self.assertEqual(questions[0].question, "Why does ice float?")
        self.assertEqual(questions[0].correct, 1)
        self.assertEqual(questions[1].options[0], "Photosynthesis")
        self.assertEqual(questions[1].correct, 0)

    def test_truncates_to_desired_count(self):
        self.assertEqual(len(parse_quiz_response(self.RESPONSE, 1)), 1)

    def test_block_without_answer_dropped(self):
        response = self.RESPONSE.replace("Correct: A", "")
        self.assertEqual(len(parse_quiz_response(response, 2)), 1)

    def test_parse_json(self):
        response = json.dumps([{'question': "q?", 'options': ["x", "y"], 'answer': 1}])
        questions = parse_quiz_response(response, 1)
        self.assertEqual(len(questions), 1)
        self.assertEqual(questions[0].correct, 1)

    def test_empty(self):
        self.assertEqual(parse_quiz_response("", 1), [])
        self.assertEqual(parse_quiz_response(None, 1), [])

    def test_prompt_clamps_count(self):
        prompt = build_quiz_prompt("content", 9)
        self.assertIn("Q4:", prompt)
        self.assertNotIn("Q5:", prompt)


class TestQuestionGenerator(unittest.TestCase):
    """Test the HTTP generator with a mocked backend."""

    def _response(self, status, body):
        resp = mock.Mock()
        resp.status_code = status
        resp.json.return_value = body
        resp.text = json.dumps(body)
        return resp

    def test_generate_parses_completion(self):
        body = {'choices': [{'message': {'content': TestQuizResponseParsing.RESPONSE}}]}
        with mock.patch('checkpoint_quiz.core.generation.requests.post',
                        return_value=self._response(200, body)) as post:
            questions = QuestionGenerator("sk-test").generate_sync("content", 2)
        self.assertEqual(len(questions), 2)
        self.assertEqual(post.call_args.kwargs['headers']['Authorization'], "Bearer sk-test")

    def test_too_few_questions_is_error(self):
        body = {'choices': [{'message': {'content': TestQuizResponseParsing.RESPONSE}}]}
        with mock.patch('checkpoint_quiz.core.generation.requests.post',
                        return_value=self._response(200, body)):
            with self.assertRaises(GenerationError):
                QuestionGenerator("sk-test").generate_sync("content", 3)

    def test_quota_response(self):
        body = {'error': {'code': 'insufficient_quota', 'message': 'You exceeded your quota'}}
        with mock.patch('checkpoint_quiz.core.generation.requests.post',
                        return_value=self._response(429, body)):
            with self.assertRaises(QuotaExceededError):
                QuestionGenerator("sk-test").generate_sync("content", 1)

    def test_missing_key(self):
        with self.assertRaises(GenerationError):
            QuestionGenerator(None).generate_sync("content", 1)


class TestScheduler(StoreTestCase):
    """Test generation ordering, isolation and final-quiz handling."""

    def _session(self, n_segments, video_id=VIDEO_A):
        return QuizSession(self.store, video_id, "Title", make_segments(n_segments))

    async def test_partial_failure_isolated(self):
        gen = FakeGenerator(fail={"segment 2"})
        scheduler = GenerationScheduler(self.cache, gen, batch_pause=0)
        session = self._session(5)
        await scheduler.run(session, final_enabled=False, question_target=1)

        statuses = [r.status for r in session.tracker.status.segments]
        self.assertEqual(statuses, [UnitStatus.COMPLETED, UnitStatus.COMPLETED, UnitStatus.ERROR,
                                    UnitStatus.COMPLETED, UnitStatus.COMPLETED])
        self.assertEqual(session.tracker.status.segments[2].message, "backend unavailable")
        self.assertEqual(session.segments[2].questions, [])
        self.assertEqual(session.tracker.status.overall_status, OverallStatus.ERROR)

        entry = await self.cache.get(VIDEO_A)
        self.assertEqual(entry.segment_count, 5)

    async def test_short_result_is_error(self):
        gen = FakeGenerator(short={"segment 1"})
        scheduler = GenerationScheduler(self.cache, gen, batch_pause=0)
        session = self._session(3)
        await scheduler.run(session, final_enabled=False, question_target=2)

        record = session.tracker.status.segments[1]
        self.assertEqual(record.status, UnitStatus.ERROR)
        self.assertEqual(record.question_count, 0)
        self.assertEqual(session.segments[1].questions, [])
        self.assertEqual(session.tracker.status.segments[0].status, UnitStatus.COMPLETED)
        self.assertEqual(session.tracker.status.segments[2].question_count, 2)

    async def test_first_segment_alone_then_batches(self):
        gen = FakeGenerator(delay=0.01)
        scheduler = GenerationScheduler(self.cache, gen, batch_size=3, batch_pause=0)
        session = self._session(7)
        await scheduler.run(session, final_enabled=False, question_target=1)

        self.assertEqual(gen.events[:2], [("start", "segment 0"), ("end", "segment 0")])
        self.assertLessEqual(gen.max_active, 3)
        last_end_batch1 = max(i for i, e in enumerate(gen.events)
                              if e[0] == "end" and e[1] in {"segment 1", "segment 2", "segment 3"})
        first_start_batch2 = min(i for i, e in enumerate(gen.events)
                                 if e[0] == "start" and e[1] in {"segment 4", "segment 5", "segment 6"})
        self.assertLess(last_end_batch1, first_start_batch2)

    async def test_final_quiz_generated_and_cached(self):
        gen = FakeGenerator()
        scheduler = GenerationScheduler(self.cache, gen, batch_pause=0, rng=random.Random(7))
        session = self._session(2)
        await scheduler.run(session, final_enabled=True, question_target=1)

        target = session.tracker.status.final.target
        self.assertIn(target, (3, 4, 5))
        self.assertEqual(session.tracker.status.final.status, UnitStatus.COMPLETED)
        self.assertEqual(session.tracker.status.overall_status, OverallStatus.COMPLETED)
        entry = await self.cache.get(VIDEO_A)
        self.assertEqual(len(entry.final_quiz), target)
        self.assertEqual(entry.status_snapshot.final.status, UnitStatus.COMPLETED)

    async def test_persisted_final_target_honoured(self):
        scheduler = GenerationScheduler(self.cache, FakeGenerator())
        session = self._session(2)
        await session.tracker.create(2, True, 1)
        await session.tracker.update_final_target(4)
        self.assertEqual(scheduler.draw_final_target(session), 4)

    async def test_final_generation_deduplicated(self):
        gen = FakeGenerator(delay=0.05)
        scheduler = GenerationScheduler(self.cache, gen)
        session = self._session(2)
        await session.tracker.create(2, True, 1)

        first, second = await asyncio.gather(
            scheduler.ensure_final_quiz(session),
            scheduler.ensure_final_quiz(session),
        )
        self.assertEqual(len(gen.calls), 1)
        self.assertIs(first, second)
        self.assertTrue(first)

    async def test_final_failure_recorded(self):
        gen = FakeGenerator(fail={"segment 0 segment 1"})
        scheduler = GenerationScheduler(self.cache, gen, batch_pause=0)
        session = self._session(2)
        await scheduler.run(session, final_enabled=True, question_target=1)
        self.assertEqual(session.tracker.status.final.status, UnitStatus.ERROR)
        self.assertIsNone(session.final_quiz)
        self.assertEqual(session.tracker.status.segments[1].status, UnitStatus.COMPLETED)

    async def test_wait_for_skipped_final_leaves_status_settled(self):
        scheduler = GenerationScheduler(self.cache, FakeGenerator(), batch_pause=0)
        session = self._session(2)
        await scheduler.run(session, final_enabled=False, question_target=1)
        self.assertEqual(session.tracker.status.overall_status, OverallStatus.COMPLETED)

        self.assertIsNone(await scheduler.wait_for_final_quiz(session, timeout=0.05,
                                                              final_enabled=False))
        self.assertIsNone(await scheduler.wait_for_final_quiz(session, timeout=0.05))
        self.assertEqual(session.tracker.status.final.status, UnitStatus.SKIPPED)
        self.assertEqual(session.tracker.status.overall_status, OverallStatus.COMPLETED)

    async def test_wait_for_final_times_out(self):
        gate = asyncio.Event()

        async def blocked(text, count):
            await gate.wait()
            return make_questions(count)

        scheduler = GenerationScheduler(self.cache, blocked)
        session = self._session(1)
        await session.tracker.create(1, True, 1)
        task = asyncio.ensure_future(scheduler.ensure_final_quiz(session))
        await asyncio.sleep(0.05)

        result = await scheduler.wait_for_final_quiz(session, timeout=0.2, poll_interval=0.02)
        self.assertIsNone(result)

        gate.set()
        questions = await task
        self.assertTrue(questions)
        self.assertEqual(await scheduler.wait_for_final_quiz(session, timeout=0.2), questions)

    async def test_regenerate_failed_segment(self):
        gen = FakeGenerator(fail={"segment 1"})
        scheduler = GenerationScheduler(self.cache, gen, batch_pause=0)
        session = self._session(2)
        await scheduler.run(session, final_enabled=False, question_target=1)
        self.assertEqual(session.tracker.status.segments[1].status, UnitStatus.ERROR)

        gen.fail.clear()
        self.assertTrue(await scheduler.regenerate_segment(session, 1, 1))
        self.assertEqual(session.tracker.status.segments[1].status, UnitStatus.COMPLETED)
        entry = await self.cache.get(VIDEO_A)
        self.assertTrue(entry.segments[1].questions)

    async def test_generation_events_reach_analytics(self):
        records = []
        analytics = AnalyticsBatcher(records.append, flush_delay=60)
        scheduler = GenerationScheduler(self.cache, FakeGenerator(), analytics=analytics,
                                        batch_pause=0)
        await scheduler.run(self._session(2), final_enabled=True, question_target=1)
        # the final outcome flushes immediately
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0]['params']['flush_reason'], 'forced')

        analytics.flush(forced=True)
        events = [e for r in records for e in r['params']['generation_events']]
        self.assertEqual(sorted(e['quiz_type'] for e in events), ['final', 'segment', 'segment'])
        self.assertTrue(all(e['status'] == UnitStatus.COMPLETED for e in events))


class TestPipeline(StoreTestCase):
    """Test cache-hit / cache-miss flows and identity changes."""

    async def test_cache_miss_then_hit(self):
        gen = FakeGenerator()
        transcript = make_transcript(1200)

        async def provider():
            return transcript

        pipeline = QuizPipeline(self.store, gen)
        self.assertTrue(await pipeline.start(VIDEO_A, "Title", 1200, provider))
        calls_after_first = len(gen.calls)
        self.assertEqual(calls_after_first, 7)  # 6 segments + final
        self.assertIsNotNone(await self.store.get(transcript_key(VIDEO_A)))

        async def no_provider():
            raise AssertionError("transcript should come from cache")

        second = QuizPipeline(self.store, gen)
        self.assertTrue(await second.start(VIDEO_A, "Title", 1200, no_provider))
        self.assertEqual(len(gen.calls), calls_after_first)
        self.assertEqual(second.session.tracker.status.overall_status, OverallStatus.COMPLETED)

    async def test_cache_hit_generates_missing_segments(self):
        segments = make_segments(3)
        segments[0].questions = make_questions(1)
        segments[2].questions = make_questions(1)
        await self.cache.put(VIDEO_A, build_cache_entry(segments, make_questions(3), None))

        gen = FakeGenerator()
        pipeline = QuizPipeline(self.store, gen)
        self.assertTrue(await pipeline.start(VIDEO_A))
        self.assertEqual(gen.segment_calls(), ["segment 1"])
        entry = await self.cache.get(VIDEO_A)
        self.assertTrue(all(s.questions for s in entry.segments))

    async def test_empty_transcript_returns_false(self):
        async def provider():
            return []

        pipeline = QuizPipeline(self.store, FakeGenerator())
        self.assertFalse(await pipeline.start(VIDEO_A, transcript_provider=provider))
        self.assertIsNone(await self.store.get(quiz_key(VIDEO_A)))

    async def test_identity_change_discards_results(self):
        gate = asyncio.Event()
        calls = []

        async def blocked(text, count):
            calls.append(text)
            await gate.wait()
            return make_questions(count)

        async def provider():
            return make_transcript(1200)

        pipeline = QuizPipeline(self.store, blocked)
        task = asyncio.ensure_future(pipeline.start(VIDEO_A, "A", 1200, provider))
        for _ in range(200):
            if calls:
                break
            await asyncio.sleep(0.01)
        self.assertTrue(calls)

        pipeline.switch_video(VIDEO_B)
        gate.set()
        self.assertFalse(await task)
        self.assertIsNone(await self.store.get(quiz_key(VIDEO_A)))
        self.assertIsNone(pipeline.session)

    async def test_clear_cache(self):
        async def provider():
            return make_transcript(300)

        pipeline = QuizPipeline(self.store, FakeGenerator())
        await pipeline.start(VIDEO_A, transcript_provider=provider)
        await pipeline.clear_cache(VIDEO_A)
        self.assertIsNone(await self.store.get(quiz_key(VIDEO_A)))
        self.assertIsNone(await self.store.get(transcript_key(VIDEO_A)))
        self.assertNotIn(VIDEO_A, await self.store.get(STATUS_KEY) or {})

    async def test_disabled_does_not_start(self):
        config = AppConfig(self.tmpdir / "config.json")
        config.set('enabled', False)
        pipeline = QuizPipeline(self.store, FakeGenerator(), config=config)
        self.assertFalse(await pipeline.start(VIDEO_A))

    async def test_final_disabled_stays_completed(self):
        config = AppConfig(self.tmpdir / "config.json")
        config.set('final_quiz_enabled', False)

        async def provider():
            return make_transcript(300)

        pipeline = QuizPipeline(self.store, FakeGenerator(), config=config)
        self.assertTrue(await pipeline.start(VIDEO_A, transcript_provider=provider))
        status = pipeline.session.tracker.status
        self.assertEqual(status.overall_status, OverallStatus.COMPLETED)
        self.assertEqual(status.final.status, UnitStatus.SKIPPED)

        self.assertIsNone(await pipeline.get_final_quiz(timeout=0.05))
        status = pipeline.session.tracker.status
        self.assertEqual(status.overall_status, OverallStatus.COMPLETED)
        self.assertEqual(status.final.status, UnitStatus.SKIPPED)
        stored = (await self.store.get(STATUS_KEY))[VIDEO_A]
        self.assertEqual(stored['overallStatus'], OverallStatus.COMPLETED)
        self.assertEqual(stored['final']['status'], UnitStatus.SKIPPED)

    async def test_returning_to_earlier_video_restarts_it(self):
        gate = asyncio.Event()

        async def blocked(text, count):
            await gate.wait()
            return make_questions(count)

        async def provider():
            return make_transcript(300)

        async def wait_for_session(video_id):
            for _ in range(200):
                if pipeline.session is not None and pipeline.session.video_id == video_id:
                    return
                await asyncio.sleep(0.01)
            self.fail(f"no session for {video_id}")

        pipeline = QuizPipeline(self.store, blocked)
        first_a = asyncio.ensure_future(pipeline.start(VIDEO_A, transcript_provider=provider))
        await wait_for_session(VIDEO_A)
        # same video while its start is running
        self.assertFalse(await pipeline.start(VIDEO_A, transcript_provider=provider))

        start_b = asyncio.ensure_future(pipeline.start(VIDEO_B, transcript_provider=provider))
        await wait_for_session(VIDEO_B)
        second_a = asyncio.ensure_future(pipeline.start(VIDEO_A, transcript_provider=provider))
        await wait_for_session(VIDEO_A)

        gate.set()
        self.assertFalse(await first_a)
        self.assertFalse(await start_b)
        self.assertTrue(await second_a)
        self.assertEqual(pipeline.session.video_id, VIDEO_A)
        self.assertIsNotNone(await self.store.get(quiz_key(VIDEO_A)))
        self.assertIsNone(await self.store.get(quiz_key(VIDEO_B)))


class TestAnalytics(unittest.TestCase):
    """Test debounced analytics batching."""

    def setUp(self):
        self.records = []
        self.batcher = AnalyticsBatcher(self.records.append, flush_delay=60)

    def tearDown(self):
        self.batcher.flush()

    def test_flushes_at_eight_events(self):
        for i in range(7):
            self.batcher.enqueue_generation_event(VIDEO_A, {'segment_index': i})
        self.assertEqual(self.records, [])
        self.batcher.enqueue_generation_event(VIDEO_A, {'segment_index': 7})
        self.assertEqual(len(self.records), 1)
        self.assertEqual(self.records[0]['params']['generation_event_count'], 8)
        self.assertEqual(self.batcher.buffered, 0)
        self.assertIsNone(self.batcher.pending)

    def test_video_id_hashed(self):
        self.batcher.enqueue_generation_event(VIDEO_A, {'flush_immediately': True})
        event = self.records[0]['params']['generation_events'][0]
        self.assertEqual(event['video_id_hash'], hashlib.sha256(VIDEO_A.encode()).hexdigest())
        self.assertNotIn(VIDEO_A, json.dumps(self.records))
        self.assertEqual(hash_video_id(""), "hash_unavailable")

    def test_final_answer_flushes(self):
        self.batcher.enqueue_answer({'correct': 2, 'incorrect': 1, 'total': 3})
        self.assertEqual(self.records, [])
        self.batcher.enqueue_answer({'correct': 3, 'incorrect': 1, 'total': 4}, is_final=True)
        self.assertEqual(len(self.records), 1)
        self.assertEqual(self.records[0]['params']['user_total_answered'], 4)
        self.assertEqual(self.records[0]['params']['flush_reason'], 'scheduled')

    def test_disabled_drops_events(self):
        self.batcher.enabled = False
        self.batcher.enqueue_generation_event(VIDEO_A, {'flush_immediately': True})
        self.batcher.flush(forced=True)
        self.assertEqual(self.records, [])

    def test_empty_flush_is_noop(self):
        self.batcher.flush(forced=True)
        self.assertEqual(self.records, [])

    def test_snapshot_without_answers_or_events_dropped(self):
        self.batcher.enqueue_answer({'correct': 0, 'incorrect': 0, 'total': 0})
        self.assertIsNotNone(self.batcher.pending)
        self.batcher.flush(forced=True)
        self.assertEqual(self.records, [])
        self.assertIsNone(self.batcher.pending)

    def test_sink_errors_are_contained(self):
        def broken(record):
            raise RuntimeError("offline")

        batcher = AnalyticsBatcher(broken, flush_delay=60)
        batcher.enqueue_generation_event(VIDEO_A, {'flush_immediately': True})
        self.assertIsNone(batcher.pending)


class TestAnalyticsDebounce(unittest.IsolatedAsyncioTestCase):

    async def test_timer_flushes_after_quiet_period(self):
        records = []
        batcher = AnalyticsBatcher(records.append, flush_delay=0.05)
        batcher.enqueue_answer({'correct': 1, 'incorrect': 0, 'total': 1})
        batcher.enqueue_answer({'correct': 1, 'incorrect': 1, 'total': 2})
        await asyncio.sleep(0.2)
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0]['params']['user_total_answered'], 2)


class TestProgress(StoreTestCase):
    """Test answer progress and totals."""

    async def test_record_answers(self):
        await record_answer(self.store, VIDEO_A, 0, True)
        await record_answer(self.store, VIDEO_A, 2, False)
        video_totals, user_totals = await record_answer(self.store, VIDEO_B, 0, True, is_final=True)

        progress = await self.store.get(PROGRESS_KEY)
        self.assertEqual(progress[VIDEO_A]['segments'][0], {'score': 1, 'total': 1})
        self.assertEqual(progress[VIDEO_A]['segments'][2], {'score': 0, 'total': 1})
        self.assertEqual(progress[VIDEO_B]['final'], {'score': 1, 'total': 1})
        self.assertEqual(video_totals, {'correct': 1, 'incorrect': 0, 'total': 1})
        self.assertEqual(user_totals, {'correct': 2, 'incorrect': 1, 'total': 3})

    async def test_answers_feed_analytics(self):
        records = []
        analytics = AnalyticsBatcher(records.append, flush_delay=60)
        await record_answer(self.store, VIDEO_A, 0, True, is_final=True, analytics=analytics)
        self.assertEqual(records[0]['params']['user_correct_total'], 1)

    def test_user_totals_ignore_garbage(self):
        self.assertEqual(compute_user_totals({'x': None, 'y': {'segments': [None, {'score': 1, 'total': 2}]}}),
                         {'correct': 1, 'incorrect': 1, 'total': 2})


class TestCleanup(StoreTestCase):

    async def test_clear_all_keeps_progress(self):
        await self.cache.put_transcript(VIDEO_A, make_transcript(30))
        await self.cache.put(VIDEO_A, build_cache_entry(make_segments(1), None, None))
        await self.cache.put_transcript(VIDEO_B, make_transcript(30))
        await record_answer(self.store, VIDEO_A, 0, True)

        removed = await clear_all_cache(self.store)
        self.assertEqual(removed, 3)
        self.assertEqual(await self.store.keys("quiz:"), [])
        self.assertEqual(await self.store.keys("transcript:"), [])
        self.assertIsNone(await self.store.get(LRU_KEY))
        self.assertIsNotNone(await self.store.get(PROGRESS_KEY))


if __name__ == "__main__":
    unittest.main()
