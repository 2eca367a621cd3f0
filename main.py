#!/usr/bin/env python3
"""
CheckpointQuiz v1.1.0 - Main entry point.
Command-line front end for the quiz generation and caching pipeline.
"""

import sys
import json
import asyncio
import logging
import argparse
import traceback
from pathlib import Path
from datetime import datetime

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent

if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from checkpoint_quiz.core.constants import APP_NAME, APP_VERSION, APP_LOG_DIR, UnitStatus
from checkpoint_quiz.core.config import AppConfig
from checkpoint_quiz.core.storage import KeyValueStore
from checkpoint_quiz.core.cache_store import QuizCache
from checkpoint_quiz.core.error_codes import QuizError
from checkpoint_quiz.core.url_parse import resolve_video_id
from checkpoint_quiz.core.segmenter import load_transcript_file
from checkpoint_quiz.core.generation import QuestionGenerator
from checkpoint_quiz.core.analytics import AnalyticsBatcher, HttpTelemetrySink
from checkpoint_quiz.core.pipeline import QuizPipeline
from checkpoint_quiz.core.cleanup import clear_all_cache
from checkpoint_quiz.core.diagnostics import get_diagnostics

LOG_FILE = APP_LOG_DIR / "app.log"

logger = logging.getLogger("checkpoint-quiz")


def setup_logging(verbose: bool = False):
    """File log in the app data directory plus stderr for the CLI."""
    APP_LOG_DIR.mkdir(parents=True, exist_ok=True)
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(LOG_FILE, encoding="utf-8"),
            console,
        ],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="checkpoint-quiz",
                                     description=f"{APP_NAME} {APP_VERSION}")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging on stderr")
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="generate quizzes for a video from a transcript file")
    gen.add_argument("video", help="YouTube URL or 11-character video id")
    gen.add_argument("--transcript", type=Path,
                     help="JSON transcript: [{start, duration, text}] or [{time, text}]")
    gen.add_argument("--title", default="")
    gen.add_argument("--duration", type=float, default=0.0, help="video duration in seconds")
    gen.add_argument("--output", type=Path, help="write the cached quiz bundle to this file")

    sub.add_parser("info", help="show cache, status and settings")

    clear = sub.add_parser("clear", help="clear cached data for one video")
    clear.add_argument("video")

    sub.add_parser("clear-all", help="clear every cached quiz and transcript")
    return parser


def _print_status(status):
    if status is None:
        print("No generation status recorded")
        return
    print(f"{status.video_id}: {status.overall_status}")
    for record in status.segments:
        line = f"  segment {record.index + 1}: {record.status} ({record.question_count}/{record.target})"
        if record.status == UnitStatus.ERROR and record.message:
            line += f" - {record.message}"
        print(line)
    final = status.final
    line = f"  final: {final.status} ({final.question_count}/{final.target})"
    if final.status == UnitStatus.ERROR and final.message:
        line += f" - {final.message}"
    print(line)


async def cmd_generate(args, config: AppConfig, store: KeyValueStore) -> int:
    video_id = resolve_video_id(args.video)

    api_key = config.api_key
    if not api_key:
        logger.error("Generation API key missing")
        print("Set CHECKPOINT_QUIZ_API_KEY to a generation API key", file=sys.stderr)
        return 2

    generator = QuestionGenerator(api_key,
                                  api_base=config.get('generation_api_base'),
                                  model=config.get('generation_model'))
    analytics = AnalyticsBatcher(HttpTelemetrySink(config.get('telemetry_url', '')),
                                 enabled=config.analytics_enabled)
    analytics.install_teardown_hooks()

    pipeline = QuizPipeline(store, generator.generate, generator.summarize,
                            config=config, analytics=analytics)

    async def provider():
        if args.transcript is None:
            return None
        return await asyncio.to_thread(load_transcript_file, args.transcript)

    try:
        ok = await pipeline.start(video_id, args.title, args.duration, provider)
    finally:
        analytics.flush(forced=True)

    if not ok:
        print(f"No quizzes generated for {video_id}; transcript unavailable", file=sys.stderr)
        return 1

    _print_status(pipeline.session.tracker.status if pipeline.session else None)

    if args.output:
        entry = await pipeline.cache.get(video_id)
        if entry is not None:
            args.output.parent.mkdir(parents=True, exist_ok=True)
            with open(args.output, 'w', encoding='utf-8') as f:
                json.dump(entry.to_dict(), f, indent=2)
            print(f"Wrote {args.output}")
    return 0


async def cmd_info(config: AppConfig, store: KeyValueStore) -> int:
    report = await get_diagnostics(QuizCache(store), config)
    print(json.dumps(report, indent=2))
    return 0


async def cmd_clear(args, store: KeyValueStore) -> int:
    video_id = resolve_video_id(args.video)
    await QuizCache(store).clear(video_id)
    print(f"Cleared {video_id}")
    return 0


async def cmd_clear_all(store: KeyValueStore) -> int:
    removed = await clear_all_cache(store)
    print(f"Cleared {removed} cache items")
    return 0


async def run(args) -> int:
    config = AppConfig()
    store = KeyValueStore()
    try:
        if args.command == "generate":
            return await cmd_generate(args, config, store)
        if args.command == "info":
            return await cmd_info(config, store)
        if args.command == "clear":
            return await cmd_clear(args, store)
        if args.command == "clear-all":
            return await cmd_clear_all(store)
        return 2
    finally:
        store.close()


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    logger.info("=" * 60)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())
    logger.info("Python: %s", sys.executable)
    logger.info("Command: %s", args.command)
    logger.info("=" * 60)

    try:
        sys.exit(asyncio.run(run(args)))
    except QuizError as e:
        logger.error("%s", e)
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(2)
    except Exception as e:
        error_msg = f"{type(e).__name__}: {e}"
        logger.critical("Fatal error: %s\n%s", error_msg, traceback.format_exc())
        print(f"Fatal error: {error_msg}\nCheck logs at: {LOG_FILE}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
