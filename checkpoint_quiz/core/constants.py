"""
Shared constants for CheckpointQuiz.
Single source of truth, imported by every other module.
"""

import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "CheckpointQuiz"
APP_VERSION = "1.1.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

APP_DATA_DIR = HOME / ".local" / "share" / "checkpoint-quiz"
APP_LOG_DIR = APP_DATA_DIR / "logs"
STORE_PATH = APP_DATA_DIR / "store.db"
CONFIG_PATH = APP_DATA_DIR / "config.json"

# ── Generation status values ──────────────────────────────────────────
class UnitStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"

class OverallStatus:
    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"

SETTLED_STATUSES = {UnitStatus.COMPLETED, UnitStatus.SKIPPED}

# ── Storage keys ──────────────────────────────────────────────────────
QUIZ_PREFIX = "quiz:"
TRANSCRIPT_PREFIX = "transcript:"
LRU_KEY = "cache_lru"
STATUS_KEY = "generation_status"
PROGRESS_KEY = "progress"

CACHE_LIMIT = 10
CACHE_VERSION = "1.1"
SUPPORTED_CACHE_VERSIONS = {"1.0", "1.1"}

# ── Segmentation defaults ─────────────────────────────────────────────
BASE_SEGMENT_SEC = 180
FINAL_TRIGGER_FRACTION = 0.92
MIN_FINAL_GAP_SEC = 30
MAX_FINAL_GAP_SEC = 90
FINAL_GAP_RATIO = 0.15
SHORT_VIDEO_WINDOW_SEC = 30
MIN_SEGMENT_SEC = 60
MAX_SEGMENT_SEC = 360
DEFAULT_ENTRY_SEC = 3

# ── Scheduler defaults ────────────────────────────────────────────────
BATCH_SIZE = 3
BATCH_PAUSE_SEC = 0.2
DEFAULT_QUESTION_COUNT = 1
MAX_QUESTIONS_PER_UNIT = 4
FINAL_QUIZ_QUESTIONS_MIN = 3
FINAL_QUIZ_QUESTIONS_MAX = 5
FINAL_WAIT_TIMEOUT_SEC = 12.0
FINAL_WAIT_POLL_SEC = 0.15
MAX_MESSAGE_LEN = 2000

# ── Transcript text limits (characters) ───────────────────────────────
SUMMARY_CHUNK_CHAR_LIMIT = 4000
SUMMARY_MIN_CHUNK_CHAR_LIMIT = 1000
SUMMARY_COMBINED_CHAR_LIMIT = 6000
QUIZ_INPUT_CHAR_LIMIT = 8000
CHUNK_REDUCTION_RATIO = 0.7

# ── Analytics ─────────────────────────────────────────────────────────
ANALYTICS_FLUSH_DELAY_SEC = 15.0
ANALYTICS_MAX_BUFFERED = 8
ANALYTICS_SNAPSHOT_EVENT = "quiz_progress_snapshot"
HASH_UNAVAILABLE = "hash_unavailable"

# ── Generation backend ────────────────────────────────────────────────
GENERATION_API_BASE = "https://api.openai.com/v1"
GENERATION_MODEL = "gpt-4o-mini"
GENERATION_TEMPERATURE = 0.8
GENERATION_MAX_TOKENS = 1200
API_KEY_ENV = "CHECKPOINT_QUIZ_API_KEY"

# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Non-retryable
    GENERATION_FAILED = "ERR_GENERATION_FAILED"
    CACHE_CORRUPT = "ERR_CACHE_CORRUPT"
    INVALID_URL = "ERR_INVALID_URL"

    # Retryable
    TRANSCRIPT_UNAVAILABLE = "ERR_TRANSCRIPT_UNAVAILABLE"
    QUOTA_EXCEEDED = "ERR_QUOTA_EXCEEDED"
    PERSISTENCE = "ERR_PERSISTENCE"
    NETWORK_TRANSIENT = "ERR_NETWORK_TRANSIENT"

RETRYABLE_ERRORS = {
    ErrorCode.TRANSCRIPT_UNAVAILABLE,
    ErrorCode.QUOTA_EXCEEDED,
    ErrorCode.PERSISTENCE,
    ErrorCode.NETWORK_TRANSIENT,
}

# ── Misc ──────────────────────────────────────────────────────────────
YOUTUBE_URL_PATTERNS = [
    r'(?:https?://)?(?:www\.)?youtube\.com/watch\?v=([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?youtu\.be/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/embed/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/shorts/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?m\.youtube\.com/watch\?v=([a-zA-Z0-9_-]{11})',
]
