"""
Application configuration manager.
Stores settings in a JSON file under the app data directory.
"""

import json
import logging
import os
from pathlib import Path

from checkpoint_quiz.core.constants import (
    CONFIG_PATH, API_KEY_ENV,
    DEFAULT_QUESTION_COUNT, MAX_QUESTIONS_PER_UNIT,
    BASE_SEGMENT_SEC, FINAL_TRIGGER_FRACTION, BATCH_SIZE,
    GENERATION_API_BASE, GENERATION_MODEL,
)

# Validation bounds
_QUESTION_COUNT_MIN = 1
_BASE_SEGMENT_MIN = 60          # 1 minute
_BASE_SEGMENT_MAX = 600         # 10 minutes
_TRIGGER_FRACTION_MIN = 0.5
_TRIGGER_FRACTION_MAX = 0.99
_BATCH_SIZE_MIN = 1
_BATCH_SIZE_MAX = 8

_BOOL_KEYS = ('final_quiz_enabled', 'analytics_enabled', 'auto_quiz', 'enabled')

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'question_count': DEFAULT_QUESTION_COUNT,
    'final_quiz_enabled': True,
    'analytics_enabled': True,
    'auto_quiz': True,
    'enabled': True,
    'base_segment_sec': BASE_SEGMENT_SEC,
    'final_trigger_fraction': FINAL_TRIGGER_FRACTION,
    'batch_size': BATCH_SIZE,
    'generation_api_base': GENERATION_API_BASE,
    'generation_model': GENERATION_MODEL,
    'telemetry_url': '',
}


def _clamp_int(key: str, value, low: int, high: int, default: int) -> int:
    try:
        value = int(value)
    except (TypeError, ValueError):
        logger.warning("Invalid %s %r, using default", key, value)
        return default
    return max(low, min(high, value))


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None):
        self.path = config_path or CONFIG_PATH
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults. Saved values are re-validated."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                if not isinstance(saved, dict):
                    raise ValueError("config root is not an object")
                for key, value in saved.items():
                    self._data[key] = self._validate(key, value)
            except (OSError, ValueError) as e:
                logger.warning("Failed to load config: %s", e)

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def reset(self):
        """Restore defaults and persist them."""
        self._data = dict(_DEFAULTS)
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key == 'question_count':
            return _clamp_int(key, value, _QUESTION_COUNT_MIN, MAX_QUESTIONS_PER_UNIT,
                              DEFAULT_QUESTION_COUNT)

        if key == 'base_segment_sec':
            return _clamp_int(key, value, _BASE_SEGMENT_MIN, _BASE_SEGMENT_MAX, BASE_SEGMENT_SEC)

        if key == 'batch_size':
            return _clamp_int(key, value, _BATCH_SIZE_MIN, _BATCH_SIZE_MAX, BATCH_SIZE)

        if key == 'final_trigger_fraction':
            try:
                value = float(value)
            except (TypeError, ValueError):
                logger.warning("Invalid final_trigger_fraction %r, using default", value)
                return FINAL_TRIGGER_FRACTION
            return max(_TRIGGER_FRACTION_MIN, min(_TRIGGER_FRACTION_MAX, value))

        if key in _BOOL_KEYS:
            return bool(value)

        if key in ('generation_api_base', 'telemetry_url'):
            return str(value or '').rstrip('/')

        return value

    def as_dict(self) -> dict:
        return dict(self._data)

    @property
    def question_count(self) -> int:
        return self._data.get('question_count', DEFAULT_QUESTION_COUNT)

    @property
    def final_quiz_enabled(self) -> bool:
        return self._data.get('final_quiz_enabled', True)

    @property
    def analytics_enabled(self) -> bool:
        return self._data.get('analytics_enabled', True)

    @analytics_enabled.setter
    def analytics_enabled(self, value: bool):
        self.set('analytics_enabled', value)

    @property
    def base_segment_sec(self) -> int:
        return self._data.get('base_segment_sec', BASE_SEGMENT_SEC)

    @property
    def final_trigger_fraction(self) -> float:
        return self._data.get('final_trigger_fraction', FINAL_TRIGGER_FRACTION)

    @property
    def batch_size(self) -> int:
        return self._data.get('batch_size', BATCH_SIZE)

    @property
    def api_key(self) -> str | None:
        return os.environ.get(API_KEY_ENV) or None
