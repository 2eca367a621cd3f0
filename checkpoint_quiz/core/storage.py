"""
SQLite key-value store for CheckpointQuiz.
Values are JSON documents keyed by string. Thread-safe via
check_same_thread=False + explicit locking; the async API runs each call
in a worker thread so the event loop never blocks on disk I/O.
"""

import asyncio
import json
import sqlite3
import logging
import threading
from pathlib import Path
from typing import Any, Iterable

from checkpoint_quiz.core.constants import STORE_PATH
from checkpoint_quiz.core.error_codes import PersistenceError

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class KeyValueStore:
    """Async JSON key-value store backed by a single SQLite table."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or STORE_PATH
        self._ensure_dirs()
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._migrate()

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        cur = self.conn.cursor()
        cur.executescript(_CREATE_TABLES)
        cur.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (_SCHEMA_VERSION,),
        )
        self.conn.commit()

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None

    # ── Sync primitives (run under the lock) ──────────────────────────

    def get_sync(self, key: str) -> Any:
        with self._lock:
            row = self.conn.execute(
                "SELECT value FROM kv WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("Discarding undecodable value for %s", key)
            return None

    def set_sync(self, key: str, value: Any):
        payload = json.dumps(value)
        with self._lock:
            self.conn.execute(
                "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
                (key, payload),
            )
            self.conn.commit()

    def remove_sync(self, keys: Iterable[str]):
        keys = list(keys)
        if not keys:
            return
        with self._lock:
            self.conn.executemany("DELETE FROM kv WHERE key = ?", [(k,) for k in keys])
            self.conn.commit()

    def keys_sync(self, prefix: str = "") -> list[str]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT key FROM kv WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                (_like_prefix(prefix),),
            ).fetchall()
        return [r[0] for r in rows]

    # ── Async API ─────────────────────────────────────────────────────

    async def get(self, key: str) -> Any:
        return await self._call(self.get_sync, key)

    async def set(self, key: str, value: Any):
        await self._call(self.set_sync, key, value)

    async def remove(self, keys: str | Iterable[str]):
        if isinstance(keys, str):
            keys = [keys]
        await self._call(self.remove_sync, keys)

    async def keys(self, prefix: str = "") -> list[str]:
        return await self._call(self.keys_sync, prefix)

    async def _call(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except (sqlite3.Error, TypeError, ValueError) as e:
            raise PersistenceError(f"{fn.__name__} failed: {e}") from e


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return escaped + '%'
