"""Persistent key/value state for the narration pipeline."""

import json
import sqlite3
import threading
from datetime import datetime
from typing import Any, Optional

from .logger import Logger

COOLDOWN_TRACKER = "cooldown-tracker"
PRELOAD_STATUS = "preload-status"
ANALYTICS_QUEUE = "analytics-queue"
LAST_SYNC = "last-sync"


class KeyValueStore:
    """SQLite-backed JSON key/value store.

    Each key is owned by a single component. If the database cannot be
    opened or a write fails, the store keeps working from an in-memory copy
    for the rest of the session and logs the failure.
    """

    def __init__(self, db_path: str = "narrator_state.db", logger: Optional[Logger] = None):
        self.db_path = db_path
        self.logger = logger or Logger()
        self.conn: Optional[sqlite3.Connection] = None
        self._memory: dict[str, str] = {}
        self._lock = threading.Lock()
        try:
            self.conn = sqlite3.connect(db_path, check_same_thread=False)
            self._init_schema()
        except sqlite3.Error as e:
            self._degrade("open", e)

    @property
    def degraded(self) -> bool:
        """True once the store has fallen back to memory"""
        return self.conn is None

    def _init_schema(self):
        """Create database tables"""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self.conn.commit()

    def _degrade(self, operation: str, error: Exception):
        self.logger.log("Storage failure, continuing in memory",
                        {"operation": operation, "db": self.db_path, "error": str(error)})
        if self.conn is not None:
            # Carry what is readable into memory before dropping the connection
            try:
                for key, value in self.conn.execute("SELECT key, value FROM kv_state"):
                    self._memory.setdefault(key, value)
            except sqlite3.Error:
                pass
            try:
                self.conn.close()
            except sqlite3.Error:
                pass
        self.conn = None

    def get(self, key: str, default: Any = None) -> Any:
        """Decoded value for key, or default when absent"""
        with self._lock:
            raw = None
            if self.conn is not None:
                try:
                    row = self.conn.execute(
                        "SELECT value FROM kv_state WHERE key = ?", (key,)
                    ).fetchone()
                    raw = row[0] if row else None
                except sqlite3.Error as e:
                    self._degrade("get", e)
            if self.conn is None:
                raw = self._memory.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            self.logger.log("Corrupt stored value ignored", {"key": key})
            return default

    def set(self, key: str, value: Any):
        raw = json.dumps(value)
        now = datetime.now().isoformat()
        with self._lock:
            if self.conn is not None:
                try:
                    self.conn.execute("""
                        INSERT INTO kv_state (key, value, updated_at) VALUES (?, ?, ?)
                        ON CONFLICT(key) DO UPDATE SET value = ?, updated_at = ?
                    """, (key, raw, now, raw, now))
                    self.conn.commit()
                    return
                except sqlite3.Error as e:
                    self._degrade("set", e)
            self._memory[key] = raw

    def delete(self, key: str):
        with self._lock:
            if self.conn is not None:
                try:
                    self.conn.execute("DELETE FROM kv_state WHERE key = ?", (key,))
                    self.conn.commit()
                    return
                except sqlite3.Error as e:
                    self._degrade("delete", e)
            self._memory.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            if self.conn is not None:
                try:
                    return [row[0] for row in self.conn.execute("SELECT key FROM kv_state")]
                except sqlite3.Error as e:
                    self._degrade("keys", e)
            return list(self._memory)

    def close(self):
        with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None
