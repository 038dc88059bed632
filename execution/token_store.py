"""Durable key → payload stores for resume tokens."""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from typing import Any


class ResumeTokenStore(ABC):
    """Key-value store with TTL. Expired entries read as missing."""

    @abstractmethod
    def put(self, handle: str, payload: dict[str, Any], ttl_seconds: float) -> None:
        """Persist ``payload`` under ``handle`` for ``ttl_seconds``."""

    @abstractmethod
    def get(self, handle: str) -> dict[str, Any] | None:
        """Return the payload, or None when missing or expired."""

    @abstractmethod
    def delete(self, handle: str) -> None:
        """Remove ``handle`` if present."""

    def close(self) -> None:
        """Release store resources."""


class InMemoryResumeTokenStore(ResumeTokenStore):
    """Process-local store, suitable for tests and single-process hosts."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[float, dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def put(self, handle: str, payload: dict[str, Any], ttl_seconds: float) -> None:
        with self._lock:
            self._entries[handle] = (time.time() + ttl_seconds, dict(payload))

    def get(self, handle: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._entries.get(handle)
            if entry is None:
                return None
            expires_at, payload = entry
            if time.time() > expires_at:
                self._entries.pop(handle, None)
                return None
            return dict(payload)

    def delete(self, handle: str) -> None:
        with self._lock:
            self._entries.pop(handle, None)

    def __len__(self) -> int:
        return len(self._entries)


class SQLiteResumeTokenStore(ResumeTokenStore):
    """SQLite-backed store for resume tokens."""

    def __init__(self, db_path: str = "resume_tokens.db"):
        self.db_path = db_path
        self._conn = sqlite3.connect(
            db_path,
            check_same_thread=False,
            isolation_level="DEFERRED",
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS resume_tokens (
                handle TEXT PRIMARY KEY,
                payload_json TEXT NOT NULL,
                expires_at REAL NOT NULL,
                created_at REAL NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_resume_tokens_expires_at
            ON resume_tokens(expires_at)
            """
        )
        self._conn.commit()

    def put(self, handle: str, payload: dict[str, Any], ttl_seconds: float) -> None:
        now = time.time()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO resume_tokens (handle, payload_json, expires_at, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(handle) DO UPDATE SET
                    payload_json=excluded.payload_json,
                    expires_at=excluded.expires_at,
                    created_at=excluded.created_at
                """,
                (handle, json.dumps(payload, ensure_ascii=False), now + ttl_seconds, now),
            )
            self._conn.commit()

    def get(self, handle: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT payload_json, expires_at FROM resume_tokens WHERE handle = ?",
                (handle,),
            ).fetchone()
            if row is None:
                return None
            if time.time() > float(row["expires_at"]):
                self._conn.execute("DELETE FROM resume_tokens WHERE handle = ?", (handle,))
                self._conn.commit()
                return None
        return json.loads(row["payload_json"])

    def delete(self, handle: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM resume_tokens WHERE handle = ?", (handle,))
            self._conn.commit()

    def purge_expired(self) -> int:
        """Delete every expired token. Returns the number removed."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM resume_tokens WHERE expires_at < ?", (time.time(),))
            self._conn.commit()
            return cursor.rowcount

    def close(self) -> None:
        self._conn.close()
