from __future__ import annotations

import logging
import os
import sqlite3
from datetime import datetime, timezone
from threading import Lock
from typing import Any


log = logging.getLogger("splat.events")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path(path: str) -> str:
    """Return a path usable by sqlite.

    If the configured path is a directory (docker creates one for a missing
    bind-mounted file), the journal lives inside it.
    """
    if path == ":memory:":
        return path
    p = os.path.abspath(path)
    if os.path.isdir(p):
        p = os.path.join(p, "splat-events.db")
    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)
    return p


class EventLog:
    """Append-only lifecycle journal.

    Every event is also emitted on the ``splat.events`` logger. The journal is
    for operators (status API, CLI); nothing reads it back to restore state.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self._lock = Lock()
        self._conn = sqlite3.connect(_resolve_db_path(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock, self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  uid TEXT,
                  message TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_uid ON events(uid);
                """
            )

    def log_event(self, level: str, message: str, uid: str | None = None) -> None:
        level = level.upper()
        log.log(_LEVELS.get(level, logging.INFO), "%s%s", f"[{uid}] " if uid else "", message)
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO events (ts, level, uid, message) VALUES (?, ?, ?, ?)",
                (utc_now(), level, uid, message),
            )

    def latest(self, limit: int = 100, uid: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            if uid:
                rows = self._conn.execute(
                    "SELECT * FROM events WHERE uid=? ORDER BY id DESC LIMIT ?", (uid, limit)
                ).fetchall()
            else:
                rows = self._conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
