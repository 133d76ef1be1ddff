"""Connection and timestamp helpers shared by the stores."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

from db.migrations import ensure_schema


def utc_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def seconds_since(value: str | None, *, now: datetime | None = None) -> int:
    started = parse_timestamp(value)
    if started is None:
        return 0
    now = now or datetime.now(timezone.utc)
    return max(0, int((now - started).total_seconds()))


def connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(db_path: str) -> None:
    conn = connect(db_path)
    try:
        ensure_schema(conn)
    finally:
        conn.close()
