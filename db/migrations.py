"""SQLite schema for VOD records, stream state and the playlist."""

from __future__ import annotations

import sqlite3


def ensure_vods_table(conn: sqlite3.Connection) -> None:
    """Ensure the VOD record table, its additive columns and indexes exist."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS vods (
            id TEXT PRIMARY KEY,
            title TEXT,
            url TEXT,
            duration_seconds INTEGER NOT NULL DEFAULT 0,
            created_at TEXT,
            download_status TEXT NOT NULL DEFAULT 'pending',
            download_progress REAL NOT NULL DEFAULT 0,
            file_path TEXT,
            retry_count INTEGER NOT NULL DEFAULT 0,
            last_attempt_at TEXT,
            error_message TEXT,
            process_status TEXT NOT NULL DEFAULT 'pending',
            process_progress REAL NOT NULL DEFAULT 0,
            processed_file_path TEXT,
            muted_segments TEXT,
            discovered_at TEXT
        )
        """
    )
    cur.execute("PRAGMA table_info(vods)")
    existing_columns = {row[1] for row in cur.fetchall()}
    for column in ("last_attempt_at", "error_message", "discovered_at"):
        if column not in existing_columns:
            cur.execute(f"ALTER TABLE vods ADD COLUMN {column} TEXT")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_vods_download_status ON vods (download_status)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_vods_process_status ON vods (process_status)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_vods_created ON vods (created_at)")
    conn.commit()


def ensure_stream_state_table(conn: sqlite3.Connection) -> None:
    """Ensure the singleton stream-state row exists."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS stream_state (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            is_streaming INTEGER NOT NULL DEFAULT 0,
            current_vod_id TEXT,
            stream_started_at TEXT,
            current_vod_started_at TEXT,
            last_vod_id TEXT,
            last_vod_index INTEGER,
            last_scan_at TEXT,
            playlist_updated_at TEXT
        )
        """
    )
    cur.execute("INSERT OR IGNORE INTO stream_state (id) VALUES (1)")
    conn.commit()


def ensure_playlist_table(conn: sqlite3.Connection) -> None:
    """Ensure the ordered playlist table and its indexes exist."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS playlist (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            vod_id TEXT NOT NULL UNIQUE,
            position INTEGER NOT NULL,
            added_at TEXT,
            FOREIGN KEY (vod_id) REFERENCES vods(id) ON DELETE CASCADE
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_playlist_position ON playlist (position)")
    conn.commit()


def ensure_schema(conn: sqlite3.Connection) -> None:
    ensure_vods_table(conn)
    ensure_stream_state_table(conn)
    ensure_playlist_table(conn)
