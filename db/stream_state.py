"""Persistence for the singleton stream-state row."""

from __future__ import annotations

from db.connection import connect
from db.models import StreamState

_COLUMNS = (
    "is_streaming",
    "current_vod_id",
    "stream_started_at",
    "current_vod_started_at",
    "last_vod_id",
    "last_vod_index",
    "last_scan_at",
    "playlist_updated_at",
)


class StreamStateStore:
    def __init__(self, db_path):
        self.db_path = db_path

    def get(self) -> StreamState:
        conn = connect(self.db_path)
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM stream_state WHERE id=1")
            row = cur.fetchone()
            if row is None:
                return StreamState()
            data = dict(row)
            return StreamState(
                is_streaming=bool(data["is_streaming"]),
                current_vod_id=data["current_vod_id"],
                stream_started_at=data["stream_started_at"],
                current_vod_started_at=data["current_vod_started_at"],
                last_vod_id=data["last_vod_id"],
                last_vod_index=data["last_vod_index"],
                last_scan_at=data["last_scan_at"],
                playlist_updated_at=data["playlist_updated_at"],
            )
        finally:
            conn.close()

    def update(self, **fields) -> None:
        """Update columns of the singleton row in one statement."""
        unknown = set(fields) - set(_COLUMNS)
        if unknown:
            raise ValueError(f"unknown stream_state columns: {sorted(unknown)}")
        if not fields:
            return
        if "is_streaming" in fields:
            fields["is_streaming"] = 1 if fields["is_streaming"] else 0
        assignments = ", ".join(f"{column}=?" for column in fields)
        conn = connect(self.db_path)
        try:
            cur = conn.cursor()
            cur.execute(f"UPDATE stream_state SET {assignments} WHERE id=1", tuple(fields.values()))
            conn.commit()
        finally:
            conn.close()

    def clear_resume_pointer_unless(self, vod_ids) -> bool:
        """Clear ``last_vod_id``/``last_vod_index`` when the tracked VOD is not in ``vod_ids``."""
        state = self.get()
        if state.last_vod_id and state.last_vod_id not in set(vod_ids):
            self.update(last_vod_id=None, last_vod_index=None)
            return True
        return False
