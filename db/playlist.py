"""Persistence for the ordered playlist table.

Positions are dense and zero-based after every write.
"""

from __future__ import annotations

from db.connection import connect, utc_now
from db.models import PlaylistEntry


class PlaylistStore:
    def __init__(self, db_path):
        self.db_path = db_path

    def list_entries(self) -> list[PlaylistEntry]:
        conn = connect(self.db_path)
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT p.vod_id, p.position, p.added_at,
                       v.title, v.duration_seconds, v.processed_file_path
                FROM playlist p
                JOIN vods v ON p.vod_id = v.id
                ORDER BY p.position ASC
                """
            )
            return [
                PlaylistEntry(
                    vod_id=row["vod_id"],
                    position=int(row["position"]),
                    added_at=row["added_at"],
                    title=row["title"],
                    duration_seconds=int(row["duration_seconds"] or 0),
                    processed_file_path=row["processed_file_path"],
                )
                for row in cur.fetchall()
            ]
        finally:
            conn.close()

    def contains(self, vod_id) -> bool:
        conn = connect(self.db_path)
        try:
            cur = conn.cursor()
            cur.execute("SELECT 1 FROM playlist WHERE vod_id=? LIMIT 1", (vod_id,))
            return cur.fetchone() is not None
        finally:
            conn.close()

    def replace_all(self, vod_ids) -> int:
        """Clear the playlist and insert ``vod_ids`` at positions ``0..n-1``."""
        now = utc_now()
        conn = connect(self.db_path)
        try:
            cur = conn.cursor()
            cur.execute("DELETE FROM playlist")
            cur.executemany(
                "INSERT INTO playlist (vod_id, position, added_at) VALUES (?, ?, ?)",
                [(vod_id, position, now) for position, vod_id in enumerate(vod_ids)],
            )
            conn.commit()
            return len(vod_ids)
        finally:
            conn.close()

    def append(self, vod_id) -> int:
        conn = connect(self.db_path)
        try:
            cur = conn.cursor()
            cur.execute("SELECT COALESCE(MAX(position), -1) + 1 AS next_position FROM playlist")
            position = int(cur.fetchone()["next_position"])
            cur.execute(
                "INSERT INTO playlist (vod_id, position, added_at) VALUES (?, ?, ?)",
                (vod_id, position, utc_now()),
            )
            conn.commit()
            return position
        finally:
            conn.close()

    def remove(self, vod_ids) -> int:
        """Delete entries for ``vod_ids`` and renumber the rest; returns rows removed."""
        conn = connect(self.db_path)
        try:
            cur = conn.cursor()
            removed = 0
            for vod_id in vod_ids:
                cur.execute("DELETE FROM playlist WHERE vod_id=?", (vod_id,))
                removed += cur.rowcount
            _renumber(cur)
            conn.commit()
            return removed
        finally:
            conn.close()

    def renumber(self) -> None:
        conn = connect(self.db_path)
        try:
            _renumber(conn.cursor())
            conn.commit()
        finally:
            conn.close()


def _renumber(cur) -> None:
    cur.execute("SELECT vod_id FROM playlist ORDER BY position ASC, id ASC")
    remaining = [row["vod_id"] for row in cur.fetchall()]
    cur.executemany(
        "UPDATE playlist SET position=? WHERE vod_id=?",
        [(index, vod_id) for index, vod_id in enumerate(remaining)],
    )
