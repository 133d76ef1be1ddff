"""Persistence for VOD records and their download/repair status."""

from __future__ import annotations

import sqlite3
from typing import Iterable

from db.connection import connect, utc_now
from db.models import (
    DOWNLOAD_CANCELLED,
    DOWNLOAD_COMPLETED,
    DOWNLOAD_DOWNLOADING,
    DOWNLOAD_FAILED,
    DOWNLOAD_PAUSED,
    DOWNLOAD_PENDING,
    DOWNLOAD_QUEUED,
    PROCESS_COMPLETED,
    PROCESS_FAILED,
    PROCESS_PROCESSING,
    MuteInterval,
    Vod,
    dump_mute_intervals,
    parse_mute_intervals,
)

DOWNLOAD_INTERRUPTED_MESSAGE = "Download interrupted by server restart"
PROCESSING_INTERRUPTED_MESSAGE = "Processing interrupted by server restart"


class VodStore:
    def __init__(self, db_path):
        self.db_path = db_path

    def _connect(self):
        return connect(self.db_path)

    def _row_to_vod(self, row):
        if not row:
            return None
        if isinstance(row, sqlite3.Row):
            row = dict(row)
        return Vod(
            id=row["id"],
            title=row["title"],
            url=row["url"],
            duration_seconds=int(row["duration_seconds"] or 0),
            created_at=row["created_at"],
            download_status=row["download_status"] or DOWNLOAD_PENDING,
            download_progress=float(row["download_progress"] or 0),
            file_path=row["file_path"],
            retry_count=int(row["retry_count"] or 0),
            last_attempt_at=row.get("last_attempt_at"),
            error_message=row.get("error_message"),
            process_status=row["process_status"],
            process_progress=float(row["process_progress"] or 0),
            processed_file_path=row["processed_file_path"],
            muted_segments=parse_mute_intervals(row["muted_segments"]),
            discovered_at=row.get("discovered_at"),
        )

    def _execute(self, sql, params=()):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(sql, params)
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    def get(self, vod_id):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM vods WHERE id=?", (vod_id,))
            return self._row_to_vod(cur.fetchone())
        finally:
            conn.close()

    def exists(self, vod_id):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT 1 FROM vods WHERE id=? LIMIT 1", (vod_id,))
            return cur.fetchone() is not None
        finally:
            conn.close()

    def list_vods(self):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM vods ORDER BY created_at DESC")
            return [self._row_to_vod(row) for row in cur.fetchall()]
        finally:
            conn.close()

    def list_processed(self):
        """Repair-completed VODs, most recent first."""
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT * FROM vods WHERE process_status=? ORDER BY created_at DESC",
                (PROCESS_COMPLETED,),
            )
            return [self._row_to_vod(row) for row in cur.fetchall()]
        finally:
            conn.close()

    def insert_vod(
        self,
        *,
        vod_id,
        title,
        url,
        duration_seconds,
        created_at,
        muted_segments: Iterable[MuteInterval] = (),
        download_status=DOWNLOAD_PENDING,
    ):
        """Insert a newly discovered VOD. Returns False when the id already exists."""
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT OR IGNORE INTO vods (
                    id, title, url, duration_seconds, created_at,
                    download_status, muted_segments, discovered_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    vod_id,
                    title,
                    url,
                    int(duration_seconds or 0),
                    created_at,
                    download_status,
                    dump_mute_intervals(list(muted_segments)),
                    utc_now(),
                ),
            )
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def select_next_candidate(self, max_retries, exclude=()):
        """Pick the next VOD eligible for download, or ``None``."""
        exclude = list(exclude)
        params = [
            DOWNLOAD_QUEUED,
            DOWNLOAD_PAUSED,
            DOWNLOAD_FAILED,
            max_retries,
            *exclude,
            DOWNLOAD_QUEUED,
            DOWNLOAD_PAUSED,
            DOWNLOAD_FAILED,
        ]
        excluded_clause = ""
        if exclude:
            excluded_clause = f"AND id NOT IN ({', '.join('?' for _ in exclude)})"
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                f"""
                SELECT * FROM vods
                WHERE download_status IN (?, ?, ?)
                  AND retry_count < ?
                  {excluded_clause}
                ORDER BY
                  CASE download_status
                    WHEN ? THEN 0
                    WHEN ? THEN 1
                    WHEN ? THEN 2
                  END,
                  created_at DESC
                LIMIT 1
                """,
                params,
            )
            return self._row_to_vod(cur.fetchone())
        finally:
            conn.close()

    def count_by_download_status(self):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT download_status, COUNT(*) AS n FROM vods GROUP BY download_status")
            return {row["download_status"]: row["n"] for row in cur.fetchall()}
        finally:
            conn.close()

    def mark_queued(self, vod_id, *, reset_retries=False):
        now = utc_now()
        if reset_retries:
            return self._execute(
                """
                UPDATE vods
                SET download_status=?, retry_count=0, error_message=NULL, last_attempt_at=?
                WHERE id=?
                """,
                (DOWNLOAD_QUEUED, now, vod_id),
            )
        return self._execute(
            "UPDATE vods SET download_status=?, last_attempt_at=? WHERE id=?",
            (DOWNLOAD_QUEUED, now, vod_id),
        )

    def mark_downloading(self, vod_id):
        return self._execute(
            """
            UPDATE vods
            SET download_status=?, download_progress=0, last_attempt_at=?
            WHERE id=?
            """,
            (DOWNLOAD_DOWNLOADING, utc_now(), vod_id),
        )

    def update_download_progress(self, vod_id, progress):
        return self._execute(
            "UPDATE vods SET download_progress=? WHERE id=? AND download_status=?",
            (max(0.0, min(100.0, float(progress))), vod_id, DOWNLOAD_DOWNLOADING),
        )

    def mark_download_completed(self, vod_id, file_path):
        return self._execute(
            """
            UPDATE vods
            SET download_status=?, download_progress=100, file_path=?, error_message=NULL
            WHERE id=?
            """,
            (DOWNLOAD_COMPLETED, file_path, vod_id),
        )

    def reset_retry_count(self, vod_id):
        return self._execute(
            "UPDATE vods SET retry_count=0, error_message=NULL WHERE id=?",
            (vod_id,),
        )

    def mark_download_failed(self, vod_id, error_message):
        return self._execute(
            "UPDATE vods SET download_status=?, error_message=? WHERE id=?",
            (DOWNLOAD_FAILED, error_message, vod_id),
        )

    def record_download_failure(self, vod_id, *, error_message, max_retries, exhaust=False):
        """Count a failed attempt and return the resulting status.

        The VOD goes back to ``queued`` while attempts remain, otherwise it is
        terminally ``failed``. ``exhaust`` spends the whole retry budget.
        """
        now = utc_now()
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT retry_count FROM vods WHERE id=?", (vod_id,))
            row = cur.fetchone()
            if row is None:
                return None
            retry_count = max_retries if exhaust else int(row["retry_count"] or 0) + 1
            status = DOWNLOAD_QUEUED if retry_count < max_retries else DOWNLOAD_FAILED
            cur.execute(
                """
                UPDATE vods
                SET download_status=?, retry_count=?, error_message=?, last_attempt_at=?
                WHERE id=?
                """,
                (status, retry_count, error_message, now, vod_id),
            )
            conn.commit()
            return status
        finally:
            conn.close()

    def mark_paused(self, vod_id):
        return self._execute(
            "UPDATE vods SET download_status=? WHERE id=?",
            (DOWNLOAD_PAUSED, vod_id),
        )

    def mark_cancelled(self, vod_id):
        return self._execute(
            "UPDATE vods SET download_status=?, error_message=NULL WHERE id=?",
            (DOWNLOAD_CANCELLED, vod_id),
        )

    def mark_processing(self, vod_id):
        return self._execute(
            """
            UPDATE vods
            SET process_status=?, process_progress=0, error_message=NULL
            WHERE id=? AND download_status=?
            """,
            (PROCESS_PROCESSING, vod_id, DOWNLOAD_COMPLETED),
        )

    def update_process_progress(self, vod_id, progress):
        return self._execute(
            "UPDATE vods SET process_progress=? WHERE id=? AND process_status=?",
            (max(0.0, min(100.0, float(progress))), vod_id, PROCESS_PROCESSING),
        )

    def mark_process_completed(self, vod_id, processed_file_path):
        return self._execute(
            """
            UPDATE vods
            SET process_status=?, process_progress=100, processed_file_path=?, error_message=NULL
            WHERE id=?
            """,
            (PROCESS_COMPLETED, processed_file_path, vod_id),
        )

    def mark_process_failed(self, vod_id, error_message):
        return self._execute(
            "UPDATE vods SET process_status=?, error_message=? WHERE id=?",
            (PROCESS_FAILED, error_message, vod_id),
        )

    def set_muted_segments(self, vod_id, intervals):
        return self._execute(
            "UPDATE vods SET muted_segments=? WHERE id=?",
            (dump_mute_intervals(intervals), vod_id),
        )

    def recover_interrupted(self, max_retries):
        """Demote records left mid-flight by a restart.

        ``downloading`` goes back to ``queued`` while retries remain, otherwise
        ``failed``; ``processing`` always becomes ``failed``. Running it twice
        is the same as running it once.
        """
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE vods
                SET download_status=CASE WHEN retry_count < ? THEN ? ELSE ? END,
                    error_message=?,
                    download_progress=0
                WHERE download_status=?
                """,
                (
                    max_retries,
                    DOWNLOAD_QUEUED,
                    DOWNLOAD_FAILED,
                    DOWNLOAD_INTERRUPTED_MESSAGE,
                    DOWNLOAD_DOWNLOADING,
                ),
            )
            downloads = cur.rowcount
            cur.execute(
                "UPDATE vods SET process_status=?, error_message=? WHERE process_status=?",
                (PROCESS_FAILED, PROCESSING_INTERRUPTED_MESSAGE, PROCESS_PROCESSING),
            )
            processing = cur.rowcount
            conn.commit()
            return downloads, processing
        finally:
            conn.close()

    def delete_inactive(self):
        """Delete every record that is not mid-download or mid-repair; returns deleted ids."""
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT id FROM vods WHERE download_status!=? AND process_status!=?",
                (DOWNLOAD_DOWNLOADING, PROCESS_PROCESSING),
            )
            ids = [row["id"] for row in cur.fetchall()]
            cur.executemany("DELETE FROM playlist WHERE vod_id=?", [(vod_id,) for vod_id in ids])
            cur.executemany("DELETE FROM vods WHERE id=?", [(vod_id,) for vod_id in ids])
            conn.commit()
            return ids
        finally:
            conn.close()
