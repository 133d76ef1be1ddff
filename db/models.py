"""Record types persisted by the VOD, stream-state and playlist stores."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any

DOWNLOAD_PENDING = "pending"
DOWNLOAD_QUEUED = "queued"
DOWNLOAD_DOWNLOADING = "downloading"
DOWNLOAD_PAUSED = "paused"
DOWNLOAD_COMPLETED = "completed"
DOWNLOAD_FAILED = "failed"
DOWNLOAD_CANCELLED = "cancelled"

PROCESS_PENDING = "pending"
PROCESS_PROCESSING = "processing"
PROCESS_COMPLETED = "completed"
PROCESS_FAILED = "failed"


@dataclass(frozen=True)
class MuteInterval:
    offset: float
    duration: float

    @property
    def end(self) -> float:
        return self.offset + self.duration

    def to_dict(self) -> dict[str, float]:
        return {"offset": self.offset, "duration": self.duration}


def parse_mute_intervals(raw: Any) -> list[MuteInterval]:
    """Decode mute intervals from a JSON string or a list of ``{offset, duration}`` dicts."""
    if raw in (None, ""):
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return []
    intervals: list[MuteInterval] = []
    for item in raw or []:
        if isinstance(item, MuteInterval):
            intervals.append(item)
            continue
        if not isinstance(item, dict):
            continue
        try:
            offset = float(item.get("offset"))
            duration = float(item.get("duration"))
        except (TypeError, ValueError):
            continue
        if duration <= 0 or offset < 0:
            continue
        intervals.append(MuteInterval(offset=offset, duration=duration))
    intervals.sort(key=lambda interval: interval.offset)
    return intervals


def dump_mute_intervals(intervals) -> str:
    return json.dumps([interval.to_dict() for interval in intervals or []])


@dataclass(frozen=True)
class Vod:
    id: str
    title: str | None
    url: str | None
    duration_seconds: int
    created_at: str | None
    download_status: str = DOWNLOAD_PENDING
    download_progress: float = 0.0
    file_path: str | None = None
    retry_count: int = 0
    last_attempt_at: str | None = None
    error_message: str | None = None
    process_status: str = PROCESS_PENDING
    process_progress: float = 0.0
    processed_file_path: str | None = None
    muted_segments: list[MuteInterval] = field(default_factory=list)
    discovered_at: str | None = None

    @property
    def is_downloaded(self) -> bool:
        return (
            self.download_status == DOWNLOAD_COMPLETED
            and bool(self.file_path)
            and os.path.exists(self.file_path)
        )

    @property
    def is_processed(self) -> bool:
        return (
            self.process_status == PROCESS_COMPLETED
            and bool(self.processed_file_path)
            and os.path.exists(self.processed_file_path)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "url": self.url,
            "duration_seconds": self.duration_seconds,
            "created_at": self.created_at,
            "download_status": self.download_status,
            "download_progress": self.download_progress,
            "file_path": self.file_path,
            "retry_count": self.retry_count,
            "last_attempt_at": self.last_attempt_at,
            "error_message": self.error_message,
            "process_status": self.process_status,
            "process_progress": self.process_progress,
            "processed_file_path": self.processed_file_path,
            "muted_segments": [interval.to_dict() for interval in self.muted_segments],
            "discovered_at": self.discovered_at,
        }


@dataclass(frozen=True)
class StreamState:
    is_streaming: bool = False
    current_vod_id: str | None = None
    stream_started_at: str | None = None
    current_vod_started_at: str | None = None
    last_vod_id: str | None = None
    last_vod_index: int | None = None
    last_scan_at: str | None = None
    playlist_updated_at: str | None = None


@dataclass(frozen=True)
class PlaylistEntry:
    vod_id: str
    position: int
    added_at: str | None
    title: str | None = None
    duration_seconds: int = 0
    processed_file_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "vod_id": self.vod_id,
            "position": self.position,
            "added_at": self.added_at,
            "title": self.title,
            "duration_seconds": self.duration_seconds,
            "processed_file_path": self.processed_file_path,
        }
