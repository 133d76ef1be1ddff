import sys
from pathlib import Path

import pytest


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from db.connection import init_db  # noqa: E402
from db.models import DOWNLOAD_QUEUED  # noqa: E402
from db.playlist import PlaylistStore  # noqa: E402
from db.stream_state import StreamStateStore  # noqa: E402
from db.vods import VodStore  # noqa: E402


class RecordingEvents:
    """Stand-in for EventBroadcaster that keeps every published event."""

    def __init__(self):
        self.published = []

    def publish(self, event_type, **payload):
        envelope = {"type": event_type, **payload}
        self.published.append(envelope)
        return envelope

    def types(self):
        return [event["type"] for event in self.published]

    def of_type(self, event_type):
        return [event for event in self.published if event["type"] == event_type]


@pytest.fixture
def db_path(tmp_path) -> str:
    path = str(tmp_path / "rerunr.sqlite")
    init_db(path)
    return path


@pytest.fixture
def vod_store(db_path) -> VodStore:
    return VodStore(db_path)


@pytest.fixture
def playlist_store(db_path) -> PlaylistStore:
    return PlaylistStore(db_path)


@pytest.fixture
def stream_state(db_path) -> StreamStateStore:
    return StreamStateStore(db_path)


@pytest.fixture
def events() -> RecordingEvents:
    return RecordingEvents()


@pytest.fixture
def seed_vod(vod_store, tmp_path):
    """Insert a VOD record, optionally with a downloaded and a processed file on disk."""

    def _seed(
        vod_id,
        *,
        created_at="2024-01-01T00:00:00+00:00",
        duration_seconds=3600,
        status=DOWNLOAD_QUEUED,
        downloaded=False,
        processed=False,
        muted_segments=(),
    ):
        vod_store.insert_vod(
            vod_id=vod_id,
            title=f"VOD {vod_id}",
            url=f"https://www.twitch.tv/videos/{vod_id}",
            duration_seconds=duration_seconds,
            created_at=created_at,
            muted_segments=muted_segments,
            download_status=status,
        )
        if downloaded or processed:
            source = tmp_path / "vods" / f"{vod_id}.mp4"
            source.parent.mkdir(parents=True, exist_ok=True)
            source.write_bytes(b"source-" + vod_id.encode())
            vod_store.mark_download_completed(vod_id, str(source))
        if processed:
            target = tmp_path / "processed" / f"{vod_id}_processed.mp4"
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(b"processed-" + vod_id.encode())
            vod_store.mark_process_completed(vod_id, str(target))
        return vod_store.get(vod_id)

    return _seed
