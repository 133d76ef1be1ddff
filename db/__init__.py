"""Database helpers for rerunr."""

from db.connection import init_db
from db.playlist import PlaylistStore
from db.stream_state import StreamStateStore
from db.vods import VodStore

__all__ = ["PlaylistStore", "StreamStateStore", "VodStore", "init_db"]
