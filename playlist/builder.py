"""Playlist builder: the ordered, capacity-bounded set of repaired VODs."""

from __future__ import annotations

import logging

from db.connection import utc_now
from db.playlist import PlaylistStore
from db.stream_state import StreamStateStore
from db.vods import VodStore
from engine.errors import CapacityExceededError, InvalidStateError, NotFoundError
from engine.events import EventBroadcaster

logger = logging.getLogger(__name__)


def select_within_capacity(vods, capacity_seconds: int) -> list:
    """Greedily take ``vods`` in order until the next one would exceed the cap."""
    selected = []
    total = 0
    for vod in vods:
        if total + vod.duration_seconds > capacity_seconds:
            break
        selected.append(vod)
        total += vod.duration_seconds
    return selected


def _hours(seconds) -> float:
    return round(seconds / 3600, 2)


class PlaylistBuilder:
    def __init__(
        self,
        vods: VodStore,
        playlist: PlaylistStore,
        stream_state: StreamStateStore,
        events: EventBroadcaster,
        capacity_seconds: int,
    ) -> None:
        self.vods = vods
        self.playlist = playlist
        self.stream_state = stream_state
        self.events = events
        self.capacity_seconds = capacity_seconds

    def rebuild(self) -> dict:
        """Replace the playlist with the newest repaired VODs that fit the cap.

        With no repaired VODs at all the current playlist is left alone.
        """
        candidates = [vod for vod in self.vods.list_processed() if vod.is_processed]
        if not candidates:
            logger.info("No processed VODs available for playlist")
            return {"success": True, "message": "No processed VODs available", "vodCount": 0, "totalHours": 0}
        selected = select_within_capacity(candidates, self.capacity_seconds)
        self.playlist.replace_all([vod.id for vod in selected])
        total = sum(vod.duration_seconds for vod in selected)
        logger.info("Playlist rebuilt: %d VODs, %.2fh", len(selected), total / 3600)
        summary = self._after_mutation()
        return {"success": True, "message": "Playlist rebuilt", **summary}

    def add(self, vod_id) -> dict:
        vod = self.vods.get(vod_id)
        if vod is None:
            raise NotFoundError(f"VOD {vod_id} not found")
        if not vod.is_processed:
            raise InvalidStateError(f"VOD {vod_id} is not processed yet")
        if self.playlist.contains(vod_id):
            return {"success": True, "message": "VOD already in playlist"}
        current = self.total_seconds()
        if current + vod.duration_seconds > self.capacity_seconds:
            raise CapacityExceededError(
                f"Adding this VOD would exceed the {_hours(self.capacity_seconds):g}-hour limit. "
                f"Current: {_hours(current):g}h, adding: {_hours(vod.duration_seconds):g}h"
            )
        position = self.playlist.append(vod_id)
        logger.info("Added VOD %s to playlist at position %d", vod_id, position)
        summary = self._after_mutation()
        return {"success": True, "message": "VOD added to playlist", "position": position, **summary}

    def remove(self, vod_id) -> dict:
        if not self.playlist.contains(vod_id):
            return {"success": True, "message": "VOD not in playlist"}
        self.playlist.remove([vod_id])
        logger.info("Removed VOD %s from playlist", vod_id)
        summary = self._after_mutation()
        return {"success": True, "message": "VOD removed from playlist", **summary}

    def cleanup(self) -> list[str]:
        """Drop entries whose VOD is no longer repaired or whose file vanished."""
        stale = []
        for entry in self.playlist.list_entries():
            vod = self.vods.get(entry.vod_id)
            if vod is None or not vod.is_processed:
                stale.append(entry.vod_id)
        if not stale:
            self.playlist.renumber()
            return stale
        self.playlist.remove(stale)
        logger.warning("Dropped %d stale playlist entries: %s", len(stale), ", ".join(stale))
        self._after_mutation()
        return stale

    def after_external_change(self) -> dict:
        """Refresh bookkeeping after rows were deleted outside the builder."""
        self.playlist.renumber()
        return self._after_mutation()

    def entries(self):
        return self.playlist.list_entries()

    def contains(self, vod_id) -> bool:
        return self.playlist.contains(vod_id)

    def total_seconds(self) -> int:
        return sum(entry.duration_seconds for entry in self.playlist.list_entries())

    def get_playlist(self) -> dict:
        entries = self.playlist.list_entries()
        total = sum(entry.duration_seconds for entry in entries)
        return {
            "entries": [entry.to_dict() for entry in entries],
            "vodCount": len(entries),
            "totalSeconds": total,
            "totalHours": _hours(total),
            "capacityHours": _hours(self.capacity_seconds),
        }

    def _after_mutation(self) -> dict:
        entries = self.playlist.list_entries()
        self.stream_state.update(playlist_updated_at=utc_now())
        if self.stream_state.clear_resume_pointer_unless(entry.vod_id for entry in entries):
            logger.info("Resume pointer cleared; its VOD left the playlist")
        summary = {
            "vodCount": len(entries),
            "totalHours": _hours(sum(entry.duration_seconds for entry in entries)),
        }
        self.events.publish("playlist_updated", **summary)
        return summary
