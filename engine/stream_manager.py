"""Continuity manager: relays the playlist to the live ingest, forever.

One relay subprocess plays one playlist entry; when it ends the index
advances (wrapping) and the next entry starts. Skip, skip-to and reload set
the index first and then terminate the relay; the loop treats that
termination as intentional and continues at the preset index.

Stream state is persisted so a restart can resume at the last VOD played.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import time

from config.settings import (
    RELAY_ADVANCE_PAUSE_SECONDS,
    RELAY_ERROR_RETRY_SECONDS,
    RELAY_OUTPUT_OPTIONS,
    RELAY_SKIP_PAUSE_SECONDS,
)
from db.connection import seconds_since, utc_now
from db.playlist import PlaylistStore
from db.stream_state import StreamStateStore
from db.vods import VodStore
from engine.config import Settings
from engine.errors import ConfigurationError, InvalidStateError, NotFoundError
from engine.events import EventBroadcaster
from engine.progress import parse_ffmpeg_time
from engine.supervisor import Supervisor
from media.ffprobe import tool_available

logger = logging.getLogger(__name__)

RELAY_KEY = "relay"

PLAY_FINISHED = "finished"
PLAY_INTERRUPTED = "interrupted"
PLAY_FAILED = "failed"


def select_start_index(
    vod_ids,
    *,
    resume=False,
    last_vod_id=None,
    last_vod_index=None,
    from_vod_id=None,
    from_index=None,
) -> int:
    """Pick the first playlist position of a new session.

    Priority: resume (by VOD id, else the stored index clamped to bounds),
    then an explicit VOD id, then an explicit index, then 0.
    """
    vod_ids = list(vod_ids)
    if not vod_ids:
        raise InvalidStateError("No VODs in playlist")
    if resume and (last_vod_id or last_vod_index is not None):
        if last_vod_id in vod_ids:
            return vod_ids.index(last_vod_id)
        if last_vod_index is not None:
            return max(0, min(int(last_vod_index), len(vod_ids) - 1))
        return 0
    if from_vod_id:
        if from_vod_id not in vod_ids:
            raise NotFoundError(f"VOD {from_vod_id} not found in playlist")
        return vod_ids.index(from_vod_id)
    if from_index is not None:
        if not 0 <= from_index < len(vod_ids):
            raise NotFoundError(f"Invalid playlist index {from_index}")
        return from_index
    return 0


def build_relay_argv(settings: Settings, file_path: str) -> list[str]:
    return [
        settings.ffmpeg_binary,
        "-hide_banner",
        "-re",
        "-i",
        file_path,
        *RELAY_OUTPUT_OPTIONS,
        f"{settings.relay_url.rstrip('/')}/{settings.stream_key}",
    ]


class StreamManager:
    def __init__(
        self,
        state: StreamStateStore,
        playlist: PlaylistStore,
        vods: VodStore,
        supervisor: Supervisor,
        events: EventBroadcaster,
        settings: Settings,
        *,
        sleep=asyncio.sleep,
        tool_check=tool_available,
        error_retry_seconds: float = RELAY_ERROR_RETRY_SECONDS,
        advance_pause_seconds: float = RELAY_ADVANCE_PAUSE_SECONDS,
        skip_pause_seconds: float = RELAY_SKIP_PAUSE_SECONDS,
    ) -> None:
        self.state = state
        self.playlist = playlist
        self.vods = vods
        self.supervisor = supervisor
        self.events = events
        self.settings = settings
        self._sleep = sleep
        self._tool_check = tool_check
        self.error_retry_seconds = error_retry_seconds
        self.advance_pause_seconds = advance_pause_seconds
        self.skip_pause_seconds = skip_pause_seconds
        self._is_streaming = False
        self._is_stopping = False
        self._entries = []
        self._current_index = 0
        self._redirects = 0
        self._relay_starting = False
        self._task: asyncio.Task | None = None

    @property
    def is_streaming(self) -> bool:
        return self._is_streaming

    def current_vod_id(self):
        if 0 <= self._current_index < len(self._entries):
            return self._entries[self._current_index].vod_id
        return None

    async def start(self, *, resume=False, from_vod_id=None, from_index=None) -> dict:
        if self._is_streaming:
            raise InvalidStateError("Stream already running")
        entries = self.playlist.list_entries()
        if not entries:
            raise InvalidStateError("No VODs in playlist")
        if not self.settings.stream_key:
            raise ConfigurationError("TWITCH_RERUN_STREAM_KEY not configured")
        if not self._tool_check(self.settings.ffmpeg_binary):
            raise ConfigurationError(f"{self.settings.ffmpeg_binary} is not installed or not available in PATH")

        persisted = self.state.get()
        index = select_start_index(
            [entry.vod_id for entry in entries],
            resume=resume,
            last_vod_id=persisted.last_vod_id,
            last_vod_index=persisted.last_vod_index,
            from_vod_id=from_vod_id,
            from_index=from_index,
        )

        self._is_streaming = True
        self._is_stopping = False
        self._entries = entries
        self._current_index = index
        self.state.update(
            is_streaming=True,
            stream_started_at=utc_now(),
            current_vod_id=None,
            current_vod_started_at=None,
        )
        logger.info("Stream starting at position %d of %d (resume=%s)", index + 1, len(entries), resume)
        self.events.publish("stream_start", vodCount=len(entries), startIndex=index, resumed=bool(resume))
        self._publish_status()
        self._task = asyncio.create_task(self._run_loop(), name="relay-loop")
        message = f"Stream resumed from position {index + 1}" if resume else "Stream started"
        return {"success": True, "message": message, "startIndex": index}

    async def stop(self) -> dict:
        if not self._is_streaming:
            raise InvalidStateError("Stream not running")
        self._is_stopping = True
        handle = self.supervisor.registry.kill(RELAY_KEY)
        if handle is not None:
            await handle.wait()
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        leftover = self.supervisor.registry.get(RELAY_KEY)
        if leftover is not None:
            leftover.kill()
            await leftover.wait()
        return self._teardown()

    async def skip_to_next(self) -> dict:
        if not self._is_streaming:
            raise InvalidStateError("Stream not running")
        if self._entries:
            self._current_index = (self._current_index + 1) % len(self._entries)
        await self._interrupt_relay()
        return {"success": True, "message": "Skipping to next VOD"}

    async def skip_to_id(self, vod_id) -> dict:
        if not self._is_streaming:
            raise InvalidStateError("Stream not running")
        ids = [entry.vod_id for entry in self._entries]
        if vod_id not in ids:
            raise NotFoundError(f"VOD {vod_id} not found in playlist")
        index = ids.index(vod_id)
        self._current_index = index
        await self._interrupt_relay()
        return {"success": True, "message": f"Skipping to VOD at position {index + 1}"}

    async def reload_playlist(self) -> dict:
        if not self._is_streaming:
            raise InvalidStateError("Stream not running")
        current_id = self.current_vod_id()
        entries = self.playlist.list_entries()
        self._entries = entries
        ids = [entry.vod_id for entry in entries]
        if current_id in ids:
            self._current_index = ids.index(current_id)
            logger.info("Playlist reloaded, current VOD kept at position %d", self._current_index + 1)
            return {"success": True, "message": "Playlist reloaded", "vodCount": len(entries)}
        if entries:
            # The entry that followed the removed one now sits at the same index.
            self._current_index = self._current_index % len(entries)
        logger.info("Playlist reloaded, current VOD %s left the playlist", current_id)
        await self._interrupt_relay()
        return {"success": True, "message": "Playlist reloaded", "vodCount": len(entries)}

    async def reload_if_streaming(self) -> None:
        if self._is_streaming:
            await self.reload_playlist()

    def reset_stuck_state(self) -> bool:
        """Clear a persisted streaming flag that no live session backs."""
        persisted = self.state.get()
        if not persisted.is_streaming or self._is_streaming:
            return False
        last_vod_id = persisted.current_vod_id or persisted.last_vod_id
        last_vod_index = persisted.last_vod_index
        if persisted.current_vod_id:
            ids = [entry.vod_id for entry in self.playlist.list_entries()]
            if persisted.current_vod_id in ids:
                last_vod_index = ids.index(persisted.current_vod_id)
        self.state.update(
            is_streaming=False,
            current_vod_id=None,
            stream_started_at=None,
            current_vod_started_at=None,
            last_vod_id=last_vod_id,
            last_vod_index=last_vod_index,
        )
        logger.warning("Reset stuck stream state; resume point is %s (index %s)", last_vod_id, last_vod_index)
        return True

    def get_status(self) -> dict:
        persisted = self.state.get()
        stream_elapsed = vod_elapsed = 0
        current_title = current_duration = last_title = None
        current_position = current_total = None
        if persisted.is_streaming:
            stream_elapsed = seconds_since(persisted.stream_started_at)
            if persisted.current_vod_id:
                vod = self.vods.get(persisted.current_vod_id)
                if vod is not None:
                    current_title = vod.title
                    current_duration = vod.duration_seconds
                ids = [entry.vod_id for entry in self._entries]
                if persisted.current_vod_id in ids:
                    current_position = ids.index(persisted.current_vod_id) + 1
                    current_total = len(ids)
                vod_elapsed = seconds_since(persisted.current_vod_started_at)
        elif persisted.last_vod_id:
            last_vod = self.vods.get(persisted.last_vod_id)
            if last_vod is not None:
                last_title = last_vod.title
        return {
            "isStreaming": persisted.is_streaming,
            "currentVodId": persisted.current_vod_id,
            "streamStartedAt": persisted.stream_started_at,
            "currentVodStartedAt": persisted.current_vod_started_at,
            "streamElapsed": stream_elapsed,
            "vodElapsed": vod_elapsed,
            "currentVodTitle": current_title,
            "currentVodPosition": current_position,
            "currentVodTotal": current_total,
            "currentVodDuration": current_duration,
            "lastVodId": persisted.last_vod_id,
            "lastVodIndex": persisted.last_vod_index,
            "lastVodTitle": last_title,
            "lastScan": persisted.last_scan_at,
            "playlistUpdated": persisted.playlist_updated_at,
        }

    async def shutdown(self) -> None:
        if self._is_streaming:
            await self.stop()

    # Relay loop

    async def _run_loop(self) -> None:
        unplayable = 0
        failures = 0
        try:
            while self._is_streaming and not self._is_stopping:
                if not self._entries:
                    self._fatal_stop("Playlist is empty")
                    return
                if unplayable >= len(self._entries):
                    self._fatal_stop("No playable VODs in playlist")
                    return
                if self._current_index >= len(self._entries):
                    self._current_index = 0

                entry = self._entries[self._current_index]
                if not entry.processed_file_path or not os.path.exists(entry.processed_file_path):
                    logger.error("VOD %s has no processed file on disk, skipping", entry.vod_id)
                    self._current_index += 1
                    unplayable += 1
                    await self._sleep(self.skip_pause_seconds)
                    continue
                unplayable = 0
                redirects = self._redirects

                try:
                    outcome, error = await self._play(entry)
                except ConfigurationError as exc:
                    self._fatal_stop(str(exc))
                    return
                if self._is_stopping or not self._is_streaming:
                    return

                if outcome == PLAY_FINISHED:
                    failures = 0
                    logger.info("Finished streaming %s", entry.vod_id)
                    if self._redirects == redirects:
                        self._current_index = (self._current_index + 1) % len(self._entries)
                    self.state.update(current_vod_id=None, current_vod_started_at=None)
                    self._publish_status()
                    await self._sleep(self.advance_pause_seconds)
                elif outcome == PLAY_INTERRUPTED:
                    continue
                else:
                    failures += 1
                    logger.error("Relay of %s failed: %s", entry.vod_id, error)
                    self.events.publish("stream_error", vodId=entry.vod_id, error=error)
                    if failures >= len(self._entries):
                        self._fatal_stop("Every VOD in the playlist failed to relay")
                        return
                    await self._sleep(self.error_retry_seconds)
                    if self._is_stopping or not self._is_streaming:
                        return
                    # A skip during the pause already chose the next entry.
                    if self._entries and self._redirects == redirects:
                        self._current_index = (self._current_index + 1) % len(self._entries)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Relay loop crashed")
            if self._is_streaming and not self._is_stopping:
                self._fatal_stop("Relay loop crashed")

    async def _play(self, entry):
        started_at = utc_now()
        self.state.update(current_vod_id=entry.vod_id, current_vod_started_at=started_at)
        logger.info("Streaming %s (%s)", entry.title, entry.vod_id)
        self.events.publish(
            "stream_vod_change",
            vodId=entry.vod_id,
            title=entry.title,
            position=self._current_index + 1,
            total=len(self._entries),
            duration=entry.duration_seconds,
            startedAt=started_at,
        )
        self._publish_status()

        self._relay_starting = True
        try:
            handle = await self.supervisor.start(RELAY_KEY, build_relay_argv(self.settings, entry.processed_file_path))
        finally:
            self._relay_starting = False
            self.supervisor.registry.discard_pending_kill(RELAY_KEY)
        last_progress = 0.0
        try:
            async for line in handle.lines():
                position = parse_ffmpeg_time(line)
                if position is None:
                    continue
                now = time.monotonic()
                if now - last_progress < self.settings.progress_interval_seconds:
                    continue
                last_progress = now
                self._publish_progress(entry, position)
            result = await handle.wait()
        except asyncio.CancelledError:
            handle.kill()
            raise

        if result.succeeded:
            return PLAY_FINISHED, None
        if handle.kill_requested:
            return PLAY_INTERRUPTED, None
        if result.timed_out:
            return PLAY_FAILED, "relay stalled"
        return PLAY_FAILED, f"ffmpeg exited with code {result.exit_code}: {result.tail(3)}"

    def _publish_progress(self, entry, position) -> None:
        if self._is_stopping or not self._is_streaming:
            return
        persisted = self.state.get()
        percent = None
        if entry.duration_seconds:
            percent = round(min(100.0, position / entry.duration_seconds * 100), 1)
        self.events.publish(
            "stream_progress",
            vodId=entry.vod_id,
            percent=percent,
            currentTime=position,
            streamElapsed=seconds_since(persisted.stream_started_at),
            vodElapsed=seconds_since(persisted.current_vod_started_at),
        )

    async def _interrupt_relay(self) -> None:
        """Stop the current relay so the loop plays the entry at the preset index.

        A relay still being spawned is killed as soon as it registers.
        """
        self._redirects += 1
        handle = self.supervisor.registry.kill(RELAY_KEY, expected=self._relay_starting)
        if handle is not None:
            await handle.wait()

    def _fatal_stop(self, reason) -> None:
        logger.error("Stopping stream: %s", reason)
        self.events.publish("stream_error", error=reason, fatal=True)
        self._is_stopping = True
        self._teardown()

    def _teardown(self) -> dict:
        last_vod_id = self.current_vod_id()
        last_index = self._current_index
        self._is_streaming = False
        self._task = None
        self.state.update(
            is_streaming=False,
            current_vod_id=None,
            stream_started_at=None,
            current_vod_started_at=None,
            last_vod_index=last_index,
            last_vod_id=last_vod_id,
        )
        logger.info("Stream stopped at position %d (vod=%s)", last_index + 1, last_vod_id)
        self.events.publish("stream_stop", lastPosition=last_index + 1, lastVodId=last_vod_id)
        self._publish_status()
        return {
            "success": True,
            "message": "Stream stopped",
            "lastPosition": last_index + 1,
            "lastVodId": last_vod_id,
        }

    def _publish_status(self) -> None:
        self.events.publish("stream_status_update", **self.get_status())
