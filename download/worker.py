"""Acquisition worker: fetch one VOD to local storage with yt-dlp."""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path

from db.models import DOWNLOAD_DOWNLOADING
from db.vods import VodStore
from engine.config import Settings
from engine.errors import (
    CancelledError,
    NotFoundError,
    StorageInconsistencyError,
)
from engine.events import EventBroadcaster
from engine.progress import DownloadProgress, parse_download_progress
from engine.supervisor import Supervisor

logger = logging.getLogger(__name__)

_PARTIAL_SUFFIXES = (".part", ".ytdl", ".temp", ".tmp")


def download_key(vod_id) -> str:
    return f"download:{vod_id}"


def output_path_for(vod_dir, vod_id) -> str:
    return os.path.join(vod_dir, f"{vod_id}.mp4")


def build_ytdlp_argv(settings: Settings, url: str, vod_id) -> list[str]:
    return [
        *settings.ytdlp_command,
        "--newline",
        "-o",
        f"{vod_id}.%(ext)s",
        "--remux-video",
        "mp4",
        *settings.ytdlp_extra_args,
        url,
    ]


def find_misnamed_output(vod_dir, vod_id) -> str | None:
    """Return a finished file in ``vod_dir`` whose name contains ``vod_id``."""
    directory = Path(vod_dir)
    if not directory.is_dir():
        return None
    for candidate in sorted(directory.iterdir()):
        if not candidate.is_file() or str(vod_id) not in candidate.name:
            continue
        if candidate.name.endswith(_PARTIAL_SUFFIXES):
            continue
        return str(candidate)
    return None


class _ProgressThrottle:
    """Persist/broadcast at most once per interval, except on a changed percentage.

    Any percentage that differs from the last one flushed goes out at once,
    including the drop back to 0% when yt-dlp moves on to the next stream.
    """

    def __init__(self, interval: float) -> None:
        self.interval = interval
        self._last_flush = 0.0
        self._last_percent: float | None = None

    def should_flush(self, percent: float | None, now: float | None = None) -> bool:
        now = time.monotonic() if now is None else now
        if percent is not None and percent != self._last_percent:
            self._last_percent = percent
            self._last_flush = now
            return True
        if now - self._last_flush >= self.interval:
            self._last_flush = now
            return True
        return False


class AcquisitionWorker:
    def __init__(
        self,
        store: VodStore,
        supervisor: Supervisor,
        events: EventBroadcaster,
        settings: Settings,
        vod_dir: str,
    ) -> None:
        self.store = store
        self.supervisor = supervisor
        self.events = events
        self.settings = settings
        self.vod_dir = vod_dir

    async def download(self, vod_id) -> str:
        """Download ``vod_id`` and return the local file path.

        Raises ``CancelledError`` when another call path terminated the
        download; the status is left to that caller.
        """
        vod = self.store.get(vod_id)
        if vod is None:
            raise NotFoundError(f"VOD {vod_id} not found")

        if vod.is_downloaded:
            self.store.mark_download_completed(vod_id, vod.file_path)
            logger.info("VOD %s already downloaded at %s", vod_id, vod.file_path)
            return vod.file_path

        os.makedirs(self.vod_dir, exist_ok=True)
        output_path = output_path_for(self.vod_dir, vod_id)
        if os.path.exists(output_path):
            self.store.mark_download_completed(vod_id, output_path)
            logger.info("VOD %s found on disk at %s", vod_id, output_path)
            return output_path

        current = self.store.get(vod_id)
        if current is None or current.download_status != DOWNLOAD_DOWNLOADING:
            raise CancelledError(f"download of {vod_id} was cancelled before it started")

        self.events.publish("download_start", vodId=vod_id, title=vod.title)
        logger.info("Starting download vod=%s url=%s", vod_id, vod.url)
        throttle = _ProgressThrottle(self.settings.progress_interval_seconds)

        def _on_line(line: str) -> None:
            progress = parse_download_progress(line)
            if progress is None:
                return
            if throttle.should_flush(progress.percent):
                self._flush_progress(vod_id, progress)

        try:
            result = await self.supervisor.run(
                download_key(vod_id),
                build_ytdlp_argv(self.settings, vod.url, vod_id),
                on_line=_on_line,
                cwd=self.vod_dir,
                expected_output=output_path,
                idle_timeout=self.settings.download_idle_timeout,
            )
            result.raise_for_outcome("yt-dlp")
            final_path = self._resolve_output(vod_id, output_path)
        except CancelledError:
            logger.info("Download of %s was terminated", vod_id)
            raise
        except Exception as exc:
            self._record_failure(vod_id, str(exc))
            raise

        self.store.mark_download_completed(vod_id, final_path)
        self.events.publish("download_complete", vodId=vod_id, filePath=final_path)
        logger.info("Download complete vod=%s path=%s", vod_id, final_path)
        return final_path

    def _flush_progress(self, vod_id, progress: DownloadProgress) -> None:
        if progress.percent is not None:
            self.store.update_download_progress(vod_id, progress.percent)
        self.events.publish("download_progress", vodId=vod_id, **progress.to_payload())

    def _resolve_output(self, vod_id, output_path) -> str:
        if os.path.exists(output_path):
            return output_path
        candidate = find_misnamed_output(self.vod_dir, vod_id)
        if candidate is None:
            raise StorageInconsistencyError(
                f"yt-dlp reported success but no file for {vod_id} exists in {self.vod_dir}"
            )
        logger.warning("Renaming unexpected download output %s -> %s", candidate, output_path)
        os.replace(candidate, output_path)
        return output_path

    def _record_failure(self, vod_id, message) -> None:
        logger.error("Download failed vod=%s error=%s", vod_id, message)
        self.store.mark_download_failed(vod_id, message)
        self.events.publish("download_error", vodId=vod_id, error=message)

