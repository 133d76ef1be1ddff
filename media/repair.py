"""Repair worker: cut muted regions out of a downloaded VOD.

Stages and the progress range each one reports:

- mute detection (0-30): catalog hints, else ffmpeg silencedetect
- extraction (30-95): stream-copy each keep-interval to a temporary segment
- concatenation (95-100): join the segments with the concat demuxer
"""

from __future__ import annotations

import asyncio
import glob
import logging
import os
import shutil
import time

from config.settings import FULL_SPAN_TOLERANCE_SECONDS
from db.models import DOWNLOAD_COMPLETED
from db.vods import VodStore
from engine.config import Settings
from engine.errors import CancelledError, InvalidStateError, NotFoundError, StorageInconsistencyError
from engine.events import EventBroadcaster
from engine.supervisor import Supervisor
from media.ffprobe import get_media_duration
from media.segments import KeepInterval, plan_keep_intervals, spans_whole_file
from media.silence import detect_silence, normalize_mutes

logger = logging.getLogger(__name__)

DETECT_DONE_PERCENT = 30.0
EXTRACT_DONE_PERCENT = 95.0

_STALE_PATTERNS = ("*_segment_*.mp4", "*_concat.txt")


def process_key(vod_id) -> str:
    return f"process:{vod_id}"


def processed_path_for(processed_dir, vod_id) -> str:
    return os.path.join(processed_dir, f"{vod_id}_processed.mp4")


def segment_path_for(processed_dir, vod_id, index) -> str:
    return os.path.join(processed_dir, f"{vod_id}_segment_{index}.mp4")


def concat_list_path_for(processed_dir, vod_id) -> str:
    return os.path.join(processed_dir, f"{vod_id}_concat.txt")


def build_extract_argv(ffmpeg_binary, source, target, interval: KeepInterval) -> list[str]:
    return [
        ffmpeg_binary,
        "-hide_banner",
        "-y",
        "-ss",
        f"{interval.start:.3f}",
        "-i",
        source,
        "-t",
        f"{interval.duration:.3f}",
        "-c",
        "copy",
        "-avoid_negative_ts",
        "make_zero",
        target,
    ]


def build_concat_argv(ffmpeg_binary, list_path, target) -> list[str]:
    return [
        ffmpeg_binary,
        "-hide_banner",
        "-y",
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        list_path,
        "-c",
        "copy",
        target,
    ]


def render_concat_list(paths) -> str:
    lines = []
    for path in paths:
        escaped = os.path.abspath(path).replace("'", "'\\''")
        lines.append(f"file '{escaped}'")
    return "\n".join(lines) + "\n"


def sweep_stale_segments(processed_dir) -> list[str]:
    """Delete temporary segment and concat-list files left behind by a crash."""
    removed = []
    for pattern in _STALE_PATTERNS:
        for path in glob.glob(os.path.join(processed_dir, pattern)):
            try:
                os.remove(path)
            except FileNotFoundError:
                continue
            removed.append(path)
    if removed:
        logger.info("Removed %d stale repair temporaries from %s", len(removed), processed_dir)
    return removed


def _copy_file(source, target) -> None:
    staging = f"{target}.copying"
    shutil.copyfile(source, staging)
    os.replace(staging, target)


class RepairWorker:
    def __init__(
        self,
        store: VodStore,
        supervisor: Supervisor,
        events: EventBroadcaster,
        settings: Settings,
        processed_dir: str,
    ) -> None:
        self.store = store
        self.supervisor = supervisor
        self.events = events
        self.settings = settings
        self.processed_dir = processed_dir

    async def process(self, vod_id) -> str:
        """Produce ``<id>_processed.mp4`` with muted regions removed and return its path."""
        vod = self.store.get(vod_id)
        if vod is None:
            raise NotFoundError(f"VOD {vod_id} not found")
        if vod.download_status != DOWNLOAD_COMPLETED or not vod.is_downloaded:
            raise InvalidStateError(f"VOD {vod_id} is not downloaded yet")

        if vod.is_processed:
            self.store.mark_process_completed(vod_id, vod.processed_file_path)
            logger.info("VOD %s already processed at %s", vod_id, vod.processed_file_path)
            return vod.processed_file_path

        os.makedirs(self.processed_dir, exist_ok=True)
        output_path = processed_path_for(self.processed_dir, vod_id)
        if not self.store.mark_processing(vod_id):
            raise InvalidStateError(f"VOD {vod_id} cannot be processed in its current state")
        self.events.publish("process_start", vodId=vod_id, title=vod.title)
        logger.info("Starting repair vod=%s source=%s", vod_id, vod.file_path)

        temporaries: list[str] = []
        try:
            total = await self._total_duration(vod)
            mutes = list(vod.muted_segments)
            if not mutes:
                mutes = await detect_silence(
                    self.supervisor,
                    process_key(vod_id),
                    vod.file_path,
                    ffmpeg_binary=self.settings.ffmpeg_binary,
                    noise_db=self.settings.silence_noise_db,
                    min_duration=self.settings.min_mute_seconds,
                    total=total,
                    on_progress=self._detect_reporter(vod_id, total),
                )
                if mutes:
                    self.store.set_muted_segments(vod_id, mutes)
            mutes = normalize_mutes(
                mutes,
                gap=self.settings.mute_merge_gap_seconds,
                min_seconds=self.settings.min_mute_seconds,
            )
            self._report(vod_id, DETECT_DONE_PERCENT, "detect")

            if not mutes:
                await asyncio.to_thread(_copy_file, vod.file_path, output_path)
            else:
                keep = plan_keep_intervals(mutes, total, self.settings.min_keep_seconds)
                if not keep:
                    raise InvalidStateError(f"VOD {vod_id} has no audible content left to keep")
                if spans_whole_file(keep, total, FULL_SPAN_TOLERANCE_SECONDS):
                    await asyncio.to_thread(_copy_file, vod.file_path, output_path)
                elif len(keep) == 1:
                    await self._extract(vod_id, vod.file_path, output_path, keep[0])
                else:
                    await self._extract_and_concat(vod_id, vod.file_path, output_path, keep, temporaries)

            if not os.path.exists(output_path):
                raise StorageInconsistencyError(f"repair output for {vod_id} is missing")
        except CancelledError as exc:
            self._record_failure(vod_id, f"Processing cancelled: {exc}")
            self._discard(output_path)
            raise
        except Exception as exc:
            self._record_failure(vod_id, str(exc))
            self._discard(output_path)
            raise
        finally:
            for path in temporaries:
                self._discard(path)

        self.store.mark_process_completed(vod_id, output_path)
        self.events.publish("process_complete", vodId=vod_id, filePath=output_path)
        logger.info("Repair complete vod=%s path=%s", vod_id, output_path)
        return output_path

    async def _total_duration(self, vod) -> float:
        try:
            return await asyncio.to_thread(get_media_duration, vod.file_path, self.settings.ffprobe_binary)
        except Exception as exc:
            if vod.duration_seconds > 0:
                logger.warning(
                    "Could not probe %s (%s); using catalog duration %ss", vod.file_path, exc, vod.duration_seconds
                )
                return float(vod.duration_seconds)
            raise

    async def _extract(self, vod_id, source, target, interval: KeepInterval) -> None:
        result = await self.supervisor.run(
            process_key(vod_id),
            build_extract_argv(self.settings.ffmpeg_binary, source, target, interval),
        )
        result.raise_for_outcome("ffmpeg")

    async def _extract_and_concat(self, vod_id, source, target, keep, temporaries) -> None:
        segments = []
        span = EXTRACT_DONE_PERCENT - DETECT_DONE_PERCENT
        for index, interval in enumerate(keep):
            segment_path = segment_path_for(self.processed_dir, vod_id, index)
            temporaries.append(segment_path)
            await self._extract(vod_id, source, segment_path, interval)
            segments.append(segment_path)
            self._report(
                vod_id,
                DETECT_DONE_PERCENT + span * (index + 1) / len(keep),
                "extract",
                segment=index + 1,
                total=len(keep),
            )

        list_path = concat_list_path_for(self.processed_dir, vod_id)
        temporaries.append(list_path)
        with open(list_path, "w", encoding="utf-8") as handle:
            handle.write(render_concat_list(segments))
        result = await self.supervisor.run(
            process_key(vod_id),
            build_concat_argv(self.settings.ffmpeg_binary, list_path, target),
        )
        result.raise_for_outcome("ffmpeg concat")
        self._report(vod_id, 100.0, "concat")

    def _detect_reporter(self, vod_id, total):
        last_report = None

        def _on_progress(position: float) -> None:
            nonlocal last_report
            if not total:
                return
            now = time.monotonic()
            if last_report is not None and now - last_report < self.settings.progress_interval_seconds:
                return
            last_report = now
            self._report(vod_id, DETECT_DONE_PERCENT * min(1.0, position / total), "detect")

        return _on_progress

    def _report(self, vod_id, percent, stage, **extra) -> None:
        self.store.update_process_progress(vod_id, percent)
        self.events.publish("process_progress", vodId=vod_id, percent=round(percent, 1), stage=stage, **extra)

    def _record_failure(self, vod_id, message) -> None:
        logger.error("Repair failed vod=%s error=%s", vod_id, message)
        self.store.mark_process_failed(vod_id, message)
        self.events.publish("process_error", vodId=vod_id, error=message)

    @staticmethod
    def _discard(path) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove %s: %s", path, exc)
