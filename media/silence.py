"""Mute detection via ffmpeg's ``silencedetect`` filter."""

from __future__ import annotations

import logging
import re
from typing import Callable, Iterable

from db.models import MuteInterval
from engine.errors import CancelledError, ConfigurationError
from engine.progress import parse_ffmpeg_time
from engine.supervisor import Supervisor

logger = logging.getLogger(__name__)

_SILENCE_RE = re.compile(r"silence_(start|end)\s*:\s*(-?\d+(?:\.\d+)?)")


def parse_silence_line(line: str | None) -> tuple[str, float] | None:
    """Return ``("start", t)`` or ``("end", t)`` for a silencedetect marker line."""
    if not line:
        return None
    match = _SILENCE_RE.search(line)
    if not match:
        return None
    return match.group(1), max(0.0, float(match.group(2)))


def intervals_from_markers(markers: Iterable[tuple[str, float]], total: float | None = None) -> list[MuteInterval]:
    """Pair start/end markers into intervals; an unterminated start runs to ``total``."""
    intervals: list[MuteInterval] = []
    open_start = None
    for kind, value in markers:
        if kind == "start":
            open_start = value
        elif kind == "end" and open_start is not None:
            if value > open_start:
                intervals.append(MuteInterval(offset=open_start, duration=value - open_start))
            open_start = None
    if open_start is not None and total and total > open_start:
        intervals.append(MuteInterval(offset=open_start, duration=total - open_start))
    return intervals


def merge_intervals(intervals: Iterable[MuteInterval], gap: float) -> list[MuteInterval]:
    """Merge intervals that overlap or sit at most ``gap`` seconds apart."""
    merged: list[MuteInterval] = []
    for interval in sorted(intervals, key=lambda item: item.offset):
        if merged and interval.offset - merged[-1].end <= gap:
            last = merged[-1]
            end = max(last.end, interval.end)
            merged[-1] = MuteInterval(offset=last.offset, duration=end - last.offset)
        else:
            merged.append(interval)
    return merged


def filter_short(intervals: Iterable[MuteInterval], min_seconds: float) -> list[MuteInterval]:
    return [interval for interval in intervals if interval.duration >= min_seconds]


def normalize_mutes(intervals: Iterable[MuteInterval], *, gap: float, min_seconds: float) -> list[MuteInterval]:
    return filter_short(merge_intervals(intervals, gap), min_seconds)


def build_silencedetect_argv(ffmpeg_binary, file_path, noise_db, min_duration) -> list[str]:
    return [
        ffmpeg_binary,
        "-hide_banner",
        "-i",
        file_path,
        "-vn",
        "-af",
        f"silencedetect=noise={noise_db:g}dB:d={min_duration:g}",
        "-f",
        "null",
        "-",
    ]


async def detect_silence(
    supervisor: Supervisor,
    key: str,
    file_path: str,
    *,
    ffmpeg_binary: str = "ffmpeg",
    noise_db: float = -50.0,
    min_duration: float = 10.0,
    total: float | None = None,
    on_progress: Callable[[float], None] | None = None,
) -> list[MuteInterval]:
    """Run silence detection over ``file_path``.

    ``on_progress`` receives the decoded position in seconds from ffmpeg's
    stats lines. A failed detection yields no intervals so repair can still
    proceed. Termination and a missing ffmpeg binary propagate.
    """
    markers: list[tuple[str, float]] = []

    def _on_line(line: str) -> None:
        marker = parse_silence_line(line)
        if marker is not None:
            markers.append(marker)
            return
        if on_progress is not None:
            position = parse_ffmpeg_time(line)
            if position is not None:
                on_progress(position)

    try:
        result = await supervisor.run(
            key,
            build_silencedetect_argv(ffmpeg_binary, file_path, noise_db, min_duration),
            on_line=_on_line,
        )
        result.raise_for_outcome("ffmpeg silencedetect")
    except (CancelledError, ConfigurationError):
        raise
    except Exception as exc:
        logger.warning("Silence detection failed for %s: %s", file_path, exc)
        return []
    intervals = intervals_from_markers(markers, total)
    logger.info("Detected %d silent interval(s) in %s", len(intervals), file_path)
    return intervals
