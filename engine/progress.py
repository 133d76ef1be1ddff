"""Best-effort parsers for external tool progress output.

Each parser takes one line of text and returns what it could recognise, so
they can be exercised against captured output without spawning any tool.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_PERCENT_RE = re.compile(r"(\d{1,3}(?:\.\d+)?)\s*%")
_FRAGMENT_RE = re.compile(r"(?:\bfrag\s+)?(\d+)\s*/\s*(\d+)")
_ITEM_RE = re.compile(r"\bitem\s+(\d+)\s+of\s+(\d+)", re.IGNORECASE)
_SIZE_RE = re.compile(r"\bof\s+~?\s*(\d+(?:\.\d+)?\s*[KMGT]?i?B)\b")
_SPEED_RE = re.compile(r"\bat\s+~?\s*(\d+(?:\.\d+)?\s*[KMGT]?i?B/s)")
_ETA_RE = re.compile(r"\bETA\s+(\d{1,2}(?::\d{2}){1,2})")
_FFMPEG_TIME_RE = re.compile(r"\btime=\s*(-?\d+):(\d{2}):(\d{2}(?:\.\d+)?)")


@dataclass(frozen=True)
class DownloadProgress:
    percent: float | None = None
    fragments_done: int | None = None
    fragments_total: int | None = None
    size: str | None = None
    speed: str | None = None
    eta: str | None = None

    def to_payload(self) -> dict:
        return {
            "percent": self.percent,
            "fragmentsDone": self.fragments_done,
            "fragmentsTotal": self.fragments_total,
            "size": self.size,
            "speed": self.speed,
            "eta": self.eta,
        }


def parse_download_progress(line: str | None) -> DownloadProgress | None:
    """Extract percent, fragment counts, size, speed and ETA from a downloader line.

    Any subset may be present. Returns ``None`` when the line carries none of
    them. A missing percentage is derived from the fragment fraction.
    """
    if not line:
        return None
    text = line.strip()
    if not text:
        return None

    percent = None
    match = _PERCENT_RE.search(text)
    if match:
        percent = float(match.group(1))

    fragments_done = fragments_total = None
    match = _ITEM_RE.search(text) or _FRAGMENT_RE.search(text)
    if match:
        done, total = int(match.group(1)), int(match.group(2))
        if total > 0 and done <= total:
            fragments_done, fragments_total = done, total

    size = _first_group(_SIZE_RE, text)
    speed = _first_group(_SPEED_RE, text)
    eta = _first_group(_ETA_RE, text)

    if percent is None and fragments_total:
        percent = (fragments_done / fragments_total) * 100.0
    if percent is not None:
        percent = max(0.0, min(100.0, percent))

    if percent is None and size is None and speed is None and eta is None:
        return None
    return DownloadProgress(
        percent=percent,
        fragments_done=fragments_done,
        fragments_total=fragments_total,
        size=size,
        speed=speed,
        eta=eta,
    )


def parse_ffmpeg_time(line: str | None) -> float | None:
    """Return the ``time=HH:MM:SS.xx`` position of an ffmpeg stats line in seconds."""
    if not line:
        return None
    match = _FFMPEG_TIME_RE.search(line)
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    value = int(hours) * 3600 + int(minutes) * 60 + float(seconds)
    return value if value >= 0 else None


def _first_group(pattern, text):
    match = pattern.search(text)
    if not match:
        return None
    return re.sub(r"\s+", "", match.group(1))
