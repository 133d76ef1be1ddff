"""Keep-interval planning: the complement of the mute intervals."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from db.models import MuteInterval


@dataclass(frozen=True)
class KeepInterval:
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start


def plan_keep_intervals(mutes: Iterable[MuteInterval], total: float, min_keep: float = 0.0) -> list[KeepInterval]:
    """Return the parts of ``[0, total]`` not covered by ``mutes``.

    Mutes are clipped to the file bounds; keep-intervals shorter than
    ``min_keep`` are dropped.
    """
    keep: list[KeepInterval] = []
    cursor = 0.0
    for mute in sorted(mutes, key=lambda item: item.offset):
        start = max(0.0, min(mute.offset, total))
        end = max(0.0, min(mute.end, total))
        if start > cursor:
            keep.append(KeepInterval(cursor, start))
        cursor = max(cursor, end)
    if cursor < total:
        keep.append(KeepInterval(cursor, total))
    return [interval for interval in keep if interval.duration >= min_keep]


def spans_whole_file(keep: list[KeepInterval], total: float, tolerance: float = 1.0) -> bool:
    return (
        len(keep) == 1
        and keep[0].start <= tolerance
        and keep[0].end >= total - tolerance
    )
