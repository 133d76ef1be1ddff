from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

from db.models import DOWNLOAD_QUEUED, PROCESS_COMPLETED, PROCESS_FAILED, MuteInterval
from engine.config import Settings
from engine.errors import ExternalToolFailure, InvalidStateError
from engine.supervisor import OUTCOME_FAILED, OUTCOME_SUCCESS, ToolResult
from media.repair import RepairWorker, render_concat_list, sweep_stale_segments


class FakeFfmpeg:
    def __init__(self, silence_lines=(), fail_on_extract=None):
        self.silence_lines = list(silence_lines)
        self.fail_on_extract = fail_on_extract
        self.calls = []
        self.extracts = 0

    async def run(self, key, argv, *, on_line=None, **kwargs):
        argv = list(argv)
        self.calls.append(argv)
        if "-af" in argv:
            for line in self.silence_lines:
                on_line(line)
            return ToolResult(exit_code=0, output="", outcome=OUTCOME_SUCCESS)
        if "concat" not in argv:
            self.extracts += 1
            if self.extracts == self.fail_on_extract:
                return ToolResult(exit_code=1, output="Invalid data found", outcome=OUTCOME_FAILED)
        Path(argv[-1]).write_bytes(b"cut")
        return ToolResult(exit_code=0, output="", outcome=OUTCOME_SUCCESS)


@pytest.fixture(autouse=True)
def _fixed_duration(monkeypatch):
    monkeypatch.setattr("media.repair.get_media_duration", lambda path, binary="ffprobe": 7200.0)


def _worker(vod_store, events, ffmpeg, tmp_path) -> RepairWorker:
    return RepairWorker(vod_store, ffmpeg, events, Settings(), str(tmp_path / "processed"))


def _value_after(argv, flag):
    return argv[argv.index(flag) + 1]


def test_one_mute_is_cut_and_both_sides_joined(vod_store, events, seed_vod, tmp_path) -> None:
    seed_vod("1", downloaded=True, duration_seconds=7200, muted_segments=[MuteInterval(600.0, 15.0)])
    ffmpeg = FakeFfmpeg()

    path = asyncio.run(_worker(vod_store, events, ffmpeg, tmp_path).process("1"))

    extract_one, extract_two, concat = ffmpeg.calls
    assert (_value_after(extract_one, "-ss"), _value_after(extract_one, "-t")) == ("0.000", "600.000")
    assert (_value_after(extract_two, "-ss"), _value_after(extract_two, "-t")) == ("615.000", "6585.000")
    assert _value_after(concat, "-f") == "concat"
    assert concat[-1] == path
    assert os.path.basename(path) == "1_processed.mp4"
    assert sorted(os.listdir(tmp_path / "processed")) == ["1_processed.mp4"]
    vod = vod_store.get("1")
    assert vod.process_status == PROCESS_COMPLETED
    assert vod.process_progress == 100.0
    assert events.types()[0] == "process_start"
    assert events.types()[-1] == "process_complete"


def test_vod_without_mutes_is_copied(vod_store, events, seed_vod, tmp_path) -> None:
    vod = seed_vod("1", downloaded=True, duration_seconds=7200)
    ffmpeg = FakeFfmpeg()

    path = asyncio.run(_worker(vod_store, events, ffmpeg, tmp_path).process("1"))

    assert len(ffmpeg.calls) == 1
    assert "-af" in ffmpeg.calls[0]
    assert Path(path).read_bytes() == Path(vod.file_path).read_bytes()


def test_detected_silence_is_persisted(vod_store, events, seed_vod, tmp_path) -> None:
    seed_vod("1", downloaded=True, duration_seconds=7200)
    ffmpeg = FakeFfmpeg(
        silence_lines=[
            "[silencedetect @ 0x1] silence_start: 100",
            "[silencedetect @ 0x1] silence_end: 130 | silence_duration: 30",
        ]
    )

    asyncio.run(_worker(vod_store, events, ffmpeg, tmp_path).process("1"))

    assert vod_store.get("1").muted_segments == [MuteInterval(100.0, 30.0)]
    assert len(ffmpeg.calls) == 4


def test_detection_reports_progress_scaled_into_detect_stage(vod_store, events, seed_vod, tmp_path) -> None:
    seed_vod("1", downloaded=True, duration_seconds=7200)
    ffmpeg = FakeFfmpeg(silence_lines=["size=N/A time=01:00:00.00 bitrate=N/A speed= 200x"])

    asyncio.run(_worker(vod_store, events, ffmpeg, tmp_path).process("1"))

    detect = [event["percent"] for event in events.of_type("process_progress") if event["stage"] == "detect"]
    assert detect == [15.0, 30.0]


def test_single_keep_interval_is_extracted_directly(vod_store, events, seed_vod, tmp_path) -> None:
    seed_vod("1", downloaded=True, muted_segments=[MuteInterval(0.0, 600.0)])
    ffmpeg = FakeFfmpeg()

    path = asyncio.run(_worker(vod_store, events, ffmpeg, tmp_path).process("1"))

    assert len(ffmpeg.calls) == 1
    assert ffmpeg.calls[0][-1] == path
    assert _value_after(ffmpeg.calls[0], "-ss") == "600.000"


def test_extraction_failure_marks_vod_and_cleans_up(vod_store, events, seed_vod, tmp_path) -> None:
    seed_vod("1", downloaded=True, muted_segments=[MuteInterval(600.0, 15.0)])
    ffmpeg = FakeFfmpeg(fail_on_extract=2)

    with pytest.raises(ExternalToolFailure):
        asyncio.run(_worker(vod_store, events, ffmpeg, tmp_path).process("1"))

    assert vod_store.get("1").process_status == PROCESS_FAILED
    assert os.listdir(tmp_path / "processed") == []
    assert events.of_type("process_error")


def test_fully_muted_vod_fails(vod_store, events, seed_vod, tmp_path) -> None:
    seed_vod("1", downloaded=True, muted_segments=[MuteInterval(0.0, 7200.0)])

    with pytest.raises(InvalidStateError):
        asyncio.run(_worker(vod_store, events, FakeFfmpeg(), tmp_path).process("1"))

    assert vod_store.get("1").process_status == PROCESS_FAILED


def test_repair_requires_download(vod_store, events, seed_vod, tmp_path) -> None:
    seed_vod("1", status=DOWNLOAD_QUEUED)

    with pytest.raises(InvalidStateError):
        asyncio.run(_worker(vod_store, events, FakeFfmpeg(), tmp_path).process("1"))


def test_already_processed_vod_is_not_redone(vod_store, events, seed_vod, tmp_path) -> None:
    vod = seed_vod("1", processed=True)
    ffmpeg = FakeFfmpeg()

    path = asyncio.run(_worker(vod_store, events, ffmpeg, tmp_path).process("1"))

    assert path == vod.processed_file_path
    assert ffmpeg.calls == []


def test_sweep_stale_segments(tmp_path) -> None:
    for name in ("1_segment_0.mp4", "1_segment_1.mp4", "1_concat.txt", "1_processed.mp4"):
        (tmp_path / name).write_bytes(b"x")

    removed = sweep_stale_segments(str(tmp_path))

    assert len(removed) == 3
    assert os.listdir(tmp_path) == ["1_processed.mp4"]


def test_render_concat_list_quotes_paths(tmp_path) -> None:
    segment = tmp_path / "it's" / "1_segment_0.mp4"

    rendered = render_concat_list([str(segment)])

    assert rendered == f"file '{str(tmp_path)}/it'\\''s/1_segment_0.mp4'\n"
