from __future__ import annotations

import asyncio

import pytest

from db.models import (
    DOWNLOAD_CANCELLED,
    DOWNLOAD_COMPLETED,
    DOWNLOAD_FAILED,
    DOWNLOAD_PAUSED,
    DOWNLOAD_QUEUED,
)
from engine.config import Settings
from engine.errors import CancelledError, ConfigurationError, ExternalToolFailure, InvalidStateError, NotFoundError
from engine.job_queue import DownloadQueue
from engine.supervisor import ProcessRegistry


class FakeAcquisition:
    """Scripted download worker. Each VOD consumes one step per attempt."""

    def __init__(self, store, tmp_path):
        self.store = store
        self.tmp_path = tmp_path
        self.plans = {}
        self.calls = []
        self.active = 0
        self.max_active = 0
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def download(self, vod_id):
        self.calls.append(vod_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            plan = self.plans.get(vod_id) or []
            step = plan.pop(0) if plan else "ok"
            if step == "block":
                self.started.set()
                await self.release.wait()
                raise CancelledError("yt-dlp was terminated")
            await asyncio.sleep(0)
            if isinstance(step, Exception):
                raise step
            path = self.tmp_path / f"{vod_id}.mp4"
            path.write_bytes(b"video")
            self.store.mark_download_completed(vod_id, str(path))
            return str(path)
        finally:
            self.active -= 1


class FakeRepair:
    def __init__(self):
        self.calls = []

    async def process(self, vod_id):
        self.calls.append(vod_id)
        return f"/processed/{vod_id}_processed.mp4"


class FakePlaylist:
    def __init__(self):
        self.rebuilds = 0

    def rebuild(self):
        self.rebuilds += 1
        return {"success": True}


def _settings(**overrides) -> Settings:
    values = {"retry_delay_seconds": 0.0, "auto_process": False, "auto_playlist": False}
    values.update(overrides)
    return Settings(**values)


def _queue(vod_store, acquisition, events, settings, sleeps=None, **kwargs) -> DownloadQueue:
    async def _sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    return DownloadQueue(
        vod_store,
        acquisition,
        events,
        settings,
        ProcessRegistry(),
        sleep=_sleep,
        **kwargs,
    )


def test_queue_downloads_one_at_a_time_newest_first(vod_store, events, seed_vod, tmp_path) -> None:
    seed_vod("old", created_at="2024-01-01T00:00:00+00:00")
    seed_vod("mid", created_at="2024-01-02T00:00:00+00:00")
    seed_vod("new", created_at="2024-01-03T00:00:00+00:00")

    async def scenario():
        acquisition = FakeAcquisition(vod_store, tmp_path)
        queue = _queue(vod_store, acquisition, events, _settings())
        assert queue.trigger() is True
        assert queue.trigger() is False
        await queue.wait_idle()
        return acquisition, queue

    acquisition, queue = asyncio.run(scenario())

    assert acquisition.calls == ["new", "mid", "old"]
    assert acquisition.max_active == 1
    assert {vod.download_status for vod in vod_store.list_vods()} == {DOWNLOAD_COMPLETED}
    assert queue.is_processing is False
    assert events.of_type("queue_status_update")[-1]["isProcessing"] is False


def test_failing_download_stops_after_retry_budget(vod_store, events, seed_vod, tmp_path) -> None:
    seed_vod("1")
    sleeps = []

    async def scenario():
        acquisition = FakeAcquisition(vod_store, tmp_path)
        acquisition.plans["1"] = [ExternalToolFailure("yt-dlp exited with code 1", exit_code=1)] * 5
        queue = _queue(vod_store, acquisition, events, _settings(retry_delay_seconds=7.0), sleeps=sleeps)
        queue.trigger()
        await queue.wait_idle()
        return acquisition

    acquisition = asyncio.run(scenario())

    vod = vod_store.get("1")
    assert acquisition.calls == ["1", "1", "1"]
    assert vod.download_status == DOWNLOAD_FAILED
    assert vod.retry_count == 3
    assert sleeps == [7.0, 7.0]


def test_success_after_failure_resets_retry_count(vod_store, events, seed_vod, tmp_path) -> None:
    seed_vod("1")

    async def scenario():
        acquisition = FakeAcquisition(vod_store, tmp_path)
        acquisition.plans["1"] = [ExternalToolFailure("network", exit_code=1)]
        queue = _queue(vod_store, acquisition, events, _settings())
        queue.trigger()
        await queue.wait_idle()

    asyncio.run(scenario())

    vod = vod_store.get("1")
    assert vod.download_status == DOWNLOAD_COMPLETED
    assert vod.retry_count == 0


def test_configuration_error_stops_the_loop(vod_store, events, seed_vod, tmp_path) -> None:
    seed_vod("new", created_at="2024-01-02T00:00:00+00:00")
    seed_vod("old", created_at="2024-01-01T00:00:00+00:00")

    async def scenario():
        acquisition = FakeAcquisition(vod_store, tmp_path)
        acquisition.plans["new"] = [ConfigurationError("yt-dlp is not installed")]
        queue = _queue(vod_store, acquisition, events, _settings())
        queue.trigger()
        await queue.wait_idle()
        return acquisition

    acquisition = asyncio.run(scenario())

    assert acquisition.calls == ["new"]
    assert vod_store.get("new").download_status == DOWNLOAD_FAILED
    assert vod_store.get("new").retry_count == 3
    assert vod_store.get("old").download_status == DOWNLOAD_QUEUED


def test_stop_during_download_keeps_cancelled_state(vod_store, events, seed_vod, tmp_path) -> None:
    seed_vod("1")

    async def scenario():
        acquisition = FakeAcquisition(vod_store, tmp_path)
        acquisition.plans["1"] = ["block"]
        queue = _queue(vod_store, acquisition, events, _settings())
        queue.trigger()
        await acquisition.started.wait()
        result = await queue.stop("1")
        acquisition.release.set()
        await queue.wait_idle()
        return result, acquisition

    result, acquisition = asyncio.run(scenario())

    vod = vod_store.get("1")
    assert result["success"] is True
    assert acquisition.calls == ["1"]
    assert vod.download_status == DOWNLOAD_CANCELLED
    assert vod.retry_count == 0
    assert "download_cancelled" in events.types()


def test_unclaimed_termination_counts_as_failed_attempt(vod_store, events, seed_vod, tmp_path) -> None:
    seed_vod("1")

    async def scenario():
        acquisition = FakeAcquisition(vod_store, tmp_path)
        acquisition.plans["1"] = ["block"]
        queue = _queue(vod_store, acquisition, events, _settings())
        queue.trigger()
        await acquisition.started.wait()
        acquisition.release.set()
        await queue.wait_idle()
        return acquisition

    acquisition = asyncio.run(scenario())

    vod = vod_store.get("1")
    assert acquisition.calls == ["1", "1"]
    assert vod.download_status == DOWNLOAD_COMPLETED


def test_pause_then_resume(vod_store, events, seed_vod, tmp_path) -> None:
    seed_vod("1")

    async def scenario():
        acquisition = FakeAcquisition(vod_store, tmp_path)
        acquisition.plans["1"] = ["block"]
        queue = _queue(vod_store, acquisition, events, _settings())
        queue.trigger()
        await acquisition.started.wait()
        paused = await queue.pause("1")
        acquisition.release.set()
        await queue.wait_idle()
        status_after_pause = vod_store.get("1").download_status
        retries_after_pause = vod_store.get("1").retry_count
        queue.resume("1")
        await queue.wait_idle()
        return paused, status_after_pause, retries_after_pause, acquisition

    paused, status_after_pause, retries_after_pause, acquisition = asyncio.run(scenario())

    assert paused["message"] == "Download paused"
    assert status_after_pause == DOWNLOAD_PAUSED
    assert retries_after_pause == 0
    assert acquisition.calls == ["1", "1"]
    assert vod_store.get("1").download_status == DOWNLOAD_COMPLETED


def test_control_operations_reject_invalid_states(vod_store, events, seed_vod, tmp_path) -> None:
    seed_vod("queued")
    seed_vod("done", downloaded=True)

    async def scenario():
        queue = _queue(vod_store, FakeAcquisition(vod_store, tmp_path), events, _settings())
        with pytest.raises(NotFoundError):
            queue.enqueue("missing")
        with pytest.raises(InvalidStateError):
            queue.retry("queued")
        with pytest.raises(InvalidStateError):
            await queue.pause("queued")
        with pytest.raises(InvalidStateError):
            queue.resume("queued")
        with pytest.raises(InvalidStateError):
            await queue.stop("done")
        return queue.enqueue("done")

    result = asyncio.run(scenario())

    assert result["message"] == "VOD already downloaded"


def test_retry_resets_budget_and_requeues(vod_store, events, seed_vod, tmp_path) -> None:
    seed_vod("1")
    for _ in range(3):
        vod_store.record_download_failure("1", error_message="boom", max_retries=3)

    async def scenario():
        acquisition = FakeAcquisition(vod_store, tmp_path)
        queue = _queue(vod_store, acquisition, events, _settings())
        result = queue.retry("1")
        await queue.wait_idle()
        return result

    result = asyncio.run(scenario())

    assert result["message"] == "VOD queued for retry"
    assert vod_store.get("1").download_status == DOWNLOAD_COMPLETED
    assert "vod_retry" in events.types()


def test_completed_download_chains_repair_and_playlist(vod_store, events, seed_vod, tmp_path) -> None:
    seed_vod("1")
    notified = []

    async def _on_rebuilt():
        notified.append(True)

    async def scenario():
        repair = FakeRepair()
        playlist = FakePlaylist()
        queue = _queue(
            vod_store,
            FakeAcquisition(vod_store, tmp_path),
            events,
            _settings(auto_process=True, auto_playlist=True),
            repair=repair,
            playlist=playlist,
            on_playlist_rebuilt=_on_rebuilt,
        )
        queue.trigger()
        await queue.wait_idle()
        return repair, playlist

    repair, playlist = asyncio.run(scenario())

    assert repair.calls == ["1"]
    assert playlist.rebuilds == 1
    assert notified == [True]


def test_get_status_counts(vod_store, events, seed_vod, tmp_path) -> None:
    seed_vod("q1")
    seed_vod("q2")
    seed_vod("p", status=DOWNLOAD_PAUSED)
    seed_vod("f", status=DOWNLOAD_FAILED)
    queue = _queue(vod_store, FakeAcquisition(vod_store, tmp_path), events, _settings())

    status = queue.get_status()

    assert status == {
        "queued": 2,
        "downloading": 0,
        "paused": 1,
        "failed": 1,
        "currentDownload": None,
        "isProcessing": False,
    }
