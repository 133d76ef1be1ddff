from __future__ import annotations

import importlib
import sys

import pytest

fastapi = pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

from engine.config import Settings
from engine.paths import EnginePaths


def _build_client(monkeypatch, db_path, tmp_path, **settings):
    sys.modules.pop("api.main", None)
    module = importlib.import_module("api.main")
    paths = EnginePaths(
        log_dir=str(tmp_path / "logs"),
        db_path=db_path,
        vod_dir=str(tmp_path / "vods"),
        processed_dir=str(tmp_path / "processed"),
        config_path=str(tmp_path / "config.json"),
    )
    services = module.build_services(Settings(**settings), paths)
    module.app.state.services = services
    published = []
    monkeypatch.setattr(
        services.events,
        "publish",
        lambda event_type, **payload: published.append({"type": event_type, **payload}) or payload,
    )
    return TestClient(module.app), services, published


def test_list_and_get_vods(monkeypatch, db_path, tmp_path, seed_vod) -> None:
    seed_vod("1", created_at="2024-01-01T00:00:00+00:00")
    seed_vod("2", created_at="2024-01-02T00:00:00+00:00")
    client, _, _ = _build_client(monkeypatch, db_path, tmp_path)

    listed = client.get("/api/vods")
    single = client.get("/api/vods/1")
    missing = client.get("/api/vods/404")

    assert [vod["id"] for vod in listed.json()] == ["2", "1"]
    assert single.json()["download_status"] == "queued"
    assert missing.status_code == 404


def test_invalid_transition_is_conflict_and_published(monkeypatch, db_path, tmp_path, seed_vod) -> None:
    seed_vod("1")
    client, _, published = _build_client(monkeypatch, db_path, tmp_path)

    response = client.post("/api/vods/1/retry")

    assert response.status_code == 409
    assert published[-1]["type"] == "api_error"
    assert published[-1]["endpoint"] == "/api/vods/retry"
    assert published[-1]["vodId"] == "1"


def test_unknown_vod_is_not_found(monkeypatch, db_path, tmp_path) -> None:
    client, _, _ = _build_client(monkeypatch, db_path, tmp_path)

    assert client.post("/api/vods/404/pause").status_code == 404
    assert client.post("/api/stream/playlist/404/add").status_code == 404


def test_download_of_finished_vod_is_a_no_op(monkeypatch, db_path, tmp_path, seed_vod) -> None:
    seed_vod("1", downloaded=True)
    client, services, _ = _build_client(monkeypatch, db_path, tmp_path)

    response = client.post("/api/vods/1/download")

    assert response.status_code == 200
    assert response.json()["message"] == "VOD already downloaded"
    assert services.queue.is_processing is False


def test_stream_start_errors(monkeypatch, db_path, tmp_path, seed_vod, playlist_store) -> None:
    client, _, _ = _build_client(monkeypatch, db_path, tmp_path)

    empty = client.post("/api/stream/start", json={})
    seed_vod("1", processed=True)
    playlist_store.replace_all(["1"])
    keyless = client.post("/api/stream/start", json={"resume": True})

    assert empty.status_code == 409
    assert keyless.status_code == 503
    assert client.post("/api/stream/stop").status_code == 409
    assert client.get("/api/stream/status").json()["isStreaming"] is False


def test_playlist_endpoints(monkeypatch, db_path, tmp_path, seed_vod) -> None:
    seed_vod("1", processed=True, duration_seconds=3600, created_at="2024-01-02T00:00:00+00:00")
    seed_vod("2", processed=True, duration_seconds=7200, created_at="2024-01-01T00:00:00+00:00")
    client, _, _ = _build_client(monkeypatch, db_path, tmp_path, playlist_capacity_hours=2)

    rebuilt = client.post("/api/stream/playlist/update")
    playlist = client.get("/api/stream/playlist").json()
    over = client.post("/api/stream/playlist/2/add")
    check = client.get("/api/stream/playlist/1/check").json()
    removed = client.post("/api/stream/playlist/1/remove")

    assert rebuilt.json()["vodCount"] == 1
    assert [entry["vod_id"] for entry in playlist["entries"]] == ["1"]
    assert over.status_code == 409
    assert check == {"inPlaylist": True}
    assert removed.json()["vodCount"] == 0


def test_status_queue_and_history(monkeypatch, db_path, tmp_path, seed_vod) -> None:
    seed_vod("1")
    seed_vod("2", processed=True)
    client, _, _ = _build_client(monkeypatch, db_path, tmp_path)

    status = client.get("/api/status").json()
    queue = client.get("/api/queue").json()
    cleared = client.delete("/api/vods/history").json()

    assert status["stats"] == {"totalVods": 2, "downloadedVods": 1, "processedVods": 1, "playlistCount": 0}
    assert status["isStreaming"] is False
    assert queue["queued"] == 1
    assert sorted(cleared["deleted"]) == ["1", "2"]
    assert client.get("/api/vods").json() == []


def test_version(monkeypatch, db_path, tmp_path) -> None:
    client, _, _ = _build_client(monkeypatch, db_path, tmp_path)

    info = client.get("/api/version").json()

    assert info["app_version"]
    assert info["yt_dlp_version"]
