from __future__ import annotations

import json

import pytest

from engine.config import Settings, build_settings, load_config_if_present, validate_config
from engine.paths import resolve_config_path


def test_validate_config_accepts_empty_and_known_keys() -> None:
    assert validate_config({}) == []
    assert validate_config({"max_retries": 5, "auto_process": False, "ytdlp_command": ["yt-dlp"]}) == []


def test_validate_config_reports_bad_values() -> None:
    errors = validate_config(
        {
            "max_retries": 0,
            "retry_delay_seconds": "soon",
            "auto_playlist": "yes",
            "ytdlp_command": [],
            "playlist_capacity_hours": -1,
            "relay_url": " ",
        }
    )

    assert "max_retries must be at least 1" in errors
    assert "retry_delay_seconds must be a number" in errors
    assert "auto_playlist must be true/false" in errors
    assert "ytdlp_command must not be empty" in errors
    assert "playlist_capacity_hours must be positive" in errors
    assert "relay_url must be a non-empty string" in errors
    assert validate_config([]) == ["config must be a JSON object"]


def test_build_settings_merges_config_and_environment() -> None:
    settings = build_settings(
        {"max_retries": 5, "ytdlp_command": ["yt-dlp"], "playlist_capacity_hours": 24},
        environ={
            "TWITCH_CLIENT_ID": " client ",
            "TWITCH_RERUN_CHANNEL": "somechannel",
            "TWITCH_RERUN_STREAM_KEY": "live_abc",
            "TWITCH_CLIENT_SECRET": "",
        },
    )

    assert settings.max_retries == 5
    assert settings.ytdlp_command == ("yt-dlp",)
    assert settings.playlist_capacity_seconds == 24 * 3600
    assert settings.twitch_client_id == "client"
    assert settings.twitch_client_secret is None
    assert settings.twitch_channel_login == "somechannel"
    assert settings.stream_key == "live_abc"
    assert "live_abc" not in repr(settings)


def test_settings_defaults() -> None:
    settings = Settings()

    assert settings.max_retries == 3
    assert settings.playlist_capacity_seconds == 48 * 3600
    assert settings.download_idle_timeout == 900.0
    assert Settings(download_idle_timeout_seconds=0).download_idle_timeout is None


def test_load_config_if_present(tmp_path) -> None:
    path = tmp_path / "config.json"

    assert load_config_if_present(str(path)) == {}

    path.write_text(json.dumps({"auto_process": False}), encoding="utf-8")
    assert load_config_if_present(str(path)) == {"auto_process": False}


def test_resolve_config_path_stays_inside_config_dir() -> None:
    assert resolve_config_path(None).endswith("config.json")
    with pytest.raises(ValueError):
        resolve_config_path("../../outside.json")
