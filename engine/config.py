"""Configuration loading for the lifecycle engine.

Tunables come from an optional JSON config file; credentials only from the
environment. ``build_settings`` merges both over the defaults in
``config.settings``.
"""

from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Mapping

from config import settings as defaults

_FLOAT_KEYS = {
    "retry_delay_seconds",
    "download_idle_timeout_seconds",
    "progress_interval_seconds",
    "playlist_capacity_hours",
    "silence_noise_db",
    "min_mute_seconds",
    "mute_merge_gap_seconds",
    "min_keep_seconds",
}
_INT_KEYS = {"max_retries", "scan_days_back"}
_BOOL_KEYS = {"auto_process", "auto_playlist", "auto_queue_new_vods"}
_STR_KEYS = {"scan_schedule", "relay_url", "ffmpeg_binary", "ffprobe_binary"}
_LIST_KEYS = {"ytdlp_command", "ytdlp_extra_args"}


@dataclass(frozen=True)
class Settings:
    max_retries: int = defaults.MAX_DOWNLOAD_RETRIES
    retry_delay_seconds: float = defaults.RETRY_DELAY_SECONDS
    download_idle_timeout_seconds: float = defaults.DOWNLOAD_IDLE_TIMEOUT_SECONDS
    progress_interval_seconds: float = defaults.PROGRESS_INTERVAL_SECONDS
    auto_process: bool = defaults.AUTO_PROCESS
    auto_playlist: bool = defaults.AUTO_PLAYLIST
    auto_queue_new_vods: bool = defaults.AUTO_QUEUE_NEW_VODS
    playlist_capacity_hours: float = defaults.PLAYLIST_CAPACITY_HOURS
    silence_noise_db: float = defaults.SILENCE_NOISE_DB
    min_mute_seconds: float = defaults.MIN_MUTE_SECONDS
    mute_merge_gap_seconds: float = defaults.MUTE_MERGE_GAP_SECONDS
    min_keep_seconds: float = defaults.MIN_KEEP_SECONDS
    scan_schedule: str = defaults.SCAN_SCHEDULE
    scan_days_back: int = defaults.SCAN_DAYS_BACK
    relay_url: str = defaults.RELAY_URL
    ffmpeg_binary: str = defaults.FFMPEG_BINARY
    ffprobe_binary: str = defaults.FFPROBE_BINARY
    ytdlp_command: tuple[str, ...] = (sys.executable, "-m", "yt_dlp")
    ytdlp_extra_args: tuple[str, ...] = ()
    twitch_client_id: str | None = None
    twitch_client_secret: str | None = field(default=None, repr=False)
    twitch_channel_id: str | None = None
    twitch_channel_login: str | None = None
    stream_key: str | None = field(default=None, repr=False)

    @property
    def playlist_capacity_seconds(self) -> int:
        return int(self.playlist_capacity_hours * 3600)

    @property
    def download_idle_timeout(self) -> float | None:
        if self.download_idle_timeout_seconds <= 0:
            return None
        return self.download_idle_timeout_seconds


def load_config(path):
    with open(path, "r") as f:
        return json.load(f)


def load_config_if_present(path) -> dict[str, Any]:
    if not path or not os.path.exists(path):
        return {}
    return load_config(path)


def validate_config(config):
    errors = []
    if not isinstance(config, dict):
        return ["config must be a JSON object"]

    for key in _INT_KEYS:
        value = config.get(key)
        if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
            errors.append(f"{key} must be a non-negative integer")
    for key in _FLOAT_KEYS:
        value = config.get(key)
        if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float))):
            errors.append(f"{key} must be a number")
    for key in _BOOL_KEYS:
        value = config.get(key)
        if value is not None and not isinstance(value, bool):
            errors.append(f"{key} must be true/false")
    for key in _STR_KEYS:
        value = config.get(key)
        if value is not None and (not isinstance(value, str) or not value.strip()):
            errors.append(f"{key} must be a non-empty string")
    for key in _LIST_KEYS:
        value = config.get(key)
        if value is not None and (
            not isinstance(value, list) or not all(isinstance(item, str) for item in value)
        ):
            errors.append(f"{key} must be a list of strings")

    if config.get("max_retries") == 0:
        errors.append("max_retries must be at least 1")
    if isinstance(config.get("ytdlp_command"), list) and not config["ytdlp_command"]:
        errors.append("ytdlp_command must not be empty")
    capacity = config.get("playlist_capacity_hours")
    if isinstance(capacity, (int, float)) and not isinstance(capacity, bool) and capacity <= 0:
        errors.append("playlist_capacity_hours must be positive")
    return errors


def _env(environ: Mapping[str, str], key: str) -> str | None:
    value = (environ.get(key) or "").strip()
    return value or None


def build_settings(config: Mapping[str, Any] | None = None, environ: Mapping[str, str] | None = None) -> Settings:
    """Merge a validated config dict and environment credentials into ``Settings``."""
    config = dict(config or {})
    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    for key in _INT_KEYS | _FLOAT_KEYS | _BOOL_KEYS | _STR_KEYS:
        if config.get(key) is not None:
            values[key] = config[key]
    for key in _LIST_KEYS:
        if config.get(key) is not None:
            values[key] = tuple(config[key])
    return Settings(
        **values,
        twitch_client_id=_env(environ, "TWITCH_CLIENT_ID"),
        twitch_client_secret=_env(environ, "TWITCH_CLIENT_SECRET"),
        twitch_channel_id=_env(environ, "TWITCH_CHANNEL_ID"),
        twitch_channel_login=_env(environ, "TWITCH_RERUN_CHANNEL"),
        stream_key=_env(environ, "TWITCH_RERUN_STREAM_KEY"),
    )
