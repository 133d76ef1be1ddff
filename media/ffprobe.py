"""Media inspection through ``ffprobe``."""

from __future__ import annotations

import json
import shutil
import subprocess

from engine.errors import ConfigurationError, ExternalToolFailure


def tool_available(binary: str) -> bool:
    return shutil.which(binary) is not None


def get_media_duration(file_path: str, ffprobe_binary: str = "ffprobe", timeout: float = 30) -> float:
    """Return media duration in seconds using ``ffprobe`` JSON output.

    Raises:
        ConfigurationError: If the ``ffprobe`` binary is missing.
        ExternalToolFailure: If ``ffprobe`` fails or times out.
        ValueError: If duration data is missing or not parseable as a float.
    """
    command = [
        ffprobe_binary,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        file_path,
    ]

    try:
        completed = subprocess.run(
            command,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise ConfigurationError(f"{ffprobe_binary} is not installed or not available in PATH") from exc
    except subprocess.TimeoutExpired as exc:
        raise ExternalToolFailure(f"ffprobe timed out while probing: {file_path}") from exc
    except subprocess.CalledProcessError as exc:
        stderr_text = (exc.stderr or "").strip()
        raise ExternalToolFailure(
            f"ffprobe failed for {file_path}: {stderr_text or exc}",
            exit_code=exc.returncode,
            output=stderr_text,
        ) from exc

    try:
        payload = json.loads(completed.stdout or "{}")
    except json.JSONDecodeError as exc:
        raise ValueError(f"ffprobe returned invalid JSON for {file_path}") from exc

    duration_value = (payload.get("format") or {}).get("duration")
    if duration_value in (None, "", "N/A"):
        raise ValueError(f"ffprobe did not return a duration for {file_path}")

    try:
        return float(duration_value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"ffprobe returned a non-numeric duration for {file_path}") from exc
