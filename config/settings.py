"""Application settings constants."""

from __future__ import annotations

# Download attempts allowed before an asset is terminally failed.
MAX_DOWNLOAD_RETRIES = 3

# Pause between a failed download attempt and the next queue iteration.
RETRY_DELAY_SECONDS = 5.0

# Kill a download whose tool has printed nothing for this long (0 disables).
DOWNLOAD_IDLE_TIMEOUT_SECONDS = 900.0

# Progress persistence/broadcast throttle.
PROGRESS_INTERVAL_SECONDS = 1.0

# Run repair automatically after a download and rebuild the playlist after repair.
AUTO_PROCESS = True
AUTO_PLAYLIST = True

# Queue newly discovered catalog entries for download.
AUTO_QUEUE_NEW_VODS = True

# Playlist duration cap.
PLAYLIST_CAPACITY_HOURS = 48.0

# Mute interval handling.
SILENCE_NOISE_DB = -50.0
MIN_MUTE_SECONDS = 10.0
MUTE_MERGE_GAP_SECONDS = 2.0
MIN_KEEP_SECONDS = 5.0
# Keep-interval slack treated as "the whole file".
FULL_SPAN_TOLERANCE_SECONDS = 1.0

# Catalog scan.
SCAN_SCHEDULE = "0 0 * * *"
SCAN_DAYS_BACK = 30
INITIAL_SCAN_DELAY_SECONDS = 5.0

# Relay loop.
RELAY_URL = "rtmp://live.twitch.tv/app"
RELAY_ERROR_RETRY_SECONDS = 5.0
RELAY_ADVANCE_PAUSE_SECONDS = 1.0
RELAY_SKIP_PAUSE_SECONDS = 0.1
RELAY_OUTPUT_OPTIONS = (
    "-c:v", "libx264",
    "-preset", "veryfast",
    "-maxrate", "6000k",
    "-bufsize", "12000k",
    "-pix_fmt", "yuv420p",
    "-g", "50",
    "-c:a", "aac",
    "-b:a", "160k",
    "-ar", "44100",
    "-f", "flv",
)

# External tools.
FFMPEG_BINARY = "ffmpeg"
FFPROBE_BINARY = "ffprobe"
