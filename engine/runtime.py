import os
import shutil
import sys

from yt_dlp.version import __version__ as ytdlp_version


def get_runtime_info(settings=None):
    ffmpeg = getattr(settings, "ffmpeg_binary", "ffmpeg")
    ffprobe = getattr(settings, "ffprobe_binary", "ffprobe")
    return {
        "app_version": os.environ.get("RERUNR_VERSION", "0.1.0"),
        "python_version": sys.version.split()[0],
        "yt_dlp_version": ytdlp_version,
        "ffmpeg_path": shutil.which(ffmpeg),
        "ffprobe_path": shutil.which(ffprobe),
    }
