import os
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent

def _is_container_runtime():
    if os.path.exists("/.dockerenv"):
        return True
    return os.path.isdir("/data")


def _default_root_paths():
    if _is_container_runtime():
        return {
            "data": Path("/data"),
            "config": Path("/config"),
            "logs": Path("/logs"),
            "vods": Path("/data/vods"),
            "processed": Path("/data/processed"),
        }
    base = PROJECT_ROOT / "data"
    return {
        "data": base,
        "config": base / "config",
        "logs": base / "logs",
        "vods": base / "vods",
        "processed": base / "processed",
    }


_DEFAULTS = _default_root_paths()

DATA_DIR = Path(os.environ.get("RERUNR_DATA_DIR", _DEFAULTS["data"])).resolve()
CONFIG_DIR = Path(os.environ.get("RERUNR_CONFIG_DIR", _DEFAULTS["config"])).resolve()
LOG_DIR = Path(os.environ.get("RERUNR_LOG_DIR", _DEFAULTS["logs"])).resolve()
VOD_DIR = Path(os.environ.get("RERUNR_VOD_DIR", _DEFAULTS["vods"])).resolve()
PROCESSED_DIR = Path(os.environ.get("RERUNR_PROCESSED_DIR", _DEFAULTS["processed"])).resolve()
DB_PATH = Path(os.environ.get("RERUNR_DB_PATH", DATA_DIR / "database" / "rerunr.sqlite")).resolve()


@dataclass(frozen=True)
class EnginePaths:
    log_dir: str
    db_path: str
    vod_dir: str
    processed_dir: str
    config_path: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def resolve_config_path(path):
    if not path:
        resolved = os.path.join(CONFIG_DIR, "config.json")
    elif os.path.isabs(path):
        resolved = os.path.abspath(path)
    else:
        resolved = os.path.abspath(os.path.join(CONFIG_DIR, path))
    if not _is_within_base(resolved, CONFIG_DIR):
        raise ValueError(f"Config path must be within CONFIG_DIR: {CONFIG_DIR}")
    return resolved


def _is_within_base(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    return os.path.commonpath([real, base]) == base


def build_engine_paths(config_path=None):
    for d in (DB_PATH.parent, LOG_DIR, VOD_DIR, PROCESSED_DIR, CONFIG_DIR):
        ensure_dir(d)

    return EnginePaths(
        log_dir=str(LOG_DIR),
        db_path=str(DB_PATH),
        vod_dir=str(VOD_DIR),
        processed_dir=str(PROCESSED_DIR),
        config_path=resolve_config_path(config_path),
    )
