from .config import Settings, build_settings, load_config, validate_config
from .errors import RerunError
from .paths import EnginePaths
from .runtime import get_runtime_info

__all__ = [
    "EnginePaths",
    "RerunError",
    "Settings",
    "build_settings",
    "get_runtime_info",
    "load_config",
    "validate_config",
]
