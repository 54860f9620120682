"""
Default configuration values for savevault.

Centralized defaults that can be overridden by the config file or by
SAVEVAULT_* environment variables. The config file mirrors the sections below.
"""

import copy
from pathlib import Path
from typing import Any, Dict

from core.models.config import DEFAULT_IGNORE_PATTERNS

CONFIG_FILE_NAME = "config.json"
DATA_DIR_ENV_VAR = "SAVEVAULT_DATA_DIR"

# Global default settings
DEFAULT_SETTINGS = {
    # Where the database and blobs live
    "storage": {
        "data_dir": str(Path.home() / ".savevault"),
    },

    # Change detection
    "detection": {
        "debounce_window": 1.5,
        "poll_fallback_interval": 2.0,
        "read_max_attempts": 3,
        "read_backoff_base": 0.25,
        "capture_on_register": False,
        "ignore_patterns": list(DEFAULT_IGNORE_PATTERNS),
    },

    # Version history
    "retention": {
        "retention_count": 5,
        "retention_policy": "latest",
        "retention_max_age_hours": None,
    },

    # Blob compression
    "compression": {
        "compression_level": 3,
        "compression_enabled": True,
    },

    # Performance settings
    "performance": {
        "worker_count": 2,
    },

    # Logging
    "logging": {
        "log_level": "INFO",
        "log_to_file": False,
    },
}


def get_default_config() -> Dict[str, Any]:
    """Get a copy of the default sectioned configuration"""
    return copy.deepcopy(DEFAULT_SETTINGS)


def get_default_data_dir() -> Path:
    return Path(DEFAULT_SETTINGS["storage"]["data_dir"])
