"""
Configuration loading.

Resolves EngineSettings from, in order of precedence: SAVEVAULT_* environment
variables, the JSON config file in the data directory, then defaults.
Invalid values fail closed with a ConfigurationError naming the field.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union
import logging

from pydantic import ValidationError

from core.errors import ConfigurationError
from core.models.config import EngineSettings
from .defaults import CONFIG_FILE_NAME, DATA_DIR_ENV_VAR, DEFAULT_SETTINGS, get_default_config, get_default_data_dir

logger = logging.getLogger(__name__)


class ConfigurationLoader:
    """Load and save savevault configuration"""

    def __init__(self, data_dir: Optional[Union[str, Path]] = None):
        self._data_dir = Path(data_dir).expanduser() if data_dir else None

    @property
    def data_dir(self) -> Path:
        """Explicit data dir, else SAVEVAULT_DATA_DIR, else the default"""
        if self._data_dir is not None:
            return self._data_dir
        env_value = os.getenv(DATA_DIR_ENV_VAR)
        if env_value:
            return Path(env_value).expanduser()
        return get_default_data_dir()

    @property
    def config_file(self) -> Path:
        return self.data_dir / CONFIG_FILE_NAME

    def load(self, **overrides: Any) -> EngineSettings:
        """
        Build validated settings.

        Args:
            **overrides: Field values taking precedence over the config file
                (None values are ignored)

        Raises:
            ConfigurationError: unreadable config file or invalid values
        """
        values = self.read_config_file(self.config_file)
        values["data_dir"] = self.data_dir
        values.update({key: value for key, value in overrides.items() if value is not None})

        try:
            settings = EngineSettings(**values)
        except ValidationError as e:
            raise ConfigurationError(self.describe_validation_error(e)) from e

        logger.debug(f"Loaded settings from {self.config_file}: {settings.model_dump(mode='json')}")
        return settings

    def read_config_file(self, config_file: Path) -> Dict[str, Any]:
        """Read a sectioned JSON config file into flat field values ({} if missing)"""
        if not config_file.exists():
            return {}

        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to read config from {config_file}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_file} must contain a JSON object")

        return self.flatten(data)

    @staticmethod
    def flatten(data: Dict[str, Any]) -> Dict[str, Any]:
        """Merge known sections into one flat dict of field values"""
        flat: Dict[str, Any] = {}
        for key, value in data.items():
            if key in DEFAULT_SETTINGS and isinstance(value, dict):
                flat.update(value)
            else:
                flat[key] = value
        return flat

    @staticmethod
    def sectioned(settings: EngineSettings) -> Dict[str, Any]:
        """Arrange settings into the config file's sections"""
        values = settings.model_dump(mode='json')
        result: Dict[str, Any] = {}
        for section, defaults in DEFAULT_SETTINGS.items():
            result[section] = {key: values[key] for key in defaults if key in values}
        return result

    @staticmethod
    def describe_validation_error(error: ValidationError) -> str:
        problems = []
        for err in error.errors():
            field_name = ".".join(str(part) for part in err.get("loc", ())) or "settings"
            problems.append(f"{field_name}: {err.get('msg')}")
        return "Invalid configuration: " + "; ".join(problems)

    def save(self, settings: EngineSettings, config_file: Optional[Path] = None) -> Path:
        """Save settings to the config file"""
        config_file = config_file or self.config_file
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w', encoding='utf-8') as f:
            json.dump(self.sectioned(settings), f, indent=2, ensure_ascii=False)

        logger.info(f"Saved configuration to {config_file}")
        return config_file

    def write_default_config(self, overwrite: bool = False) -> Path:
        """
        Write a config file holding the defaults.

        Raises:
            ConfigurationError: the file exists and `overwrite` is False
        """
        if self.config_file.exists() and not overwrite:
            raise ConfigurationError(f"Config file already exists: {self.config_file}")

        data = get_default_config()
        data["storage"]["data_dir"] = str(self.data_dir)

        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

        logger.info(f"Wrote default configuration to {self.config_file}")
        return self.config_file
