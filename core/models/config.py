"""
Configuration models for savevault.

Handles engine parameters (debounce, retention, compression, polling) with
validation that fails closed: out-of-range values raise instead of clamping.
"""

from pathlib import Path
from typing import List, Optional, Tuple, Type
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


VALID_RETENTION_POLICIES = {'latest', 'keep_first', 'max_age'}

# Editor swap files, OS metadata and temp files written next to saves
DEFAULT_IGNORE_PATTERNS = [
    "*.tmp", "*.swp", "*~", ".DS_Store", "Thumbs.db", "desktop.ini"
]


class EngineSettings(BaseSettings):
    """Versioning engine settings with environment variable support"""
    model_config = SettingsConfigDict(
        env_prefix="SAVEVAULT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        validate_assignment=True
    )

    # Storage location
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".savevault")

    # Change detection
    debounce_window: float = Field(default=1.5, gt=0, le=60.0)
    poll_fallback_interval: float = Field(default=2.0, gt=0, le=3600.0)
    read_max_attempts: int = Field(default=3, ge=1, le=10)
    read_backoff_base: float = Field(default=0.25, gt=0, le=30.0)
    capture_on_register: bool = False
    ignore_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS))

    # Retention
    retention_count: int = Field(default=5, ge=1, le=1000)
    retention_policy: str = "latest"
    retention_max_age_hours: Optional[float] = Field(default=None, gt=0)

    # Compression
    compression_level: int = Field(default=3, ge=1, le=22)
    compression_enabled: bool = True

    # Worker pool for reads and compression
    worker_count: int = Field(default=2, ge=1, le=32)

    # Logging
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    log_to_file: bool = False

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # Environment wins over values read from the config file
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @field_validator('data_dir')
    @classmethod
    def expand_data_dir(cls, v: Path) -> Path:
        return v.expanduser()

    @field_validator('retention_policy')
    @classmethod
    def validate_retention_policy(cls, v: str) -> str:
        """Validate retention policy name"""
        if v.lower() not in VALID_RETENTION_POLICIES:
            raise ValueError(f'Retention policy must be one of: {sorted(VALID_RETENTION_POLICIES)}')
        return v.lower()

    @field_validator('ignore_patterns')
    @classmethod
    def validate_ignore_patterns(cls, v: List[str]) -> List[str]:
        """Validate glob patterns"""
        if any(not pattern.strip() for pattern in v):
            raise ValueError('Ignore patterns cannot be blank')
        return [pattern.strip() for pattern in v]

    @model_validator(mode='after')
    def validate_max_age_policy(self) -> 'EngineSettings':
        if self.retention_policy == 'max_age' and self.retention_max_age_hours is None:
            raise ValueError('retention_max_age_hours is required for the max_age retention policy')
        return self

    @property
    def database_path(self) -> Path:
        """SQLite metadata file"""
        return self.data_dir / "savevault.db"

    @property
    def blob_dir(self) -> Path:
        """Compressed blob directory"""
        return self.data_dir / "blobs"

    @property
    def config_file(self) -> Path:
        return self.data_dir / "config.json"

    def get_log_file(self) -> Optional[Path]:
        """Get log file path if logging to file is enabled"""
        if not self.log_to_file:
            return None
        log_dir = self.data_dir / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir / "savevault.log"
