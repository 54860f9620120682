"""
Unit tests for engine settings.

Tests defaults, validation that fails closed, environment overrides and
derived paths.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from core.models.config import DEFAULT_IGNORE_PATTERNS, EngineSettings


class TestEngineSettings:
    """Test EngineSettings validation"""

    def test_defaults(self, tmp_path):
        settings = EngineSettings(data_dir=tmp_path)

        assert settings.debounce_window == 1.5
        assert settings.retention_count == 5
        assert settings.retention_policy == "latest"
        assert settings.compression_level == 3
        assert settings.compression_enabled is True
        assert settings.capture_on_register is False
        assert settings.ignore_patterns == DEFAULT_IGNORE_PATTERNS

    def test_ignore_patterns_not_shared(self, tmp_path):
        """Test each settings object gets its own pattern list"""
        first = EngineSettings(data_dir=tmp_path)
        first.ignore_patterns.append("*.bak")
        assert "*.bak" not in EngineSettings(data_dir=tmp_path).ignore_patterns

    def test_derived_paths(self, tmp_path):
        settings = EngineSettings(data_dir=tmp_path)

        assert settings.database_path == tmp_path / "savevault.db"
        assert settings.blob_dir == tmp_path / "blobs"
        assert settings.config_file == tmp_path / "config.json"

    def test_data_dir_expands_user(self):
        settings = EngineSettings(data_dir="~/vault")
        assert settings.data_dir == Path.home() / "vault"

    @pytest.mark.parametrize("field,value", [
        ("debounce_window", 0),
        ("debounce_window", -1.0),
        ("retention_count", 0),
        ("compression_level", 0),
        ("compression_level", 23),
        ("worker_count", 0),
        ("read_max_attempts", 0),
        ("poll_fallback_interval", 0),
        ("log_level", "VERBOSE"),
        ("retention_policy", "forever"),
    ])
    def test_invalid_values_rejected(self, tmp_path, field, value):
        """Test out-of-range values raise instead of clamping"""
        with pytest.raises(ValidationError):
            EngineSettings(data_dir=tmp_path, **{field: value})

    def test_retention_policy_case_insensitive(self, tmp_path):
        assert EngineSettings(data_dir=tmp_path, retention_policy="Keep_First").retention_policy == "keep_first"

    def test_max_age_requires_hours(self, tmp_path):
        with pytest.raises(ValidationError):
            EngineSettings(data_dir=tmp_path, retention_policy="max_age")

    def test_blank_ignore_pattern_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            EngineSettings(data_dir=tmp_path, ignore_patterns=["*.tmp", "  "])

    def test_environment_overrides(self, tmp_path, monkeypatch):
        """Test SAVEVAULT_* variables win over explicit values"""
        monkeypatch.setenv("SAVEVAULT_RETENTION_COUNT", "9")
        monkeypatch.setenv("SAVEVAULT_DEBOUNCE_WINDOW", "0.5")

        settings = EngineSettings(data_dir=tmp_path, retention_count=3)

        assert settings.retention_count == 9
        assert settings.debounce_window == 0.5

    def test_invalid_environment_value(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SAVEVAULT_COMPRESSION_LEVEL", "99")
        with pytest.raises(ValidationError):
            EngineSettings(data_dir=tmp_path)

    def test_log_file(self, tmp_path):
        assert EngineSettings(data_dir=tmp_path).get_log_file() is None

        log_file = EngineSettings(data_dir=tmp_path, log_to_file=True).get_log_file()
        assert log_file == tmp_path / "logs" / "savevault.log"
        assert log_file.parent.is_dir()
