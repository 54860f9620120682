"""
Unit tests for configuration loader functionality.

Tests data directory resolution, the sectioned JSON config file, overrides
and failure on invalid configuration.
"""

import json
import shutil
import tempfile
from pathlib import Path

import pytest

from config.defaults import CONFIG_FILE_NAME, DEFAULT_SETTINGS, get_default_config
from config.loader import ConfigurationLoader
from core.errors import ConfigurationError
from core.models.config import EngineSettings


class TestConfigurationLoader:
    """Test ConfigurationLoader functionality"""

    def setup_method(self):
        """Setup test environment"""
        self.temp_dir = tempfile.mkdtemp()
        self.temp_path = Path(self.temp_dir)
        self.loader = ConfigurationLoader(self.temp_path)

    def teardown_method(self):
        """Cleanup test environment"""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def write_config(self, data):
        (self.temp_path / CONFIG_FILE_NAME).write_text(json.dumps(data))

    def test_load_without_config_file(self):
        """Test defaults apply when no config file exists"""
        settings = self.loader.load()

        assert isinstance(settings, EngineSettings)
        assert settings.data_dir == self.temp_path
        assert settings.retention_count == 5

    def test_data_dir_from_environment(self, monkeypatch):
        monkeypatch.setenv("SAVEVAULT_DATA_DIR", str(self.temp_path / "env"))
        assert ConfigurationLoader().data_dir == self.temp_path / "env"

    def test_explicit_data_dir_wins(self, monkeypatch):
        monkeypatch.setenv("SAVEVAULT_DATA_DIR", "/elsewhere")
        assert self.loader.data_dir == self.temp_path

    def test_load_sectioned_config(self):
        """Test values are read from config file sections"""
        self.write_config({
            "detection": {"debounce_window": 0.75, "ignore_patterns": ["*.bak"]},
            "retention": {"retention_count": 10, "retention_policy": "keep_first"},
        })

        settings = self.loader.load()

        assert settings.debounce_window == 0.75
        assert settings.ignore_patterns == ["*.bak"]
        assert settings.retention_count == 10
        assert settings.retention_policy == "keep_first"

    def test_load_flat_keys(self):
        self.write_config({"compression_level": 7})
        assert self.loader.load().compression_level == 7

    def test_overrides_beat_config_file(self):
        self.write_config({"detection": {"capture_on_register": False}})

        assert self.loader.load(capture_on_register=True).capture_on_register is True
        assert self.loader.load(capture_on_register=None).capture_on_register is False

    def test_invalid_value_names_field(self):
        """Test invalid configuration fails closed with the field name"""
        self.write_config({"retention": {"retention_count": 0}})

        with pytest.raises(ConfigurationError) as exc_info:
            self.loader.load()
        assert "retention_count" in str(exc_info.value)

    def test_malformed_json(self):
        (self.temp_path / CONFIG_FILE_NAME).write_text("{not json")
        with pytest.raises(ConfigurationError):
            self.loader.load()

    def test_non_object_json(self):
        self.write_config([1, 2, 3])
        with pytest.raises(ConfigurationError):
            self.loader.load()

    def test_save_and_reload(self):
        settings = EngineSettings(data_dir=self.temp_path, retention_count=8, compression_level=12)

        path = self.loader.save(settings)
        data = json.loads(path.read_text())

        assert set(data) == set(DEFAULT_SETTINGS)
        assert data["retention"]["retention_count"] == 8
        assert self.loader.load().compression_level == 12

    def test_write_default_config(self):
        path = self.loader.write_default_config()
        data = json.loads(path.read_text())

        assert data["storage"]["data_dir"] == str(self.temp_path)
        assert data["detection"] == get_default_config()["detection"]

    def test_write_default_config_refuses_overwrite(self):
        self.loader.write_default_config()
        with pytest.raises(ConfigurationError):
            self.loader.write_default_config()

        assert self.loader.write_default_config(overwrite=True).exists()

    def test_default_config_is_a_copy(self):
        config = get_default_config()
        config["retention"]["retention_count"] = 99
        assert DEFAULT_SETTINGS["retention"]["retention_count"] == 5

    def test_defaults_match_settings_model(self, tmp_path):
        """Test every default section key is a settings field with the same default"""
        settings = EngineSettings(data_dir=tmp_path).model_dump()
        for section, values in DEFAULT_SETTINGS.items():
            for key, value in values.items():
                assert key in settings
                if key != "data_dir":
                    assert settings[key] == value, f"{section}.{key}"
