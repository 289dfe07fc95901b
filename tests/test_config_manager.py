"""
Tests for configuration and home directory layout (penv/core/config_manager.py).
"""

import json

import pytest

from penv.core.config_manager import (
    ConfigManager,
    ConfigValidationError,
    detect_target_triple,
    get_default_home,
)


class TestDefaultHome:
    """Tests for get_default_home."""

    def test_env_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PENUMBRA_PENV_HOME", str(tmp_path / "custom"))
        assert get_default_home() == tmp_path / "custom"

    def test_xdg_data_home(self, monkeypatch, tmp_path):
        monkeypatch.delenv("PENUMBRA_PENV_HOME", raising=False)
        monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path))
        assert get_default_home() == tmp_path / "penv"


class TestConfigManager:
    """Tests for ConfigManager."""

    def test_missing_file_created_with_defaults(self, home):
        """Test a missing config.json is written from defaults."""
        manager = ConfigManager(home)
        assert manager.get_binaries() == ["pcli", "pclientd", "pd"]
        assert manager.CONFIG_FILE.exists()

    def test_backfills_new_fields(self, home):
        """Test older config files gain new settings."""
        home.mkdir(parents=True)
        (home / "config.json").write_text(json.dumps({"settings": {"repository": "fork/penumbra"}}))

        manager = ConfigManager(home)
        assert manager.get_repository() == "fork/penumbra"
        assert manager.get_default_pd_join_port() == 26657

    def test_corrupt_file_falls_back(self, home):
        """Test unparseable JSON falls back to defaults."""
        home.mkdir(parents=True)
        (home / "config.json").write_text("{broken")

        assert ConfigManager(home).get_request_timeout() == 30

    def test_set_setting_validates(self, home):
        """Test set_setting rejects unknown keys and wrong types."""
        manager = ConfigManager(home)
        with pytest.raises(ConfigValidationError):
            manager.set_setting("unknown", 1)
        with pytest.raises(ConfigValidationError):
            ConfigManager(home).set_setting("max_download_workers", 0)

    def test_target_triple_override(self, config_manager):
        assert config_manager.get_target_triple() == "x86_64-unknown-linux-gnu"

    def test_detect_target_triple_shape(self):
        assert len(detect_target_triple().split("-")) >= 3

    def test_lock_path(self, config_manager):
        """Test lock files live under locks/."""
        path = config_manager.lock_path("cache")
        assert path == config_manager.LOCKS_DIR / "cache.lock"
        assert path.parent.is_dir()
