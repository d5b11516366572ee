"""Tests for configuration loading."""

import pytest

from syncengine.config import Config, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove SYNCENGINE_ overrides from the environment."""
    for key in ("HOST", "PORT", "UI_PATH", "DATABASE_PATH", "RECOVER_ON_STARTUP"):
        monkeypatch.delenv(f"SYNCENGINE_{key}", raising=False)


class TestDefaults:
    """Tests for default configuration."""

    def test_defaults(self):
        """Test config without a file uses defaults."""
        config = load_config()

        assert config.server.host == "0.0.0.0"
        assert config.server.port == 8080
        assert config.storage.db_path == "~/.syncengine/sync.db"
        assert config.sync.recover_on_startup is True

    def test_missing_file_uses_defaults(self, tmp_path):
        """Test a nonexistent path falls back to defaults."""
        config = load_config(tmp_path / "absent.yaml")

        assert config == Config()


class TestYamlLoading:
    """Tests for YAML parsing."""

    def test_load_yaml(self, tmp_path):
        """Test values are read from YAML."""
        path = tmp_path / "config.yaml"
        path.write_text(
            "server:\n"
            "  port: 9000\n"
            "  ui_path: /srv/ui\n"
            "storage:\n"
            "  db_path: /data/sync.db\n"
            "sync:\n"
            "  recover_on_startup: false\n"
        )

        config = load_config(path)

        assert config.server.port == 9000
        assert config.server.host == "0.0.0.0"
        assert config.server.ui_path == "/srv/ui"
        assert config.storage.db_path == "/data/sync.db"
        assert config.sync.recover_on_startup is False

    def test_empty_yaml(self, tmp_path):
        """Test an empty file yields defaults."""
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert load_config(path) == Config()


class TestEnvOverrides:
    """Tests for SYNCENGINE_ environment variables."""

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        """Test environment variables win over file values."""
        path = tmp_path / "config.yaml"
        path.write_text("storage:\n  db_path: /from/file.db\n")
        monkeypatch.setenv("SYNCENGINE_DATABASE_PATH", "/from/env.db")
        monkeypatch.setenv("SYNCENGINE_PORT", "7070")

        config = load_config(path)

        assert config.storage.db_path == "/from/env.db"
        assert config.server.port == 7070

    @pytest.mark.parametrize("value,expected", [("true", True), ("0", False), ("no", False)])
    def test_recover_flag(self, monkeypatch, value, expected):
        """Test boolean parsing of the recovery flag."""
        monkeypatch.setenv("SYNCENGINE_RECOVER_ON_STARTUP", value)

        assert load_config().sync.recover_on_startup is expected
