"""Tests for config/loader.py and config/settings.py."""

from pathlib import Path

import pytest

from stagecraft.cli.context import load_settings
from stagecraft.config.loader import CommandDefaults, get_config_path, load_defaults
from stagecraft.config.settings import Settings, get_settings
from stagecraft.core.errors import ConfigurationError


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    (tmp_path / "home").mkdir()
    return tmp_path


class TestGetConfigPath:
    """Tests for config file discovery."""

    def test_explicit_path(self, tmp_path):
        """Test an explicit path that exists is returned as-is."""
        config = tmp_path / "custom.yaml"
        config.write_text("defaults: {}\n")

        assert get_config_path(config) == config

    def test_explicit_missing_path_raises(self, tmp_path):
        """Test a missing explicit path is a configuration error."""
        with pytest.raises(ConfigurationError, match="Config file not found"):
            get_config_path(tmp_path / "missing.yaml")

    def test_project_config_before_home(self, isolated):
        """Test .stagecraft/config.yaml in the working directory wins."""
        for root in (isolated, isolated / "home"):
            (root / ".stagecraft").mkdir()
            (root / ".stagecraft" / "config.yaml").write_text("defaults: {}\n")

        assert get_config_path() == Path.cwd() / ".stagecraft" / "config.yaml"

    def test_home_config(self, isolated):
        (isolated / "home" / ".stagecraft").mkdir()
        (isolated / "home" / ".stagecraft" / "config.yaml").write_text("defaults: {}\n")

        assert get_config_path() == isolated / "home" / ".stagecraft" / "config.yaml"

    def test_no_config(self, isolated):
        assert get_config_path() is None


class TestLoadDefaults:
    """Tests for loading command defaults."""

    def test_no_file_gives_empty_defaults(self, isolated):
        defaults = load_defaults()

        assert defaults.values == {}
        assert defaults.source is None

    def test_known_keys_only(self, tmp_path):
        """Test unknown keys are dropped with a warning."""
        config = tmp_path / "config.yaml"
        config.write_text(
            "defaults:\n"
            "  prefix: hello-spa\n"
            "  domains: [example.com, www.example.com]\n"
            "  colour: blue\n"
        )

        defaults = load_defaults(config)

        assert defaults.values == {
            "prefix": "hello-spa",
            "domains": ["example.com", "www.example.com"],
        }
        assert defaults.source == config

    def test_invalid_yaml(self, tmp_path):
        config = tmp_path / "config.yaml"
        config.write_text("defaults: [unclosed\n")

        with pytest.raises(ConfigurationError, match="not valid YAML"):
            load_defaults(config)

    def test_non_mapping(self, tmp_path):
        config = tmp_path / "config.yaml"
        config.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError, match="must contain a mapping"):
            load_defaults(config)

    def test_apply_keeps_explicit_values(self):
        defaults = CommandDefaults(values={"region": "eu-west-1", "vpc": "vpc-1"})

        merged = defaults.apply({"region": "us-east-1", "vpc": None})

        assert merged == {"region": "us-east-1", "vpc": "vpc-1"}


class TestSettings:
    """Tests for environment-driven settings."""

    def test_defaults(self, isolated):
        settings = Settings()

        assert settings.certificate_region == "us-east-1"
        assert settings.certificate_poll_interval == 30
        assert settings.certificate_max_attempts == 30
        assert settings.distribution_max_attempts == 90

    def test_environment_override(self, isolated, monkeypatch):
        monkeypatch.setenv("STAGECRAFT_DISTRIBUTION_MAX_ATTEMPTS", "12")
        monkeypatch.setenv("STAGECRAFT_DATA_DIR", "/var/lib/stagecraft")

        settings = Settings()

        assert settings.distribution_max_attempts == 12
        assert settings.data_dir == Path("/var/lib/stagecraft")

    def test_data_dir_flag_overrides(self, isolated):
        get_settings.cache_clear()

        settings = load_settings(isolated / "artifacts")

        assert settings.data_dir == isolated / "artifacts"
        assert get_settings().data_dir != settings.data_dir
