"""Test suite for configuration loading.

This test suite validates:
- Config path resolution (environment variable, default location)
- Dynamic resolution with no module-level caching
- Defaults merging and validation errors
- Service account credential wiring
"""
import json
import os
from pathlib import Path

import pytest
import yaml

from secretsync.secrets.domains import config_loader
from secretsync.secrets.domains.config_loader import ConfigError


@pytest.fixture
def temp_home(tmp_path, monkeypatch):
    """Fixture to create a temporary home directory for testing."""
    fake_home = tmp_path / "home"
    fake_home.mkdir()
    monkeypatch.setenv("HOME", str(fake_home))
    monkeypatch.setattr(Path, "home", lambda: fake_home)
    monkeypatch.delenv(config_loader.CONFIG_ENV_VAR, raising=False)
    return fake_home


@pytest.fixture
def temp_config_dir(temp_home):
    """Fixture to create temporary config directory."""
    config_dir = temp_home / ".config" / "secretsync"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@pytest.fixture
def sa_file(tmp_path):
    """Dummy service account key file."""
    path = tmp_path / "test-sa.json"
    path.write_text(json.dumps({"type": "service_account"}))
    return path


@pytest.fixture
def write_config(temp_config_dir):
    """Write a config file (default location unless a path is given)."""

    def write(content, path=None):
        path = path or temp_config_dir / "config.yml"
        with open(path, 'w') as f:
            if isinstance(content, str):
                f.write(content)
            else:
                yaml.dump(content, f)
        return path

    return write


class TestConfigPath:
    """Test suite for config path resolution."""

    def test_default_location(self, temp_home):
        """Test _get_config_path returns the default location when no override is set."""
        assert config_loader._get_config_path() == temp_home / ".config" / "secretsync" / "config.yml"

    def test_environment_override(self, temp_home, tmp_path, monkeypatch):
        """Test the environment variable takes priority over the default location."""
        custom = tmp_path / "custom.yml"
        monkeypatch.setenv(config_loader.CONFIG_ENV_VAR, str(custom))

        assert config_loader._get_config_path() == custom

    def test_config_path_not_cached_at_module_level(self, temp_home, tmp_path, monkeypatch, write_config):
        """Changing the environment takes effect on the next load without a restart."""
        config1 = write_config({"gcp": {"project_id": "project-one"}}, tmp_path / "config1.yml")
        config2 = write_config({"gcp": {"project_id": "project-two"}}, tmp_path / "config2.yml")

        monkeypatch.setenv(config_loader.CONFIG_ENV_VAR, str(config1))
        assert config_loader.load_config()["gcp"]["project_id"] == "project-one"

        monkeypatch.setenv(config_loader.CONFIG_ENV_VAR, str(config2))
        assert config_loader.load_config()["gcp"]["project_id"] == "project-two"


class TestLoadConfig:
    """Test suite for load_config."""

    def test_missing_default_file_uses_defaults(self, temp_home):
        """A missing default config is not an error."""
        config = config_loader.load_config()

        assert config == config_loader.DEFAULTS
        assert config is not config_loader.DEFAULTS

    def test_missing_explicit_file_raises(self, temp_home, tmp_path):
        """An explicitly named config must exist."""
        with pytest.raises(ConfigError) as exc_info:
            config_loader.load_config(str(tmp_path / "nope.yml"))

        assert "Configuration file not found" in str(exc_info.value)

    def test_missing_environment_file_raises(self, temp_home, tmp_path, monkeypatch):
        """A config named by the environment variable must exist."""
        monkeypatch.setenv(config_loader.CONFIG_ENV_VAR, str(tmp_path / "nope.yml"))

        with pytest.raises(ConfigError):
            config_loader.load_config()

    def test_partial_config_merges_with_defaults(self, temp_home, write_config):
        """Sections and keys absent from the file fall back to defaults."""
        write_config({"gcp": {"project_id": "test-project"}, "backend": {"concurrency": 4}})

        config = config_loader.load_config()

        assert config["gcp"]["project_id"] == "test-project"
        assert config["backend"] == {"concurrency": 4, "retries": 3}
        assert config["authentication"]["type"] == "application_default"
        assert config["convergence"]["timeout"] == 60

    def test_service_account_success(self, temp_home, write_config, sa_file):
        """Test load_config succeeds with a valid service account config."""
        write_config({
            "authentication": {"type": "service_account", "service_account_path": str(sa_file)},
            "gcp": {"project_id": "test-project"},
        })

        config = config_loader.load_config()

        assert config["authentication"]["type"] == "service_account"
        assert config["authentication"]["service_account_path"] == str(sa_file)

    def test_service_account_file_must_exist(self, temp_home, write_config):
        """Test load_config validates service account file exists."""
        write_config({
            "authentication": {"type": "service_account", "service_account_path": "/nonexistent/sa.json"},
        })

        with pytest.raises(ConfigError) as exc_info:
            config_loader.load_config()

        assert "Service account file not found" in str(exc_info.value)

    def test_service_account_path_required(self, temp_home, write_config):
        write_config({"authentication": {"type": "service_account"}})

        with pytest.raises(ConfigError) as exc_info:
            config_loader.load_config()

        assert "service_account_path" in str(exc_info.value)

    def test_unsupported_auth_type(self, temp_home, write_config):
        write_config({"authentication": {"type": "api_key"}})

        with pytest.raises(ConfigError) as exc_info:
            config_loader.load_config()

        assert "Unsupported authentication type" in str(exc_info.value)

    @pytest.mark.parametrize("content, message", [
        ("", "is empty"),
        ("- a\n- b\n", "must contain a mapping"),
        ("gcp: [unclosed", "Failed to parse YAML"),
        ("gcp: project\n", "Section 'gcp'"),
        ("backend:\n  concurrency: 0\n", "at least 1"),
        ("convergence:\n  timeout: soon\n", "non-negative number"),
    ])
    def test_invalid_files(self, temp_home, write_config, content, message):
        write_config(content)

        with pytest.raises(ConfigError) as exc_info:
            config_loader.load_config()

        assert message in str(exc_info.value)


class TestApplyCredentials:
    """Test suite for apply_credentials."""

    def test_sets_google_application_credentials(self, monkeypatch, sa_file):
        monkeypatch.setenv("GOOGLE_APPLICATION_CREDENTIALS", "unset")

        config_loader.apply_credentials({
            "authentication": {"type": "service_account", "service_account_path": str(sa_file)},
        })

        assert os.environ["GOOGLE_APPLICATION_CREDENTIALS"] == str(sa_file)

    def test_application_default_leaves_environment_alone(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_APPLICATION_CREDENTIALS", "unset")
        monkeypatch.delenv("GOOGLE_APPLICATION_CREDENTIALS")

        config_loader.apply_credentials({"authentication": {"type": "application_default"}})

        assert "GOOGLE_APPLICATION_CREDENTIALS" not in os.environ
