"""Tests for path utilities."""

from pathlib import Path

from carddav_sync.utils.paths import (
    CONFIG_DIR_ENV_VAR,
    DEFAULT_CONFIG_DIR,
    PID_FILE_NAME,
    STORE_FILE_NAME,
    config_path,
    resolve_config_dir,
)


class TestDefaultConfigDir:
    """Test DEFAULT_CONFIG_DIR constant."""

    def test_default_config_dir_is_in_home(self):
        """Default config dir should be in user's home directory."""
        assert Path.home() / ".carddav-sync" == DEFAULT_CONFIG_DIR


class TestResolveConfigDir:
    """Test resolve_config_dir function."""

    def test_explicit_path_string(self, tmp_path):
        """Explicit path string should be used."""
        assert resolve_config_dir(str(tmp_path)) == tmp_path.resolve()

    def test_explicit_path_with_tilde(self):
        """Explicit path with ~ should be expanded."""
        assert resolve_config_dir("~/custom-config") == Path.home() / "custom-config"

    def test_env_var_override(self, tmp_path, monkeypatch):
        """Environment variable should be used when no explicit path is given."""
        monkeypatch.setenv(CONFIG_DIR_ENV_VAR, str(tmp_path))
        assert resolve_config_dir(None) == tmp_path.resolve()

    def test_empty_env_var_is_ignored(self, monkeypatch):
        """An empty environment variable falls back to the default."""
        monkeypatch.setenv(CONFIG_DIR_ENV_VAR, "")
        assert resolve_config_dir() == DEFAULT_CONFIG_DIR.expanduser().resolve()

    def test_default_when_no_explicit_and_no_env(self, monkeypatch):
        """Default should be used when no explicit path and no env var."""
        monkeypatch.delenv(CONFIG_DIR_ENV_VAR, raising=False)
        assert resolve_config_dir() == DEFAULT_CONFIG_DIR.expanduser().resolve()

    def test_explicit_overrides_env_var(self, tmp_path, monkeypatch):
        """Explicit path should override environment variable."""
        monkeypatch.setenv(CONFIG_DIR_ENV_VAR, str(tmp_path / "env"))
        explicit = tmp_path / "explicit"

        assert resolve_config_dir(explicit) == explicit.resolve()

    def test_relative_path_becomes_absolute(self, tmp_path, monkeypatch):
        """Relative paths are resolved against the working directory."""
        monkeypatch.chdir(tmp_path)
        result = resolve_config_dir("relative-dir")
        assert result.is_absolute()
        assert result == (tmp_path / "relative-dir").resolve()


class TestConfigPath:
    """Test config_path function."""

    def test_store_file_in_explicit_dir(self, tmp_path):
        """Files are placed directly inside the given directory."""
        expected = tmp_path.resolve() / "contacts.db"
        assert config_path(STORE_FILE_NAME, tmp_path) == expected

    def test_pid_file_follows_env_var(self, tmp_path, monkeypatch):
        """Without an explicit directory the env var decides."""
        monkeypatch.setenv(CONFIG_DIR_ENV_VAR, str(tmp_path))
        assert config_path(PID_FILE_NAME) == tmp_path.resolve() / "daemon.pid"
