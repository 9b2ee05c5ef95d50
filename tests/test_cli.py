"""
Tests for the CLI module.

Tests the command-line interface using Click's testing utilities. The
orchestrator and the daemon runner are mocked; no bridge is contacted.
"""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import yaml
from click.testing import CliRunner

from carddav_sync.cli import DEFAULT_CONFIG_DIR, cli, get_config_dir, get_config_file
from carddav_sync.daemon import DaemonAlreadyRunningError
from carddav_sync.storage.db import ContactStore
from carddav_sync.sync.contact import Ownership
from carddav_sync.sync.orchestrator import (
    ConnectResult,
    OperationResult,
    ScheduleResult,
    SyncOrchestrator,
    SyncStatus,
)
from carddav_sync.sync.protection import ProtectionResult
from carddav_sync.sync.pull import AbortReason, PullResult
from carddav_sync.sync.push import BatchResult

WORK = {
    "profile_name": "work",
    "server_url": "https://dav.example.com/dav.php",
    "username": "ada",
    "password_env": "WORK_PASSWORD",
}


@pytest.fixture(autouse=True)
def quiet_logging():
    with (
        patch("carddav_sync.cli.main.setup_logging"),
        patch("carddav_sync.cli.main.cleanup_old_logs"),
    ):
        yield


@pytest.fixture
def config_dir(tmp_path):
    (tmp_path / "config.yaml").write_text(yaml.safe_dump({"connections": [WORK]}))
    return tmp_path


@pytest.fixture
def orchestrator():
    mock_orchestrator = MagicMock(spec=SyncOrchestrator)
    mock_orchestrator.connect.return_value = ConnectResult("work", success=True)
    with patch("carddav_sync.cli.main.SyncOrchestrator") as mock_class:
        mock_class.from_settings.return_value = mock_orchestrator
        yield mock_orchestrator


def invoke(config_dir, *args):
    return CliRunner().invoke(cli, ["--config-dir", str(config_dir), *args])


class TestHelperFunctions:
    """Tests for CLI helper functions."""

    def test_default_config_dir_is_in_home(self):
        """Test that DEFAULT_CONFIG_DIR is in user's home directory."""
        assert Path.home() / ".carddav-sync" == DEFAULT_CONFIG_DIR

    def test_get_config_dir_with_custom_path(self, tmp_path):
        """Test get_config_dir returns the resolved custom path."""
        assert get_config_dir(str(tmp_path)) == tmp_path.resolve()

    def test_get_config_file_defaults_to_config_yaml(self, tmp_path):
        """Test get_config_file falls back to config.yaml in the dir."""
        assert get_config_file(None, tmp_path) == tmp_path / "config.yaml"

    def test_get_config_file_explicit(self, tmp_path):
        """Test an explicit config file wins."""
        assert get_config_file("/etc/sync.yaml", tmp_path) == Path("/etc/sync.yaml")


class TestCliGroup:
    """Tests for the main CLI group."""

    def test_cli_help(self):
        """Test that CLI shows help."""
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "CardDAV Contact Sync" in result.output

    def test_cli_version(self):
        """Test that CLI shows version."""
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "carddav-sync" in result.output

    def test_broken_config_is_a_warning(self, tmp_path):
        """Test that an invalid config file does not stop the CLI."""
        (tmp_path / "config.yaml").write_text("push_concurrency: 0\n")

        result = invoke(tmp_path, "capabilities", "https://contacts.icloud.com")

        assert result.exit_code == 0
        assert "Warning: Configuration error" in result.output

    def test_verbose_from_config(self, tmp_path):
        """Test that verbose in the config enables verbose logging."""
        (tmp_path / "config.yaml").write_text("verbose: true\n")

        with patch("carddav_sync.cli.main.setup_logging") as mock_setup:
            invoke(tmp_path, "capabilities", "https://contacts.icloud.com")

        assert mock_setup.call_args[1]["verbose"] is True


class TestInitConfigCommand:
    """Tests for the init-config command."""

    def test_creates_file(self, tmp_path):
        """Test that init-config writes the documented template."""
        result = invoke(tmp_path, "init-config")

        assert result.exit_code == 0
        assert "created successfully" in result.output
        assert "# CardDAV Sync Configuration" in (tmp_path / "config.yaml").read_text()

    def test_refuses_to_overwrite(self, config_dir):
        """Test that an existing file needs --force."""
        result = invoke(config_dir, "init-config")

        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_force_overwrites(self, config_dir):
        """Test that --force replaces the file."""
        result = invoke(config_dir, "init-config", "--force")

        assert result.exit_code == 0
        assert "# CardDAV Sync Configuration" in (config_dir / "config.yaml").read_text()


class TestStatusCommand:
    """Tests for the status command."""

    def test_status_without_store(self, config_dir):
        """Test status before any sync has run."""
        result = invoke(config_dir, "status")

        assert result.exit_code == 0
        assert "Not initialized" in result.output
        assert "Scheduled sync: not running" in result.output

    def test_status_with_store(self, config_dir, orchestrator):
        """Test status counts contacts and shows each connection."""
        store = ContactStore(str(config_dir / "contacts.db"))
        store.initialize()
        store.create("BEGIN:VCARD\nUID:a\nEND:VCARD", Ownership.OWNED)
        store.create("BEGIN:VCARD\nUID:b\nEND:VCARD", Ownership.SHARED)
        orchestrator.store = store
        orchestrator.get_status.return_value = SyncStatus(
            "work", last_pull_at="2026-01-01T00:00:00+00:00"
        )

        result = invoke(config_dir, "status")
        store.close()

        assert result.exit_code == 0
        assert "Contacts: 2 (1 owned, 0 imported, 1 shared)" in result.output
        assert "--- work ---" in result.output
        assert "Last pull: 2026-01-01T00:00:00+00:00" in result.output
        orchestrator.shutdown.assert_called_once()

    def test_status_unknown_profile(self, config_dir):
        """Test status for a profile that is not configured."""
        result = invoke(config_dir, "status", "--profile", "phone")

        assert result.exit_code == 1
        assert "No connection named 'phone'" in result.output

    def test_status_no_connections(self, tmp_path):
        """Test the hint shown without connections."""
        result = invoke(tmp_path, "status")

        assert result.exit_code == 0
        assert "No connections configured" in result.output


class TestCycleCommands:
    """Tests for pull, push and protect."""

    def test_pull(self, config_dir, orchestrator):
        """Test a successful pull."""
        orchestrator.pull.return_value = PullResult("work", fetched=3, created=2)

        result = invoke(config_dir, "pull", "--profile", "work")

        assert result.exit_code == 0
        assert "Pull Summary (work)" in result.output
        assert "Imported: 2" in result.output
        orchestrator.connect.assert_called_once()
        assert orchestrator.connect.call_args[0][0].profile_name == "work"
        orchestrator.shutdown.assert_called_once()

    def test_pull_failure_exits_nonzero(self, config_dir, orchestrator):
        """Test that a failed pull exits with status 1."""
        orchestrator.pull.return_value = PullResult(
            "work",
            success=False,
            safety_abort=AbortReason.SERVER_UNAVAILABLE,
            error="HTTP 503",
        )

        result = invoke(config_dir, "pull", "--profile", "work")

        assert result.exit_code == 1
        assert "No contacts were imported or deleted" in result.output

    def test_pull_empty_response_warning(self, config_dir, orchestrator):
        """Test that an empty-response abort is shown as a warning."""
        orchestrator.pull.return_value = PullResult(
            "work", safety_abort=AbortReason.EMPTY_RESPONSE
        )

        result = invoke(config_dir, "pull", "--profile", "work")

        assert result.exit_code == 0
        assert "No local contacts were deleted" in result.output

    def test_connect_failure(self, config_dir, orchestrator):
        """Test that a failed connect stops the command."""
        orchestrator.connect.return_value = ConnectResult(
            "work", success=False, error="bad password"
        )

        result = invoke(config_dir, "pull", "--profile", "work")

        assert result.exit_code == 1
        assert "Could not connect 'work': bad password" in result.output
        orchestrator.pull.assert_not_called()

    def test_unknown_profile(self, config_dir, orchestrator):
        """Test a profile missing from the config."""
        result = invoke(config_dir, "push", "--profile", "phone")

        assert result.exit_code == 1
        assert "No connection named 'phone'" in result.output
        orchestrator.connect.assert_not_called()

    def test_push(self, config_dir, orchestrator):
        """Test a successful push."""
        orchestrator.push_all.return_value = BatchResult("work", total=2, pushed=2)

        result = invoke(config_dir, "push", "--profile", "work")

        assert result.exit_code == 0
        assert "Pushed: 2" in result.output

    def test_push_aborted(self, config_dir, orchestrator):
        """Test that an aborted push exits with status 1."""
        orchestrator.push_all.return_value = BatchResult(
            "work", total=5, failed=2, aborted=True, error="bridge unreachable"
        )

        result = invoke(config_dir, "push", "--profile", "work")

        assert result.exit_code == 1
        assert "ABORTED: bridge unreachable (3 not attempted)" in result.output

    def test_protect(self, config_dir, orchestrator):
        """Test a detection cycle listing overwritten contacts."""
        orchestrator.protect.return_value = ProtectionResult(
            "work",
            "client_side_validation",
            checked=1,
            corrected=1,
            corrected_contacts=["Ada Lovelace"],
        )

        result = invoke(config_dir, "protect", "--profile", "work")

        assert result.exit_code == 0
        assert "1 corrected" in result.output
        assert "~ Ada Lovelace" in result.output
        orchestrator.refresh_shared.assert_not_called()

    def test_protect_refresh(self, config_dir, orchestrator):
        """Test that --refresh runs the refresh cycle."""
        orchestrator.refresh_shared.return_value = ProtectionResult(
            "work", "client_side_validation", refreshed=4
        )

        result = invoke(config_dir, "protect", "--profile", "work", "--refresh")

        assert result.exit_code == 0
        assert "4 refreshed" in result.output
        orchestrator.protect.assert_not_called()


class TestHealthCommand:
    """Tests for the health command."""

    def test_healthy(self, config_dir, orchestrator):
        """Test a reachable bridge."""
        orchestrator.health.return_value = OperationResult(True, message="bridge ok")

        result = invoke(config_dir, "health")

        assert result.exit_code == 0
        assert "bridge ok" in result.output

    def test_unhealthy(self, config_dir, orchestrator):
        """Test an unreachable bridge."""
        orchestrator.health.return_value = OperationResult(False, error="refused")

        result = invoke(config_dir, "health")

        assert result.exit_code == 1
        assert "unhealthy: refused" in result.output


class TestCapabilitiesCommand:
    """Tests for the capabilities command."""

    def test_detected_from_url(self, tmp_path):
        """Test detection of a single-book server."""
        result = invoke(tmp_path, "capabilities", "https://contacts.icloud.com")

        assert result.exit_code == 0
        assert "Server type: iCloud" in result.output
        assert "client_side_validation" in result.output

    def test_explicit_server_type(self, tmp_path):
        """Test that --server-type skips detection."""
        result = invoke(
            tmp_path,
            "capabilities",
            "https://contacts.example.org",
            "--server-type",
            "icloud",
        )

        assert result.exit_code == 0
        assert "Server type: iCloud" in result.output


class TestRunCommand:
    """Tests for the run command."""

    @pytest.fixture
    def runner_class(self):
        with patch("carddav_sync.cli.main.DaemonRunner") as mock_class:
            mock_class.return_value.run.side_effect = (
                lambda on_start, on_stop: (on_start(), on_stop())
            )
            yield mock_class

    def test_run_schedules_connections(self, config_dir, orchestrator, runner_class):
        """Test that every configured connection is scheduled."""
        orchestrator.start_scheduled_sync.return_value = ScheduleResult(
            "work", success=True
        )

        result = invoke(config_dir, "run", "--initial-sync")

        assert result.exit_code == 0
        assert "Scheduled work (without shared-contact protection)" in result.output
        assert "Stopped gracefully" in result.output
        orchestrator.start_scheduled_sync.assert_called_once_with(
            "work", run_initial_sync=True
        )
        orchestrator.shutdown.assert_called_once()
        assert runner_class.call_args[1]["pid_file"].name == "daemon.pid"

    def test_run_without_connections(self, tmp_path, orchestrator, runner_class):
        """Test that run needs at least one connection."""
        result = invoke(tmp_path, "run")

        assert result.exit_code == 1
        assert "No connections configured" in result.output
        runner_class.assert_not_called()

    def test_run_already_running(self, config_dir, orchestrator, runner_class):
        """Test that a second daemon is refused."""
        runner_class.return_value.run.side_effect = DaemonAlreadyRunningError(
            "Daemon is already running (PID 42)"
        )

        result = invoke(config_dir, "run")

        assert result.exit_code == 1
        assert "PID 42" in result.output
        orchestrator.shutdown.assert_called_once()

    def test_run_schedule_failure(self, config_dir, orchestrator, runner_class):
        """Test that a connection that cannot be scheduled stops the daemon."""
        orchestrator.start_scheduled_sync.return_value = ScheduleResult(
            "work", success=False, error="invalid interval"
        )

        result = invoke(config_dir, "run")

        assert result.exit_code == 1
        assert "Could not schedule 'work': invalid interval" in result.output
