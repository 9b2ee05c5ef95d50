"""
Command-line interface for carddav_sync.

Provides CLI commands for pulling, pushing, shared-contact protection,
status checks and running scheduled synchronization of the configured
CardDAV connections.

Usage:
    # Show help
    carddav-sync --help

    # Create a documented config file
    carddav-sync init-config

    # One-off cycles
    carddav-sync pull --profile work
    carddav-sync push --profile work
    carddav-sync protect --profile phone --refresh

    # Run scheduled sync in the foreground
    carddav-sync run --initial-sync
"""

import sys
from pathlib import Path
from typing import NoReturn

import click

from carddav_sync import __version__
from carddav_sync.cli.formatters import (
    show_capabilities,
    show_protection_result,
    show_pull_result,
    show_push_result,
    show_status,
)
from carddav_sync.config.generator import save_config_file
from carddav_sync.config.loader import DEFAULT_CONFIG_FILE, ConfigError, ConfigLoader
from carddav_sync.config.sync_config import SyncConfigError, SyncSettings
from carddav_sync.daemon import DaemonAlreadyRunningError, DaemonError, DaemonRunner
from carddav_sync.storage.db import StoreError
from carddav_sync.sync.capabilities import SERVER_TYPES, detect_capabilities
from carddav_sync.sync.orchestrator import SyncOrchestrator
from carddav_sync.utils import PID_FILE_NAME, config_path, resolve_config_dir
from carddav_sync.utils.logging import cleanup_old_logs, get_logger, setup_logging


def get_config_dir(config_dir: str | None) -> Path:
    """Get the configuration directory path."""
    return resolve_config_dir(config_dir)


def get_config_file(config_file: str | None, config_dir: Path) -> Path:
    """Get the configuration file path."""
    if config_file:
        return Path(config_file)
    return config_dir / DEFAULT_CONFIG_FILE


def fail(message: str) -> NoReturn:
    """Print an error and exit with status 1."""
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(1)


def load_settings(ctx: click.Context) -> SyncSettings:
    """Build typed settings from the loaded config, exiting on errors."""
    try:
        return SyncSettings.from_dict(ctx.obj["config"], ctx.obj["config_dir"])
    except SyncConfigError as e:
        fail(f"Invalid configuration: {e}")


def build_orchestrator(settings: SyncSettings) -> SyncOrchestrator:
    """Create the orchestrator with its bridge client and store, exiting on errors."""
    try:
        return SyncOrchestrator.from_settings(settings)
    except (StoreError, OSError) as e:
        fail(f"Cannot open contact store {settings.store_path}: {e}")


def connect_profile(
    orchestrator: SyncOrchestrator, settings: SyncSettings, profile: str
) -> None:
    """Connect one configured profile, exiting on failure."""
    try:
        connection_config = settings.get_connection(profile)
    except SyncConfigError as e:
        fail(str(e))

    result = orchestrator.connect(connection_config)
    if not result.success:
        orchestrator.shutdown()
        fail(f"Could not connect '{profile}': {result.error}")


@click.group()
@click.version_option(version=__version__, prog_name="carddav-sync")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="CARDDAV_SYNC_CONFIG_DIR",
    help="Configuration directory path (default: ~/.carddav-sync).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="CARDDAV_SYNC_CONFIG_FILE",
    help="Configuration file path (default: <config dir>/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: str | None,
    config_file: str | None,
) -> None:
    """
    CardDAV Contact Sync.

    Reconciles the local contact store with CardDAV address books reached
    through the bridge, protecting contacts shared with you from being
    changed on the server.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = get_config_dir(config_dir)
    resolved_config_file = get_config_file(config_file, resolved_config_dir)

    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_file

    config = {}
    try:
        loader = ConfigLoader(config_dir=resolved_config_dir)
        config = loader.load_from_file(resolved_config_file)
        if config:
            loader.validate(config)
    except ConfigError as e:
        # Allow commands such as init-config to work with a broken file
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        config = {}

    ctx.obj["config"] = config

    # CLI flag takes precedence over config file
    effective_verbose = verbose or config.get("verbose", False)
    ctx.obj["verbose"] = effective_verbose

    log_dir = Path(config["log_dir"]).expanduser() if config.get("log_dir") else None

    setup_logging(verbose=effective_verbose, log_dir=log_dir, enable_file_logging=True)

    log_retention = config.get("log_retention_count", 10)
    if log_retention > 0:
        cleanup_old_logs(log_dir=log_dir, keep_count=log_retention)


# =============================================================================
# Init-Config Command
# =============================================================================


@cli.command("init-config")
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite existing configuration file if it exists.",
)
@click.pass_context
def init_config_command(ctx: click.Context, force: bool) -> None:
    """
    Generate a default configuration file.

    Examples:

        carddav-sync init-config

        carddav-sync init-config --force
    """
    logger = get_logger(__name__)
    config_file = ctx.obj["config_file"]

    click.echo(f"Creating configuration file: {config_file}")
    success, error = save_config_file(config_file, overwrite=force)

    if not success:
        logger.error(f"Failed to create configuration file: {error}")
        fail(error or "unknown error")

    click.echo(click.style("Configuration file created successfully!", fg="green"))
    click.echo("\nNext steps:")
    click.echo("1. Add your connections under 'connections:'")
    click.echo("2. Export the password variables named by 'password_env'")
    click.echo("3. Run 'carddav-sync pull --profile <name>'")


# =============================================================================
# Status Command
# =============================================================================


@cli.command("status")
@click.option("--profile", "-p", default=None, help="Only show this connection.")
@click.pass_context
def status_command(ctx: click.Context, profile: str | None) -> None:
    """
    Show local store and per-connection sync status.

    Reads the local store only; the bridge is not contacted.

    Example:

        carddav-sync status
    """
    logger = get_logger(__name__)
    settings = load_settings(ctx)

    if profile is not None:
        try:
            profiles = [settings.get_connection(profile).profile_name]
        except SyncConfigError as e:
            fail(str(e))
    else:
        profiles = [c.profile_name for c in settings.connections]

    click.echo("=== CardDAV Sync Status ===\n")
    click.echo(f"Configuration directory: {ctx.obj['config_dir']}")
    click.echo(f"Bridge: {settings.bridge_url}")

    if not settings.store_path.exists():
        click.echo("Contact store: Not initialized (no syncs performed yet)")
    else:
        orchestrator = build_orchestrator(settings)
        try:
            contacts = orchestrator.store.list()
            counts: dict[str, int] = {}
            for contact in contacts:
                counts[contact.ownership.value] = counts.get(contact.ownership.value, 0) + 1
            click.echo(f"Contact store: {settings.store_path}")
            click.echo(
                f"Contacts: {len(contacts)} "
                f"({counts.get('owned', 0)} owned, "
                f"{counts.get('imported', 0)} imported, "
                f"{counts.get('shared', 0)} shared)"
            )
            click.echo()
            for name in profiles:
                show_status(orchestrator.get_status(name))
                click.echo()
        except StoreError as e:
            logger.exception(f"Error reading status: {e}")
            fail(str(e))
        finally:
            orchestrator.shutdown()

    pid_file = config_path(PID_FILE_NAME, ctx.obj["config_dir"])
    pid = DaemonRunner(pid_file=pid_file).running_pid()
    if pid is not None:
        click.echo(click.style(f"Scheduled sync running (PID {pid})", fg="green"))
    else:
        click.echo("Scheduled sync: not running")

    if not profiles:
        click.echo(
            click.style(
                "\nNo connections configured. Run 'carddav-sync init-config' "
                "and add one under 'connections:'.",
                fg="yellow",
            )
        )


# =============================================================================
# Pull / Push / Protect Commands
# =============================================================================


@cli.command("pull")
@click.option("--profile", "-p", required=True, help="Connection to pull from.")
@click.pass_context
def pull_command(ctx: click.Context, profile: str) -> None:
    """
    Import changes from the server into the local store.

    Example:

        carddav-sync pull --profile work
    """
    settings = load_settings(ctx)
    orchestrator = build_orchestrator(settings)
    try:
        connect_profile(orchestrator, settings, profile)
        result = orchestrator.pull(profile)
    finally:
        orchestrator.shutdown()

    show_pull_result(result, verbose=ctx.obj["verbose"])
    if not result.success:
        sys.exit(1)


@cli.command("push")
@click.option("--profile", "-p", required=True, help="Connection to push to.")
@click.pass_context
def push_command(ctx: click.Context, profile: str) -> None:
    """
    Push changed local contacts to the server.

    Example:

        carddav-sync push --profile work
    """
    settings = load_settings(ctx)
    orchestrator = build_orchestrator(settings)
    try:
        connect_profile(orchestrator, settings, profile)
        result = orchestrator.push_all(profile)
    finally:
        orchestrator.shutdown()

    show_push_result(result, verbose=ctx.obj["verbose"])
    if not result.success:
        sys.exit(1)


@cli.command("protect")
@click.option("--profile", "-p", required=True, help="Connection to check.")
@click.option(
    "--refresh",
    is_flag=True,
    help="Re-push every shared contact instead of checking for edits.",
)
@click.pass_context
def protect_command(ctx: click.Context, profile: str, refresh: bool) -> None:
    """
    Overwrite unauthorized server edits of shared contacts.

    Only does something on servers without read-only address books.

    Examples:

        carddav-sync protect --profile phone

        carddav-sync protect --profile phone --refresh
    """
    settings = load_settings(ctx)
    orchestrator = build_orchestrator(settings)
    try:
        connect_profile(orchestrator, settings, profile)
        if refresh:
            result = orchestrator.refresh_shared(profile)
        else:
            result = orchestrator.protect(profile)
    finally:
        orchestrator.shutdown()

    show_protection_result(result)
    if not result.success:
        sys.exit(1)


# =============================================================================
# Health / Capabilities Commands
# =============================================================================


@cli.command("health")
@click.option("--profile", "-p", default=None, help="Check one connection.")
@click.pass_context
def health_command(ctx: click.Context, profile: str | None) -> None:
    """
    Check that the bridge is reachable.

    Useful for container health checks and monitoring.

    Example:

        carddav-sync health
    """
    settings = load_settings(ctx)
    orchestrator = build_orchestrator(settings)
    try:
        result = orchestrator.health(profile)
    finally:
        orchestrator.shutdown()

    if not result.success:
        click.echo(click.style(f"unhealthy: {result.error}", fg="red"), err=True)
        sys.exit(1)
    click.echo(result.message or "healthy")


@cli.command("capabilities")
@click.argument("server_url")
@click.option(
    "--server-type",
    type=click.Choice(sorted(SERVER_TYPES), case_sensitive=False),
    default=None,
    help="Skip URL detection and use this server type.",
)
def capabilities_command(server_url: str, server_type: str | None) -> None:
    """
    Show the capabilities detected for a server URL.

    Example:

        carddav-sync capabilities https://contacts.icloud.com
    """
    show_capabilities(detect_capabilities(server_url, server_type=server_type))


# =============================================================================
# Run Command
# =============================================================================


@cli.command("run")
@click.option(
    "--profile",
    "-p",
    "profiles",
    multiple=True,
    help="Connection to schedule (repeatable, default: all configured).",
)
@click.option(
    "--initial-sync",
    is_flag=True,
    help="Pull then push each connection before starting the timers.",
)
@click.pass_context
def run_command(
    ctx: click.Context, profiles: tuple[str, ...], initial_sync: bool
) -> None:
    """
    Run scheduled synchronization in the foreground.

    Connects each profile and starts its pull, push and heartbeat timers
    (plus protection timers on servers without access control). Blocks
    until SIGINT or SIGTERM.

    Examples:

        carddav-sync -v run

        carddav-sync run --profile work --initial-sync
    """
    logger = get_logger(__name__)
    settings = load_settings(ctx)

    names = list(profiles) or [c.profile_name for c in settings.connections]
    if not names:
        fail("No connections configured")

    orchestrator = build_orchestrator(settings)
    pid_file = config_path(PID_FILE_NAME, ctx.obj["config_dir"])
    runner = DaemonRunner(pid_file=pid_file)

    def start() -> None:
        for name in names:
            connect_profile(orchestrator, settings, name)
            result = orchestrator.start_scheduled_sync(
                name, run_initial_sync=initial_sync
            )
            if not result.success:
                fail(f"Could not schedule '{name}': {result.error}")
            mode = "with" if result.protection_enabled else "without"
            click.echo(f"Scheduled {name} ({mode} shared-contact protection)")
        click.echo("Running (Ctrl+C to stop)")

    try:
        runner.run(on_start=start, on_stop=orchestrator.shutdown)
    except DaemonAlreadyRunningError as e:
        orchestrator.shutdown()
        fail(str(e))
    except DaemonError as e:
        logger.error(f"Daemon error: {e}")
        orchestrator.shutdown()
        fail(f"Daemon error: {e}")

    click.echo(click.style("\nStopped gracefully.", fg="green"))
