"""CLI output formatting functions.

This module contains functions for displaying pull, push and protection
results, connection status and capability records on the command line.
"""

from typing import TYPE_CHECKING, Any

import click

if TYPE_CHECKING:
    from carddav_sync.sync.capabilities import ServerCapabilities
    from carddav_sync.sync.orchestrator import SyncStatus
    from carddav_sync.sync.protection import ProtectionResult
    from carddav_sync.sync.pull import PullResult
    from carddav_sync.sync.push import BatchResult

# Maximum number of names listed per section
MAX_LISTED = 10


def _list_names(title: str, names: list[str], symbol: str) -> None:
    if not names:
        return
    click.echo(f"\n{title}:")
    for name in names[:MAX_LISTED]:
        click.echo(f"  {symbol} {name}")
    if len(names) > MAX_LISTED:
        click.echo(f"  ... and {len(names) - MAX_LISTED} more")


def show_pull_result(result: "PullResult", verbose: bool = False) -> None:
    """
    Display the outcome of a pull.

    Safety aborts are shown separately from an ordinary result so that
    "nothing to do" is never confused with "refused to delete".
    """
    if not result.success:
        click.echo(click.style(result.summary(), fg="red"), err=True)
        if result.safety_abort is not None:
            click.echo(
                "No contacts were imported or deleted. "
                "Check the bridge and the server, then pull again.",
                err=True,
            )
        return

    click.echo(result.summary())

    if result.safety_abort is not None:
        click.echo(
            click.style(
                f"\nSafety abort ({result.safety_abort.value}): the server "
                "returned no contacts while imported contacts exist locally. "
                "No local contacts were deleted.",
                fg="yellow",
            )
        )

    _list_names("Deleted locally (removed on server)", result.deleted_contacts, "-")

    if verbose and result.errors:
        click.echo("\nErrors:")
        for error in result.errors[:MAX_LISTED]:
            label = error.get("name") or error.get("uid") or "(unknown)"
            click.echo(f"  ! {label}: {error['error']}")


def show_push_result(result: "BatchResult", verbose: bool = False) -> None:
    """Display the outcome of a batch push."""
    color = None if result.success and not result.failed else "yellow"
    if not result.success:
        color = "red"
    click.echo(click.style(result.summary(), fg=color) if color else result.summary())

    if verbose and result.errors:
        click.echo("\nErrors:")
        for error in result.errors[:MAX_LISTED]:
            click.echo(f"  ! {error['name']} [{error['error_type']}]: {error['error']}")
        if len(result.errors) > MAX_LISTED:
            click.echo(f"  ... and {len(result.errors) - MAX_LISTED} more")


def show_protection_result(result: "ProtectionResult") -> None:
    """Display the outcome of a protection or refresh cycle."""
    if not result.success:
        click.echo(click.style(result.summary(), fg="red"), err=True)
        return

    click.echo(result.summary())
    _list_names("Unauthorized edits overwritten", result.corrected_contacts, "~")


def show_capabilities(capabilities: "ServerCapabilities") -> None:
    """Display a server capability record."""

    def yes_no(value: bool) -> str:
        return click.style("yes", fg="green") if value else click.style("no", fg="yellow")

    click.echo(f"Server type: {capabilities.server_type}")
    click.echo(f"Access control: {yes_no(capabilities.supports_access_control)}")
    click.echo(
        f"Multiple address books: "
        f"{yes_no(capabilities.supports_multiple_address_books)}"
    )
    click.echo(f"Protection strategy: {capabilities.protection_strategy.value}")
    click.echo(f"vCard version: {capabilities.vcard_version}")

    if capabilities.supports_multiple_address_books:
        click.echo(f"Read-write address book: {capabilities.read_write_address_book}")
        click.echo(f"Read-only address book: {capabilities.read_only_address_book}")
    else:
        click.echo(f"Address book: {capabilities.default_address_book}")

    if capabilities.notes:
        click.echo(f"Notes: {capabilities.notes}")


def _format_counts(summary: dict[str, Any], keys: tuple[str, ...]) -> str:
    return ", ".join(f"{summary.get(key, 0)} {key}" for key in keys)


def show_status(status: "SyncStatus") -> None:
    """Display the sync status of one connection."""
    click.echo(f"--- {status.connection_id} ---")

    if status.connection:
        capabilities = status.connection["capabilities"]
        click.echo(f"Server: {status.connection['server_url']}")
        click.echo(
            f"Server type: {capabilities['server_type']} "
            f"({capabilities['protection_strategy']} protection)"
        )

    click.echo(f"Last pull: {status.last_pull_at or 'Never'}")
    click.echo(f"Last push: {status.last_push_at or 'Never'}")

    pull = status.last_results.get("pull")
    if pull:
        counts = _format_counts(pull, ("created", "updated", "skipped", "failed"))
        click.echo(f"Last pull result: {counts}")
        if pull.get("safety_abort"):
            click.echo(
                click.style(f"  Safety abort: {pull['safety_abort']}", fg="yellow")
            )

    push = status.last_results.get("push")
    if push:
        counts = _format_counts(push, ("pushed", "skipped", "failed"))
        click.echo(f"Last push result: {counts}")

    if status.in_progress and status.active_cycle:
        click.echo(
            f"In progress: {status.active_cycle['direction']} "
            f"(since {status.active_cycle['started_at']}), "
            f"{status.pending} queued"
        )

    if status.schedule:
        click.echo(
            f"Schedule: {'running' if status.scheduled else 'stopped'}, "
            f"{status.schedule['heartbeat_count']} heartbeats "
            f"(last: {status.schedule['last_heartbeat_at'] or 'none'})"
        )

    if status.last_error:
        click.echo(click.style(f"Last error: {status.last_error}", fg="red"))
