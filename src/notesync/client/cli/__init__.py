"""Command-line interface for notesync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- configure: Store the server URL and device token
- sync: Synchronize local changes with the server (--watch to keep going)
- status: Show the sync state and outbox counts
- dead-letters: List changes that could not be synced
- retry: Requeue a dead-lettered change
- discard: Drop a dead-lettered change
- conflicts: List merged conflicts
- dismiss-reminder: Snooze the long-offline reminder
"""

from __future__ import annotations

import logging

import click

from notesync.client.cli.config import (
    get_config_dir,
    get_config_file,
    load_config,
    load_sync_config,
    save_config,
)
from notesync.client.cli.configure import configure
from notesync.client.cli.deadletters import dead_letters, discard, retry
from notesync.client.cli.status import conflicts, dismiss_reminder, status
from notesync.client.cli.sync import sync


@click.group()
@click.version_option(package_name="notesync")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logs.")
def cli(verbose: bool) -> None:
    """notesync - local-first sync for captures, thoughts, ideas and todos."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Setup
cli.add_command(configure)

# Sync commands
cli.add_command(sync)
cli.add_command(status)

# Manual intervention
cli.add_command(dead_letters)
cli.add_command(retry)
cli.add_command(discard)
cli.add_command(conflicts)
cli.add_command(dismiss_reminder)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "get_config_dir",
    "get_config_file",
    "load_config",
    "load_sync_config",
    "save_config",
]
