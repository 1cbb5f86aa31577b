"""Status commands for the notesync CLI.

Commands:
- status: Show the sync state and outbox counts
- conflicts: List merged conflicts (and acknowledge them)
- dismiss-reminder: Snooze the long-offline reminder
"""

from __future__ import annotations

from datetime import datetime

import click

from notesync.client.cli import config as cli_config


def _format_time(timestamp: float | None) -> str:
    if timestamp is None:
        return "never"
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


@click.command()
def status() -> None:
    """Show sync status."""
    engine = cli_config.open_engine()
    try:
        info = engine.status()
    finally:
        engine.close()

    counts = info["outbox"]
    click.echo(f"State:         {info['state']}")
    click.echo(f"Last sync:     {_format_time(info['last_success_at'])}")
    click.echo(f"Pending:       {counts['pending'] + counts['in-flight'] + counts['conflicted']}")
    click.echo(f"Dead letters:  {counts['dead']}")
    if info["next_retry_at"] is not None and counts["pending"]:
        click.echo(f"Next retry:    {_format_time(info['next_retry_at'])}")
    if info["unnotified_merges"]:
        click.echo(
            f"{info['unnotified_merges']} item(s) were merged with changes from "
            "another device, see 'notesync conflicts'"
        )
    if info["reminder_due"]:
        click.echo("Not synced for more than a day. Connect to back up your notes.")


@click.command()
@click.option("--all", "show_all", is_flag=True, help="Include already acknowledged merges.")
def conflicts(show_all: bool) -> None:
    """List conflicts that were merged automatically."""
    engine = cli_config.open_engine()
    try:
        entries = engine.conflicts(unnotified_only=not show_all)
        if not entries:
            click.echo("No merged conflicts.")
            return
        for entry in entries:
            click.echo(
                f"#{entry.id} {_format_time(entry.resolved_at)} "
                f"{entry.entity_type.value}:{entry.record_id} "
                f"{entry.conflict_type} ({entry.resolution_strategy})"
            )
        engine.acknowledge_merges(entry.id for entry in entries)
    finally:
        engine.close()


@click.command("dismiss-reminder")
def dismiss_reminder() -> None:
    """Snooze the long-offline reminder."""
    engine = cli_config.open_engine()
    try:
        until = engine.dismiss_reminder()
    finally:
        engine.close()
    click.echo(f"Reminder snoozed until {_format_time(until)}")
