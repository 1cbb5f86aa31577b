"""Sync command for the notesync CLI.

Commands:
- sync: Run one sync cycle, or keep syncing in the background with --watch
"""

from __future__ import annotations

import sys

import click

from notesync.client.cli import config as cli_config
from notesync.client.sync.types import CycleReport


def _print_report(report: CycleReport) -> None:
    merged = report.auto_merged + report.resolved
    summary = f"Pushed {report.applied} change(s), pulled {report.pulled}"
    if merged:
        summary += f", merged {merged}"
    click.echo(summary)
    if report.retried:
        click.echo(f"{report.retried} change(s) will be retried")
    if report.dead_lettered:
        click.echo(
            f"{report.dead_lettered} change(s) could not be synced, "
            "see 'notesync dead-letters'",
            err=True,
        )
    for error in report.errors:
        click.echo(f"Error: {error}", err=True)


@click.command()
@click.option("--watch", "-w", is_flag=True, help="Keep syncing in the background.")
def sync(watch: bool) -> None:
    """Synchronize local changes with the server.

    Pushes queued local changes, then pulls changes from other devices.
    Use --watch to keep syncing until interrupted.
    """
    engine = cli_config.open_engine()
    try:
        if not watch:
            report = engine.sync_now("manual")
            if report is None:
                click.echo("A sync is already running.")
                return
            _print_report(report)
            if report.errors and not (report.applied or report.pulled):
                sys.exit(1)
            return

        with engine.subscribe() as subscription:
            engine.start()
            engine.sync_now("startup")
            click.echo("Watching for changes. Press Ctrl+C to stop.")
            try:
                while True:
                    notice = subscription.get(timeout=1.0)
                    if notice is not None:
                        click.echo(notice.message)
            except KeyboardInterrupt:
                click.echo("Stopping...")
    finally:
        engine.close()
