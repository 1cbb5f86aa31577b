"""Dead-letter commands for the notesync CLI.

Commands:
- dead-letters: List changes that could not be synced
- retry: Requeue a dead-lettered change
- discard: Drop a dead-lettered change
"""

from __future__ import annotations

import sys

import click

from notesync.client.cli import config as cli_config


@click.command("dead-letters")
def dead_letters() -> None:
    """List changes that need manual intervention."""
    engine = cli_config.open_engine()
    try:
        entries = engine.dead_letters()
    finally:
        engine.close()

    if not entries:
        click.echo("No dead letters.")
        return
    for entry in entries:
        click.echo(
            f"#{entry.id} {entry.operation.value} {entry.entity_type.value}:{entry.record_id} "
            f"after {entry.attempt_count} attempt(s): {entry.last_error}"
        )


@click.command()
@click.argument("entry_id", type=int)
def retry(entry_id: int) -> None:
    """Requeue a dead-lettered change with a fresh retry budget."""
    engine = cli_config.open_engine()
    try:
        entry = engine.retry_dead(entry_id)
    except (KeyError, ValueError) as e:
        click.echo(f"Error: {e.args[0] if e.args else e}", err=True)
        sys.exit(1)
    finally:
        engine.close()
    click.echo(f"Requeued as #{entry.id}. Run 'notesync sync' to push it.")


@click.command()
@click.argument("entry_id", type=int)
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
def discard(entry_id: int, yes: bool) -> None:
    """Drop a dead-lettered change for good."""
    if not yes:
        click.confirm(f"Discard change #{entry_id}? It will never be synced", abort=True)
    engine = cli_config.open_engine()
    try:
        engine.discard_dead(entry_id)
    except (KeyError, ValueError) as e:
        click.echo(f"Error: {e.args[0] if e.args else e}", err=True)
        sys.exit(1)
    finally:
        engine.close()
    click.echo(f"Discarded #{entry_id}")
