"""Configure command for the notesync CLI.

Commands:
- configure: Store the server URL, device token and sync options
"""

from __future__ import annotations

import click

from notesync.client.cli import config as cli_config
from notesync.core.config import DeletePolicy


@click.command()
@click.option("--server", "server_url", prompt="Server URL", help="Reconciliation server URL.")
@click.option("--token", prompt="Device token", hide_input=True, help="Bearer token for this device.")
@click.option(
    "--delete-policy",
    type=click.Choice([p.value for p in DeletePolicy]),
    default=None,
    help="How a delete racing an update is resolved.",
)
@click.option("--batch-size", type=click.IntRange(min=1), default=None, help="Entries per push.")
@click.option("--no-verify-ssl", is_flag=True, help="Do not verify SSL certificates.")
def configure(
    server_url: str,
    token: str,
    delete_policy: str | None,
    batch_size: int | None,
    no_verify_ssl: bool,
) -> None:
    """Configure the connection to the sync server."""
    config = cli_config.load_config()
    config["server_url"] = server_url.rstrip("/")
    config["token"] = token
    config["verify_ssl"] = not no_verify_ssl
    config.setdefault("delete_policy", DeletePolicy.DELETE_WINS.value)
    if delete_policy is not None:
        config["delete_policy"] = delete_policy
    if batch_size is not None:
        config["batch_size"] = batch_size
    cli_config.save_config(config)

    if not server_url.startswith("https://"):
        click.echo("Warning: the server URL does not use HTTPS.", err=True)
    click.echo(f"Configuration saved to {cli_config.get_config_file()}")
