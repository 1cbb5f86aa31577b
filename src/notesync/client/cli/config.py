"""Configuration utilities for the notesync CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import click

from notesync.core.config import SyncConfig


def get_config_dir() -> Path:
    """Get the configuration directory for notesync.

    Returns:
        Path to ~/.notesync or equivalent.
    """
    return Path.home() / ".notesync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def load_sync_config() -> SyncConfig:
    """Build the engine configuration from the config file.

    The database lives in the config directory unless ``data_dir`` is set.
    """
    data = load_config()
    data.setdefault("data_dir", str(get_config_dir()))
    return SyncConfig.from_dict(data)


def open_engine(scheduler: Any = None) -> Any:
    """Open the sync engine, exiting with an error if not configured.

    Returns:
        A SyncEngine (closed by the caller).
    """
    from notesync.client.sync.engine import SyncEngine

    try:
        sync_config = load_sync_config()
    except (ValueError, KeyError) as e:
        click.echo(f"Error: Invalid configuration: {e}", err=True)
        sys.exit(1)
    if sync_config.server is None:
        click.echo("Error: Not configured. Run 'notesync configure' first.", err=True)
        sys.exit(1)
    return SyncEngine(sync_config, scheduler=scheduler)
