"""Configuration classes for notesync.

This module defines the configuration objects the composition root builds
at startup and hands to each component. Nothing here is a global.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class DeletePolicy(Enum):
    """How a delete racing a concurrent update is resolved."""

    DELETE_WINS = "delete-wins"
    UPDATE_WINS = "update-wins"


@dataclass
class ServerConfig:
    """Configuration for connecting to the reconciliation server.

    Attributes:
        server_url: Base URL of the server (e.g., "https://notes.example.com").
        token: Bearer token for this device.
        timeout: Push/pull request timeout in seconds.
        upload_timeout: Binary upload timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    server_url: str
    token: str
    timeout: float = 30.0
    upload_timeout: float = 60.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS."""
        return self.server_url.startswith("https://")


@dataclass
class SyncConfig:
    """Tuning knobs for the sync engine.

    Attributes:
        data_dir: Directory holding the local SQLite database.
        batch_size: Maximum entries per push batch.
        pull_page_size: Maximum records per pull page.
        periodic_interval: Seconds between periodic sync ticks.
        debounce_delay: Seconds to wait after a local edit before syncing.
        offline_threshold: Seconds without a successful sync before the
            long-offline reminder fires.
        reminder_snooze: Seconds a dismissed reminder stays quiet.
        delete_policy: Resolution of delete vs concurrent update.
    """

    data_dir: Path
    batch_size: int = 100
    pull_page_size: int = 100
    periodic_interval: float = 15 * 60
    debounce_delay: float = 3.0
    offline_threshold: float = 24 * 60 * 60
    reminder_snooze: float = 8 * 60 * 60
    delete_policy: DeletePolicy = DeletePolicy.DELETE_WINS
    server: ServerConfig | None = field(default=None)

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir).expanduser()
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.pull_page_size < 1:
            raise ValueError("pull_page_size must be at least 1")

    @property
    def db_path(self) -> Path:
        """Path of the local SQLite database."""
        return self.data_dir / "notesync.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """Create from a config-file dictionary.

        Unknown keys are ignored so older clients can read newer files.
        """
        server = None
        if data.get("server_url") and data.get("token"):
            server = ServerConfig(
                server_url=data["server_url"],
                token=data["token"],
                timeout=float(data.get("timeout", 30.0)),
                upload_timeout=float(data.get("upload_timeout", 60.0)),
                verify_ssl=bool(data.get("verify_ssl", True)),
            )
        kwargs: dict[str, Any] = {}
        for key in (
            "batch_size",
            "pull_page_size",
        ):
            if key in data:
                kwargs[key] = int(data[key])
        for key in (
            "periodic_interval",
            "debounce_delay",
            "offline_threshold",
            "reminder_snooze",
        ):
            if key in data:
                kwargs[key] = float(data[key])
        if "delete_policy" in data:
            kwargs["delete_policy"] = DeletePolicy(data["delete_policy"])
        return cls(
            data_dir=Path(data.get("data_dir", Path.home() / ".notesync")),
            server=server,
            **kwargs,
        )
