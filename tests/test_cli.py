"""Tests for CLI commands - configure, sync, status and dead letters."""

import json
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from conftest import FakeTransport
from notesync.client.cli import cli
from notesync.client.sync.audit import AuditSink
from notesync.client.sync.outbox import Outbox
from notesync.client.sync.types import PushResult
from notesync.core.errors import NetworkError
from notesync.core.types import DomainRecord, EntityType


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def config_dir(tmp_path: Path) -> Iterator[Path]:
    """Point the CLI at a temporary config directory."""
    with patch("notesync.client.cli.config.get_config_dir", return_value=tmp_path):
        yield tmp_path


@pytest.fixture
def configured(config_dir: Path) -> Path:
    """A config directory with a server configured."""
    (config_dir / "config.json").write_text(
        json.dumps({"server_url": "https://notes.example.com", "token": "secret"})
    )
    return config_dir


@pytest.fixture
def fake_server() -> Iterator[FakeTransport]:
    """Replace the HTTP transport with an in-memory one."""
    transport = FakeTransport()
    with patch("notesync.client.sync.engine.HTTPTransport", return_value=transport):
        yield transport


def dead_letter(db_path: Path) -> int:
    """Create a dead-lettered entry and return its id."""
    outbox = Outbox(db_path)
    try:
        entry = outbox.enqueue("todo", "t1", "update", {"title": "x"}, base_version=2)
        outbox.drain(10)
        outbox.mark_dead(entry.id, "rejected: title too long")
        return entry.id
    finally:
        outbox.close()


class TestConfigureCommand:
    """Tests for 'notesync configure' command."""

    def test_configure_saves_config(self, runner: CliRunner, config_dir: Path) -> None:
        result = runner.invoke(
            cli,
            ["configure", "--server", "https://notes.example.com/", "--token", "abc"],
        )

        assert result.exit_code == 0
        assert "Configuration saved" in result.output
        saved = json.loads((config_dir / "config.json").read_text())
        assert saved["server_url"] == "https://notes.example.com"
        assert saved["token"] == "abc"
        assert saved["verify_ssl"] is True
        assert saved["delete_policy"] == "delete-wins"

    def test_configure_prompts(self, runner: CliRunner, config_dir: Path) -> None:
        result = runner.invoke(
            cli, ["configure"], input="https://notes.example.com\nabc\n"
        )
        assert result.exit_code == 0
        assert json.loads((config_dir / "config.json").read_text())["token"] == "abc"

    def test_configure_options(self, runner: CliRunner, config_dir: Path) -> None:
        result = runner.invoke(
            cli,
            [
                "configure",
                "--server",
                "http://localhost:8000",
                "--token",
                "abc",
                "--delete-policy",
                "update-wins",
                "--batch-size",
                "20",
                "--no-verify-ssl",
            ],
        )

        assert result.exit_code == 0
        assert "does not use HTTPS" in result.output
        saved = json.loads((config_dir / "config.json").read_text())
        assert saved["delete_policy"] == "update-wins"
        assert saved["batch_size"] == 20
        assert saved["verify_ssl"] is False

    def test_configure_rejects_unknown_policy(self, runner: CliRunner, config_dir: Path) -> None:
        result = runner.invoke(
            cli,
            ["configure", "--server", "https://x", "--token", "t", "--delete-policy", "random"],
        )
        assert result.exit_code != 0


class TestSyncCommand:
    """Tests for 'notesync sync' command."""

    def test_sync_requires_configuration(self, runner: CliRunner, config_dir: Path) -> None:
        result = runner.invoke(cli, ["sync"])
        assert result.exit_code == 1
        assert "Not configured" in result.output

    def test_sync_pushes_and_pulls(
        self, runner: CliRunner, configured: Path, fake_server: FakeTransport
    ) -> None:
        outbox = Outbox(configured / "notesync.db")
        outbox.enqueue("idea", "i1", "create", {"text": "hello"}, base_version=None)
        outbox.close()
        fake_server.serve(DomainRecord(EntityType.TODO, "t9", 3, {"title": "remote"}))

        result = runner.invoke(cli, ["sync"])

        assert result.exit_code == 0, result.output
        assert "Pushed 1 change(s), pulled 1" in result.output
        assert [e.record_id for e in fake_server.pushed_entries] == ["i1"]

    def test_sync_offline_fails(
        self, runner: CliRunner, configured: Path, fake_server: FakeTransport
    ) -> None:
        outbox = Outbox(configured / "notesync.db")
        outbox.enqueue("idea", "i1", "create", {"text": "hello"}, base_version=None)
        outbox.close()

        def offline(entry: object) -> PushResult:
            raise NetworkError("connection refused")

        fake_server.responder = offline

        result = runner.invoke(cli, ["sync"])

        assert result.exit_code == 1
        assert "1 change(s) will be retried" in result.output
        assert "connection refused" in result.output


class TestStatusCommand:
    """Tests for 'notesync status' command."""

    def test_status(
        self, runner: CliRunner, configured: Path, fake_server: FakeTransport
    ) -> None:
        dead_letter(configured / "notesync.db")

        result = runner.invoke(cli, ["status"])

        assert result.exit_code == 0
        assert "State:" in result.output
        assert "Last sync:     never" in result.output
        assert "Pending:       0" in result.output
        assert "Dead letters:  1" in result.output


class TestDeadLetterCommands:
    """Tests for dead-letters, retry and discard."""

    def test_no_dead_letters(
        self, runner: CliRunner, configured: Path, fake_server: FakeTransport
    ) -> None:
        result = runner.invoke(cli, ["dead-letters"])
        assert result.exit_code == 0
        assert "No dead letters." in result.output

    def test_list_dead_letters(
        self, runner: CliRunner, configured: Path, fake_server: FakeTransport
    ) -> None:
        entry_id = dead_letter(configured / "notesync.db")

        result = runner.invoke(cli, ["dead-letters"])

        assert f"#{entry_id} update todo:t1" in result.output
        assert "title too long" in result.output

    def test_retry(
        self, runner: CliRunner, configured: Path, fake_server: FakeTransport
    ) -> None:
        entry_id = dead_letter(configured / "notesync.db")

        result = runner.invoke(cli, ["retry", str(entry_id)])

        assert result.exit_code == 0
        assert f"Requeued as #{entry_id}" in result.output

    def test_retry_unknown_entry(
        self, runner: CliRunner, configured: Path, fake_server: FakeTransport
    ) -> None:
        result = runner.invoke(cli, ["retry", "999"])
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_discard_asks_for_confirmation(
        self, runner: CliRunner, configured: Path, fake_server: FakeTransport
    ) -> None:
        entry_id = dead_letter(configured / "notesync.db")

        result = runner.invoke(cli, ["discard", str(entry_id)], input="n\n")

        assert result.exit_code != 0
        outbox = Outbox(configured / "notesync.db")
        assert outbox.get(entry_id) is not None
        outbox.close()

    def test_discard(
        self, runner: CliRunner, configured: Path, fake_server: FakeTransport
    ) -> None:
        entry_id = dead_letter(configured / "notesync.db")

        result = runner.invoke(cli, ["discard", str(entry_id), "--yes"])

        assert result.exit_code == 0
        assert f"Discarded #{entry_id}" in result.output


class TestConflictsCommand:
    """Tests for 'notesync conflicts' and 'notesync dismiss-reminder'."""

    def test_no_conflicts(
        self, runner: CliRunner, configured: Path, fake_server: FakeTransport
    ) -> None:
        result = runner.invoke(cli, ["conflicts"])
        assert result.exit_code == 0
        assert "No merged conflicts." in result.output

    def test_conflicts_are_listed_once(
        self, runner: CliRunner, configured: Path, fake_server: FakeTransport
    ) -> None:
        sink = AuditSink(configured / "notesync.db")
        record = DomainRecord(EntityType.TODO, "t1", 6, {"title": "x"})
        sink.append("concurrent-update", "per-column-hybrid", record, record, record, 1.0)
        sink.close()

        first = runner.invoke(cli, ["conflicts"])
        second = runner.invoke(cli, ["conflicts"])
        everything = runner.invoke(cli, ["conflicts", "--all"])

        assert "todo:t1 concurrent-update (per-column-hybrid)" in first.output
        assert "No merged conflicts." in second.output
        assert "todo:t1" in everything.output

    def test_dismiss_reminder(
        self, runner: CliRunner, configured: Path, fake_server: FakeTransport
    ) -> None:
        result = runner.invoke(cli, ["dismiss-reminder"])
        assert result.exit_code == 0
        assert "Reminder snoozed until" in result.output
