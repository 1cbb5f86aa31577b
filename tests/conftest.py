"""Shared fixtures for notesync tests."""

from __future__ import annotations

from collections.abc import Callable, Generator, Sequence
from pathlib import Path

import pytest

from notesync.client.state import LocalRecordStore
from notesync.client.sync.audit import AuditSink
from notesync.client.sync.outbox import Outbox
from notesync.client.sync.types import OutboxEntry, PullPage, PushResult
from notesync.core.types import DomainRecord


class FakeClock:
    """Manually advanced clock (epoch seconds)."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """In-memory transport driven by a responder function.

    ``responder(entry)`` returns the PushResult for one entry, or raises
    to fail the whole batch. Pull pages are served from ``pages``.
    """

    def __init__(self) -> None:
        self.pushed: list[list[OutboxEntry]] = []
        self.pulls: list[tuple[float | None, int]] = []
        self.pages: list[PullPage] = []
        self.responder: Callable[[OutboxEntry], PushResult] = lambda e: PushResult.applied(
            (e.base_version or 0) + 1
        )
        self.uploads: list[tuple[str, str, bytes]] = []

    def push(self, entries: Sequence[OutboxEntry]) -> list[PushResult]:
        self.pushed.append(list(entries))
        return [self.responder(entry) for entry in entries]

    def pull(self, since: float | None, limit: int) -> PullPage:
        self.pulls.append((since, limit))
        if self.pages:
            return self.pages.pop(0)
        return PullPage(records=[], cursor=since, has_more=False)

    def serve(self, *records: DomainRecord, cursor: float = 1.0) -> None:
        """Queue one pull page holding ``records``."""
        self.pages.append(PullPage(records=list(records), cursor=cursor, has_more=False))

    def upload_binary(self, entity_type: str, record_id: str, data: bytes, content_type: str) -> None:
        self.uploads.append((str(entity_type), record_id, data))

    @property
    def pushed_entries(self) -> list[OutboxEntry]:
        return [entry for batch in self.pushed for entry in batch]


@pytest.fixture
def clock() -> FakeClock:
    """A clock frozen at a fixed time."""
    return FakeClock()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """Path of the test database."""
    return tmp_path / "notesync.db"


@pytest.fixture
def store(db_path: Path, clock: FakeClock) -> Generator[LocalRecordStore, None, None]:
    """Local record store."""
    s = LocalRecordStore(db_path, clock=clock)
    yield s
    s.close()


@pytest.fixture
def outbox(db_path: Path, clock: FakeClock) -> Generator[Outbox, None, None]:
    """Outbox on the same database as the store."""
    o = Outbox(db_path, clock=clock)
    yield o
    o.close()


@pytest.fixture
def audit(db_path: Path) -> Generator[AuditSink, None, None]:
    """Audit sink on the same database."""
    a = AuditSink(db_path)
    yield a
    a.close()


@pytest.fixture
def transport() -> FakeTransport:
    """Fake transport that applies everything."""
    return FakeTransport()
