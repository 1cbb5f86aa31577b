"""Tests for conflict detection."""

from __future__ import annotations

import pytest

from notesync.client.sync.domain import ConflictDetector, DetectionKind
from notesync.client.sync.types import OutboxEntry
from notesync.core.types import DomainRecord, EntityType, Operation


def make_entry(
    operation: Operation = Operation.UPDATE,
    payload: dict | None = None,
    base_version: int | None = 5,
) -> OutboxEntry:
    """Create an outbox entry for a todo."""
    return OutboxEntry(
        id=1,
        entity_type=EntityType.TODO,
        record_id="t1",
        operation=operation,
        payload=payload if payload is not None else {"title": "local"},
        base_version=base_version,
        enqueued_at=100.0,
    )


def make_server(
    version: int = 6,
    changed: set[str] | None = None,
    deleted_at: float | None = None,
    data: dict | None = None,
) -> DomainRecord:
    """Create a server todo record."""
    return DomainRecord(
        entity_type=EntityType.TODO,
        record_id="t1",
        version=version,
        data=data if data is not None else {"title": "server", "priority": "high"},
        changed_columns=frozenset(changed) if changed is not None else None,
        deleted_at=deleted_at,
    )


@pytest.fixture
def detector() -> ConflictDetector:
    return ConflictDetector()


class TestDetector:
    """Tests for ConflictDetector.detect."""

    def test_server_not_ahead(self, detector: ConflictDetector) -> None:
        """Server version <= base version means no conflict."""
        assert detector.detect(make_entry(), make_server(version=5)).kind is DetectionKind.NO_CONFLICT
        assert detector.detect(make_entry(), make_server(version=4)).kind is DetectionKind.NO_CONFLICT

    def test_disjoint_columns_auto_merge(self, detector: ConflictDetector) -> None:
        detection = detector.detect(
            make_entry(payload={"title": "local"}),
            make_server(changed={"priority"}),
        )
        assert detection.kind is DetectionKind.AUTO_MERGE
        assert detection.overlapping_columns == frozenset()
        assert not detection.needs_resolver

    def test_overlapping_columns_conflict(self, detector: ConflictDetector) -> None:
        detection = detector.detect(
            make_entry(payload={"title": "local", "state": "done"}),
            make_server(changed={"title", "priority"}),
        )
        assert detection.kind is DetectionKind.CONFLICT
        assert detection.overlapping_columns == frozenset({"title"})
        assert detection.needs_resolver

    def test_unknown_server_changes_are_conservative(self, detector: ConflictDetector) -> None:
        """Without changed_columns, every server column counts as changed."""
        detection = detector.detect(make_entry(payload={"title": "x"}), make_server())
        assert detection.kind is DetectionKind.CONFLICT

    def test_update_against_deleted_server_record(self, detector: ConflictDetector) -> None:
        detection = detector.detect(make_entry(), make_server(deleted_at=50.0))
        assert detection.kind is DetectionKind.DELETE_CONFLICT

    def test_update_against_missing_server_record(self, detector: ConflictDetector) -> None:
        assert detector.detect(make_entry(), None).kind is DetectionKind.DELETE_CONFLICT

    def test_delete_against_changed_server_record(self, detector: ConflictDetector) -> None:
        detection = detector.detect(
            make_entry(operation=Operation.DELETE, payload={}),
            make_server(changed={"title"}),
        )
        assert detection.kind is DetectionKind.DELETE_CONFLICT

    def test_delete_against_deleted_server_record(self, detector: ConflictDetector) -> None:
        detection = detector.detect(
            make_entry(operation=Operation.DELETE, payload={}),
            make_server(deleted_at=1.0),
        )
        assert detection.kind is DetectionKind.ALREADY_DELETED

    def test_create_without_server_record(self, detector: ConflictDetector) -> None:
        entry = make_entry(operation=Operation.CREATE, base_version=None)
        assert detector.detect(entry, None).kind is DetectionKind.NO_CONFLICT

    def test_create_colliding_with_existing_record(self, detector: ConflictDetector) -> None:
        """A create is compared against everything the server holds."""
        entry = make_entry(operation=Operation.CREATE, payload={"priority": "low"}, base_version=None)
        detection = detector.detect(entry, make_server(version=1, changed={"title"}))
        assert detection.kind is DetectionKind.CONFLICT
        assert detection.overlapping_columns == frozenset({"priority"})

    def test_content_is_never_compared(self, detector: ConflictDetector) -> None:
        """Identical values still conflict when both sides changed the column."""
        detection = detector.detect(
            make_entry(payload={"title": "same"}),
            make_server(changed={"title"}, data={"title": "same"}),
        )
        assert detection.kind is DetectionKind.CONFLICT
