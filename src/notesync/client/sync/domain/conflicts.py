"""Conflict detection.

Decides whether a queued local mutation and the server's current state
have diverged from the shared baseline. Only versions and column sets
are compared, never raw content.

Rules:
| Server state                | Local op      | Outcome          |
|-----------------------------|---------------|------------------|
| version <= base_version     | any           | NO_CONFLICT      |
| missing / soft-deleted      | delete        | ALREADY_DELETED  |
| missing / soft-deleted      | update        | DELETE_CONFLICT  |
| newer, record changed       | delete        | DELETE_CONFLICT  |
| newer, columns intersect    | create/update | CONFLICT         |
| newer, columns disjoint     | create/update | AUTO_MERGE       |
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING

from notesync.core.types import DomainRecord, Operation

if TYPE_CHECKING:
    from notesync.client.sync.types import OutboxEntry


class DetectionKind(Enum):
    """Outcome of conflict detection."""

    NO_CONFLICT = auto()  # Server has not moved past our baseline
    AUTO_MERGE = auto()  # Both changed, disjoint columns
    CONFLICT = auto()  # Both changed the same column(s)
    DELETE_CONFLICT = auto()  # Delete raced an update, needs explicit policy
    ALREADY_DELETED = auto()  # Both sides deleted the record


@dataclass(frozen=True)
class Detection:
    """Result of comparing a local entry against the server record."""

    kind: DetectionKind
    overlapping_columns: frozenset[str] = frozenset()
    server_changed_columns: frozenset[str] = frozenset()

    @property
    def needs_resolver(self) -> bool:
        return self.kind in (DetectionKind.CONFLICT, DetectionKind.DELETE_CONFLICT)


def server_changed_columns(server: DomainRecord) -> frozenset[str]:
    """Columns the server modified since the client's baseline.

    When the server does not report them, every column it holds is
    assumed changed.
    """
    if server.changed_columns is not None:
        return server.changed_columns
    return frozenset(server.data)


class ConflictDetector:
    """Detects divergence between a local entry and the server record."""

    def detect(self, entry: OutboxEntry, server: DomainRecord | None) -> Detection:
        """Classify the relation between ``entry`` and ``server``.

        Args:
            entry: Local mutation with its baseline version.
            server: Current server record, or None if the server has none.
        """
        if server is None or server.is_deleted:
            if entry.operation is Operation.DELETE:
                return Detection(DetectionKind.ALREADY_DELETED)
            if entry.operation is Operation.CREATE and server is None:
                return Detection(DetectionKind.NO_CONFLICT)
            return Detection(DetectionKind.DELETE_CONFLICT)

        if entry.base_version is not None and server.version <= entry.base_version:
            return Detection(DetectionKind.NO_CONFLICT)

        changed = server_changed_columns(server)

        if entry.operation is Operation.DELETE:
            return Detection(DetectionKind.DELETE_CONFLICT, server_changed_columns=changed)

        # A create colliding with an existing record is compared against
        # everything the server holds.
        if entry.base_version is None:
            changed = frozenset(server.data)

        overlap = changed & entry.changed_columns
        if overlap:
            return Detection(
                DetectionKind.CONFLICT,
                overlapping_columns=overlap,
                server_changed_columns=changed,
            )
        return Detection(DetectionKind.AUTO_MERGE, server_changed_columns=changed)
