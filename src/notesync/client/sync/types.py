"""Shared types and dataclasses for sync operations.

This module provides:
- EntryStatus, OutboxEntry: Outbox records
- PushStatus, PushResult: Per-entry server replies
- PullPage: One page of server-side changes
- OrchestratorState, CycleReport: Orchestrator state and statistics
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any

from notesync.core.types import DomainRecord, EntityType, Operation

# =============================================================================
# Outbox Types
# =============================================================================


class EntryStatus(str, Enum):
    """Lifecycle of an outbox entry.

    Applied and resolved entries are removed, so they have no status.
    """

    PENDING = "pending"
    IN_FLIGHT = "in-flight"
    CONFLICTED = "conflicted"
    DEAD = "dead"


# Statuses that count toward "one entry per record"
ACTIVE_STATUSES = (EntryStatus.PENDING, EntryStatus.IN_FLIGHT, EntryStatus.CONFLICTED)


@dataclass
class OutboxEntry:
    """One pending local mutation.

    Attributes:
        id: Row id, stable for the entry's lifetime.
        entity_type: Entity table of the record.
        record_id: Record identifier.
        operation: create, update or delete.
        payload: Changed columns -> new values.
        base_version: Server version observed at edit time (None for create).
        enqueued_at: When the first coalesced edit was recorded.
        attempt_count: Failed push attempts so far.
        last_attempt_at: When the entry was last pushed.
        status: Current lifecycle status.
        changed_at: Per-column local edit times.
        next_attempt_at: Earliest time the entry may be drained again.
        last_error: Last failure or dead-letter reason.
        superseded: A newer local edit for the record is queued behind this
            in-flight entry.
        server_record: Server state reported with a conflict.
    """

    id: int
    entity_type: EntityType
    record_id: str
    operation: Operation
    payload: dict[str, Any]
    base_version: int | None
    enqueued_at: float
    attempt_count: int = 0
    last_attempt_at: float | None = None
    status: EntryStatus = EntryStatus.PENDING
    changed_at: dict[str, float] = field(default_factory=dict)
    next_attempt_at: float = 0.0
    last_error: str | None = None
    superseded: bool = False
    server_record: DomainRecord | None = None

    @property
    def changed_columns(self) -> frozenset[str]:
        """Columns modified locally."""
        return frozenset(self.payload)

    @property
    def key(self) -> tuple[EntityType, str]:
        """(entity_type, record_id) identity of the mutated record."""
        return (self.entity_type, self.record_id)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> OutboxEntry:
        """Create OutboxEntry from database row."""
        server_record = None
        if row["server_record"]:
            server_record = DomainRecord.from_dict(json.loads(row["server_record"]))
        return cls(
            id=row["id"],
            entity_type=EntityType(row["entity_type"]),
            record_id=row["record_id"],
            operation=Operation(row["operation"]),
            payload=json.loads(row["payload"]),
            base_version=row["base_version"],
            enqueued_at=row["enqueued_at"],
            attempt_count=row["attempt_count"],
            last_attempt_at=row["last_attempt_at"],
            status=EntryStatus(row["status"]),
            changed_at=json.loads(row["changed_at"]),
            next_attempt_at=row["next_attempt_at"],
            last_error=row["last_error"],
            superseded=bool(row["superseded"]),
            server_record=server_record,
        )

    def __repr__(self) -> str:
        """Human-readable representation."""
        return (
            f"OutboxEntry(#{self.id} {self.operation.value} "
            f"{self.entity_type.value}:{self.record_id}, "
            f"status={self.status.value}, attempts={self.attempt_count})"
        )


# =============================================================================
# Transport Types
# =============================================================================


class PushStatus(str, Enum):
    """Server verdict for one pushed entry."""

    APPLIED = "applied"
    CONFLICT = "conflict"
    REJECTED = "rejected"


@dataclass(frozen=True)
class PushResult:
    """Server reply for one pushed entry."""

    status: PushStatus
    new_version: int | None = None
    server_record: DomainRecord | None = None
    server_version: int | None = None
    reason: str | None = None

    @classmethod
    def applied(cls, new_version: int) -> PushResult:
        return cls(PushStatus.APPLIED, new_version=new_version)

    @classmethod
    def conflict(
        cls,
        server_record: DomainRecord | None,
        server_version: int,
    ) -> PushResult:
        return cls(
            PushStatus.CONFLICT,
            server_record=server_record,
            server_version=server_version,
        )

    @classmethod
    def rejected(cls, reason: str) -> PushResult:
        return cls(PushStatus.REJECTED, reason=reason)


@dataclass
class PullPage:
    """Result of one pull request."""

    records: list[DomainRecord]
    cursor: float | None
    has_more: bool


# =============================================================================
# Orchestrator Types
# =============================================================================


class OrchestratorState(Enum):
    """State machine of one sync cycle."""

    IDLE = auto()
    DRAINING = auto()
    PUSHING = auto()
    APPLYING = auto()
    RESOLVING = auto()
    RETRYING = auto()
    DEAD_LETTERING = auto()


@dataclass
class CycleReport:
    """Statistics for one sync cycle."""

    reason: str = "manual"
    batches: int = 0
    applied: int = 0
    auto_merged: int = 0
    resolved: int = 0
    retried: int = 0
    dead_lettered: int = 0
    pulled: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def pushed(self) -> int:
        """Entries that reached a verdict or a retry decision."""
        return (
            self.applied
            + self.auto_merged
            + self.resolved
            + self.retried
            + self.dead_lettered
        )
