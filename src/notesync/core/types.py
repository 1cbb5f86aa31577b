"""Shared types for notesync.

This module defines the domain record, entity and operation enums, and
the clock alias used across the engine.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

# Wall clock in epoch seconds. Injected everywhere time matters.
Clock = Callable[[], float]


class EntityType(str, Enum):
    """Synchronized domain entities."""

    CAPTURE = "capture"
    THOUGHT = "thought"
    IDEA = "idea"
    TODO = "todo"


class Operation(str, Enum):
    """Kind of local mutation recorded in the outbox."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncState(str, Enum):
    """Overall sync state of the device, as shown by `notesync status`."""

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    OFFLINE = "offline"


@dataclass(frozen=True)
class DomainRecord:
    """A capture, thought, idea or todo as known to one side.

    Records are compared by version only, never by content.

    Attributes:
        entity_type: Which entity table the record belongs to.
        record_id: Domain-generated identifier.
        version: Monotonic version counter assigned by the server.
        data: Column name -> value.
        updated_at: Last modification time (epoch seconds).
        column_updated_at: Per-column modification times. Columns missing
            here fall back to ``updated_at``.
        deleted_at: Soft-delete marker.
        changed_columns: Columns the server modified since the client's
            baseline, when the server reports them.
    """

    entity_type: EntityType
    record_id: str
    version: int
    data: dict[str, Any] = field(default_factory=dict)
    updated_at: float = 0.0
    column_updated_at: dict[str, float] = field(default_factory=dict)
    deleted_at: float | None = None
    changed_columns: frozenset[str] | None = None

    @property
    def is_deleted(self) -> bool:
        """Check if the record carries a soft-delete marker."""
        return self.deleted_at is not None

    def column_timestamp(self, column: str) -> float:
        """Get when a column was last modified."""
        return self.column_updated_at.get(column, self.updated_at)

    def with_version(self, version: int) -> DomainRecord:
        """Copy of this record at another version."""
        return replace(self, version=version)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for local storage."""
        return {
            "entity_type": self.entity_type.value,
            "record_id": self.record_id,
            "version": self.version,
            "data": dict(self.data),
            "updated_at": self.updated_at,
            "column_updated_at": dict(self.column_updated_at),
            "deleted_at": self.deleted_at,
            "changed_columns": (
                sorted(self.changed_columns)
                if self.changed_columns is not None
                else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DomainRecord:
        """Create from a dictionary produced by ``to_dict``."""
        changed = data.get("changed_columns")
        return cls(
            entity_type=EntityType(data["entity_type"]),
            record_id=data["record_id"],
            version=int(data["version"]),
            data=dict(data.get("data") or {}),
            updated_at=float(data.get("updated_at") or 0.0),
            column_updated_at={
                k: float(v) for k, v in (data.get("column_updated_at") or {}).items()
            },
            deleted_at=data.get("deleted_at"),
            changed_columns=frozenset(changed) if changed is not None else None,
        )
