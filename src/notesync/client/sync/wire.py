"""Pydantic models for the sync wire protocol.

Request/response bodies of:
- POST /sync/push
- GET /sync/pull?since=<cursor>&limit=<n>

Responses are validated on arrival; anything that does not fit these
models is a malformed response.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from notesync.client.sync.types import OutboxEntry, PushResult, PushStatus
from notesync.core.types import DomainRecord, EntityType, Operation

# === Records ===


class WireRecord(BaseModel):
    """A record as sent by the server."""

    model_config = ConfigDict(extra="ignore")

    entity_type: EntityType
    record_id: str
    version: int
    data: dict[str, Any] = Field(default_factory=dict)
    updated_at: float = 0.0
    column_updated_at: dict[str, float] = Field(default_factory=dict)
    deleted_at: float | None = None
    changed_columns: list[str] | None = None

    def to_record(self) -> DomainRecord:
        """Convert to the engine's record type."""
        return DomainRecord(
            entity_type=self.entity_type,
            record_id=self.record_id,
            version=self.version,
            data=dict(self.data),
            updated_at=self.updated_at,
            column_updated_at=dict(self.column_updated_at),
            deleted_at=self.deleted_at,
            changed_columns=(
                frozenset(self.changed_columns) if self.changed_columns is not None else None
            ),
        )


# === Push ===


class PushOperation(BaseModel):
    """One queued mutation in a push request."""

    op_id: int
    entity_type: EntityType
    record_id: str
    operation: Operation
    payload: dict[str, Any]
    base_version: int | None
    changed_at: dict[str, float]

    @classmethod
    def from_entry(cls, entry: OutboxEntry) -> PushOperation:
        """Build from an outbox entry."""
        return cls(
            op_id=entry.id,
            entity_type=entry.entity_type,
            record_id=entry.record_id,
            operation=entry.operation,
            payload=entry.payload,
            base_version=entry.base_version,
            changed_at=entry.changed_at,
        )


class PushRequest(BaseModel):
    """Request body of POST /sync/push."""

    operations: list[PushOperation]


class PushOutcome(BaseModel):
    """Server verdict for one operation."""

    model_config = ConfigDict(extra="ignore")

    status: Literal["applied", "conflict", "rejected"]
    new_version: int | None = None
    server_record: WireRecord | None = None
    server_version: int | None = None
    reason: str | None = None

    def to_result(self) -> PushResult:
        """Convert to the engine's result type."""
        return PushResult(
            status=PushStatus(self.status),
            new_version=self.new_version,
            server_record=self.server_record.to_record() if self.server_record else None,
            server_version=self.server_version,
            reason=self.reason,
        )


class PushResponse(BaseModel):
    """Response body of POST /sync/push, results in submission order."""

    model_config = ConfigDict(extra="ignore")

    results: list[PushOutcome]


# === Pull ===


class PullResponse(BaseModel):
    """Response body of GET /sync/pull."""

    model_config = ConfigDict(extra="ignore")

    records: list[WireRecord]
    cursor: float | None = None
    has_more: bool = False


# === Health ===


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
