"""Per-entity column schemas and merge policies.

Each synchronized entity declares its columns once, for two consumers:
- a column -> ColumnPolicy table consumed by the conflict resolver
- a versioned pydantic snapshot model used for audit data

Snapshot models form a tagged union on ``entity_type`` so audit rows
round-trip into the right model.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from notesync.core.errors import ValidationError
from notesync.core.types import DomainRecord, EntityType


class ColumnPolicy(Enum):
    """Merge policy of one column."""

    SERVER = "server-wins"  # Lifecycle/status set by the server pipeline
    IMMUTABLE = "immutable"  # Creation timestamp, owner id
    USER_CONTENT = "latest-wins"  # Per-column latest updated_at wins
    COLLECTION = "set-union"  # Tags and id lists


# =============================================================================
# Snapshot models
# =============================================================================


class _Snapshot(BaseModel):
    """Fields shared by every snapshot."""

    model_config = ConfigDict(frozen=True, extra="allow")

    schema_version: Literal[1] = 1
    record_id: str
    version: int
    deleted_at: float | None = None


class CaptureSnapshot(_Snapshot):
    entity_type: Literal["capture"] = "capture"
    created_at: Any = None
    owner_id: str | None = None
    capture_type: str | None = None
    state: Any = None
    transcription_status: Any = None
    digest_status: Any = None
    normalized_text: Any = None
    raw_transcript: Any = None
    duration_ms: Any = None
    title: str | None = None
    description: str | None = None
    project_id: str | None = None
    tags: list[Any] | None = None


class ThoughtSnapshot(_Snapshot):
    entity_type: Literal["thought"] = "thought"
    created_at: Any = None
    owner_id: str | None = None
    capture_id: str | None = None
    summary: Any = None
    status: Any = None
    confidence_score: Any = None
    title: str | None = None
    content: str | None = None
    tags: list[Any] | None = None
    idea_ids: list[Any] | None = None


class IdeaSnapshot(_Snapshot):
    entity_type: Literal["idea"] = "idea"
    created_at: Any = None
    owner_id: str | None = None
    thought_id: str | None = None
    status: Any = None
    order_index: Any = None
    title: str | None = None
    text: str | None = None
    tags: list[Any] | None = None


class TodoSnapshot(_Snapshot):
    entity_type: Literal["todo"] = "todo"
    created_at: Any = None
    owner_id: str | None = None
    thought_id: str | None = None
    idea_id: str | None = None
    suggested_due_date: Any = None
    title: str | None = None
    description: str | None = None
    state: str | None = None
    priority: str | int | None = None
    deadline: Any = None
    completed_at: Any = None
    tags: list[Any] | None = None


RecordSnapshot = Annotated[
    Union[CaptureSnapshot, ThoughtSnapshot, IdeaSnapshot, TodoSnapshot],
    Field(discriminator="entity_type"),
]

snapshot_adapter: TypeAdapter[Any] = TypeAdapter(RecordSnapshot)

# Fields of _Snapshot that are record metadata, not columns
SNAPSHOT_META_FIELDS = frozenset(
    {"schema_version", "entity_type", "record_id", "version", "deleted_at"}
)


# =============================================================================
# Entity schemas
# =============================================================================


@dataclass(frozen=True)
class EntitySchema:
    """Columns and merge policies of one entity type."""

    entity_type: EntityType
    snapshot_model: type[_Snapshot]
    policies: Mapping[str, ColumnPolicy]

    @property
    def columns(self) -> frozenset[str]:
        """All declared columns."""
        return frozenset(self.policies)

    def policy_for(self, column: str) -> ColumnPolicy:
        """Policy of a column. Undeclared columns are treated as user content."""
        return self.policies.get(column, ColumnPolicy.USER_CONTENT)

    def validate_columns(self, columns: Iterable[str]) -> None:
        """Raise ValidationError if any column is not declared."""
        unknown = sorted(set(columns) - self.columns)
        if unknown:
            raise ValidationError(
                f"Unknown column(s) for {self.entity_type.value}: {', '.join(unknown)}"
            )

    def snapshot(self, record: DomainRecord) -> _Snapshot:
        """Build the audit snapshot of a record."""
        return self.snapshot_model(
            record_id=record.record_id,
            version=record.version,
            deleted_at=record.deleted_at,
            **record.data,
        )


def _policies(
    immutable: Iterable[str],
    server: Iterable[str],
    user: Iterable[str],
    collection: Iterable[str],
) -> dict[str, ColumnPolicy]:
    table: dict[str, ColumnPolicy] = {}
    for columns, policy in (
        (immutable, ColumnPolicy.IMMUTABLE),
        (server, ColumnPolicy.SERVER),
        (user, ColumnPolicy.USER_CONTENT),
        (collection, ColumnPolicy.COLLECTION),
    ):
        for column in columns:
            table[column] = policy
    return table


SCHEMAS: dict[EntityType, EntitySchema] = {
    EntityType.CAPTURE: EntitySchema(
        EntityType.CAPTURE,
        CaptureSnapshot,
        _policies(
            immutable=("created_at", "owner_id", "capture_type"),
            server=(
                "state",
                "transcription_status",
                "digest_status",
                "normalized_text",
                "raw_transcript",
                "duration_ms",
            ),
            user=("title", "description", "project_id"),
            collection=("tags",),
        ),
    ),
    EntityType.THOUGHT: EntitySchema(
        EntityType.THOUGHT,
        ThoughtSnapshot,
        _policies(
            immutable=("created_at", "owner_id", "capture_id"),
            server=("summary", "status", "confidence_score"),
            user=("title", "content"),
            collection=("tags", "idea_ids"),
        ),
    ),
    EntityType.IDEA: EntitySchema(
        EntityType.IDEA,
        IdeaSnapshot,
        _policies(
            immutable=("created_at", "owner_id", "thought_id"),
            server=("status", "order_index"),
            user=("title", "text"),
            collection=("tags",),
        ),
    ),
    EntityType.TODO: EntitySchema(
        EntityType.TODO,
        TodoSnapshot,
        _policies(
            immutable=("created_at", "owner_id", "thought_id", "idea_id"),
            server=("suggested_due_date",),
            user=(
                "title",
                "description",
                "state",
                "priority",
                "deadline",
                "completed_at",
            ),
            collection=("tags",),
        ),
    ),
}


def get_schema(entity_type: EntityType | str) -> EntitySchema:
    """Look up the schema of an entity type.

    Raises:
        ValidationError: If the entity type is not synchronized.
    """
    try:
        return SCHEMAS[EntityType(entity_type)]
    except ValueError:
        raise ValidationError(f"Unknown entity type: {entity_type}") from None
