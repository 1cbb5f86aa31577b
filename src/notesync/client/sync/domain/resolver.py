"""Conflict resolution.

Merges a server record and a client record column by column, using the
entity's policy table:

| Policy       | Winner                                         |
|--------------|------------------------------------------------|
| SERVER       | server value                                   |
| IMMUTABLE    | original (server) value                        |
| USER_CONTENT | latest per-column timestamp, ties go to server |
| COLLECTION   | union of both, server items first              |

The merge functions are pure: same inputs, same output. The resolved
version is always beyond both inputs so it supersedes them.

ConflictResolver wraps the conflicting merges and records each one in an
audit sink. Disjoint edits go through merge_disjoint, unaudited.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from notesync.core.config import DeletePolicy
from notesync.core.schema import ColumnPolicy, EntitySchema, get_schema
from notesync.core.types import Clock, DomainRecord, Operation

logger = logging.getLogger(__name__)

MERGE_STRATEGY = "per-column-hybrid"
AUTO_MERGE_STRATEGY = "auto-merge"

# conflict_type values recorded in the audit log
CONCURRENT_UPDATE = "concurrent-update"
DISJOINT_UPDATE = "disjoint-update"
UPDATE_VS_DELETE = "update-vs-delete"  # local update, server deleted
DELETE_VS_UPDATE = "delete-vs-update"  # local delete, server updated

_SERVER_HELD = (ColumnPolicy.SERVER, ColumnPolicy.IMMUTABLE)


class AuditAppender(Protocol):
    """Where resolutions are recorded."""

    def append(
        self,
        conflict_type: str,
        resolution_strategy: str,
        server: DomainRecord | None,
        client: DomainRecord,
        resolved: DomainRecord,
        resolved_at: float,
    ) -> int: ...


@dataclass(frozen=True)
class Resolution:
    """Outcome of a resolution.

    Attributes:
        record: Record to store locally.
        strategy: How it was resolved.
        conflict_type: What kind of conflict it was.
        push_operation: Follow-up mutation to send so the server converges,
            or None when the server already holds the outcome.
        push_payload: Columns of the follow-up mutation.
        audit_id: Audit row written for this resolution.
    """

    record: DomainRecord
    strategy: str
    conflict_type: str
    push_operation: Operation | None = None
    push_payload: Mapping[str, Any] | None = None
    audit_id: int | None = None


def _union(server_items: Any, client_items: Any) -> list[Any]:
    merged: list[Any] = []
    for item in [*(server_items or []), *(client_items or [])]:
        if item not in merged:
            merged.append(item)
    return merged


def merge_column(
    policy: ColumnPolicy,
    column: str,
    server: DomainRecord,
    client: DomainRecord,
) -> tuple[Any, float]:
    """Merge one column present on at least one side.

    Returns:
        (value, timestamp) of the winner.
    """
    in_server = column in server.data
    in_client = column in client.data
    if not in_client:
        return server.data[column], server.column_timestamp(column)
    if not in_server:
        return client.data[column], client.column_timestamp(column)

    server_ts = server.column_timestamp(column)
    client_ts = client.column_timestamp(column)

    if policy is ColumnPolicy.COLLECTION:
        server_value, client_value = server.data[column], client.data[column]
        if isinstance(server_value, (list, tuple, type(None))) and isinstance(
            client_value, (list, tuple, type(None))
        ):
            return _union(server_value, client_value), max(server_ts, client_ts)
        # Not a list on one side: fall back to latest-wins
        policy = ColumnPolicy.USER_CONTENT

    if policy is ColumnPolicy.USER_CONTENT and client_ts > server_ts:
        return client.data[column], client_ts
    return server.data[column], server_ts


def merge_records(
    server: DomainRecord,
    client: DomainRecord,
    policies: EntitySchema | Mapping[str, ColumnPolicy],
) -> DomainRecord:
    """Merge two versions of the same record column by column.

    Args:
        server: Server state.
        client: Client state (only the columns it holds are merged).
        policies: Entity schema or column -> policy table. Undeclared
            columns are user content.

    Returns:
        Resolved record at ``max(server.version, client.version) + 1``.
    """
    if isinstance(policies, EntitySchema):
        policy_for = policies.policy_for
    else:
        table = policies

        def policy_for(column: str) -> ColumnPolicy:
            return table.get(column, ColumnPolicy.USER_CONTENT)

    data: dict[str, Any] = {}
    stamps: dict[str, float] = {}
    for column in sorted(set(server.data) | set(client.data)):
        data[column], stamps[column] = merge_column(
            policy_for(column), column, server, client
        )

    return DomainRecord(
        entity_type=server.entity_type,
        record_id=server.record_id,
        version=max(server.version, client.version) + 1,
        data=data,
        updated_at=max(server.updated_at, client.updated_at),
        column_updated_at=stamps,
        deleted_at=None,
    )


def auto_merge(server: DomainRecord, client: DomainRecord) -> DomainRecord:
    """Combine disjoint column changes: client columns on top of the server.

    Server-owned and immutable columns the server already holds keep the
    server value.
    """
    schema = get_schema(server.entity_type)
    data = dict(server.data)
    stamps = {column: server.column_timestamp(column) for column in server.data}
    for column, value in client.data.items():
        if column in server.data and schema.policy_for(column) in _SERVER_HELD:
            continue
        data[column] = value
        stamps[column] = client.column_timestamp(column)

    return DomainRecord(
        entity_type=server.entity_type,
        record_id=server.record_id,
        version=max(server.version, client.version) + 1,
        data=data,
        updated_at=max(server.updated_at, client.updated_at),
        column_updated_at=stamps,
        deleted_at=None,
    )


def merge_disjoint(server: DomainRecord, client: DomainRecord) -> Resolution:
    """Auto-merge disjoint edits. Nothing is audited."""
    resolved = auto_merge(server, client)
    payload = changes_against(resolved, server)
    logger.debug(
        "Auto-merged %s:%s onto server v%d",
        server.entity_type.value,
        server.record_id,
        server.version,
    )
    return Resolution(
        record=resolved,
        strategy=AUTO_MERGE_STRATEGY,
        conflict_type=DISJOINT_UPDATE,
        push_operation=Operation.UPDATE if payload else None,
        push_payload=payload,
    )


def changes_against(resolved: DomainRecord, server: DomainRecord | None) -> dict[str, Any]:
    """Columns of ``resolved`` the server does not hold yet."""
    if server is None:
        return dict(resolved.data)
    missing = object()
    return {
        column: value
        for column, value in resolved.data.items()
        if server.data.get(column, missing) != value
    }


class ConflictResolver:
    """Resolves detected conflicts and records them for audit.

    Example:
        >>> resolver = ConflictResolver(audit_sink)
        >>> resolution = resolver.resolve(server_record, client_record)
        >>> resolution.record.version > server_record.version
        True
    """

    def __init__(
        self,
        audit: AuditAppender,
        delete_policy: DeletePolicy = DeletePolicy.DELETE_WINS,
        clock: Clock = time.time,
    ) -> None:
        self._audit = audit
        self._delete_policy = delete_policy
        self._clock = clock

    @property
    def delete_policy(self) -> DeletePolicy:
        return self._delete_policy

    def _record(
        self,
        conflict_type: str,
        strategy: str,
        server: DomainRecord | None,
        client: DomainRecord,
        resolved: DomainRecord,
    ) -> int:
        return self._audit.append(
            conflict_type=conflict_type,
            resolution_strategy=strategy,
            server=server,
            client=client,
            resolved=resolved,
            resolved_at=self._clock(),
        )

    def resolve(self, server: DomainRecord, client: DomainRecord) -> Resolution:
        """Resolve overlapping column edits with the per-column policies."""
        schema = get_schema(server.entity_type)
        resolved = merge_records(server, client, schema)
        audit_id = self._record(CONCURRENT_UPDATE, MERGE_STRATEGY, server, client, resolved)
        payload = changes_against(resolved, server)
        logger.info(
            "Resolved conflict on %s:%s (server v%d, client v%d) -> v%d",
            server.entity_type.value,
            server.record_id,
            server.version,
            client.version,
            resolved.version,
        )
        return Resolution(
            record=resolved,
            strategy=MERGE_STRATEGY,
            conflict_type=CONCURRENT_UPDATE,
            push_operation=Operation.UPDATE if payload else None,
            push_payload=payload,
            audit_id=audit_id,
        )

    def resolve_delete(
        self,
        server: DomainRecord | None,
        client: DomainRecord,
        local_operation: Operation,
    ) -> Resolution:
        """Resolve a delete racing an update with the configured DeletePolicy.

        Args:
            server: Server record (missing or soft-deleted when the server
                deleted it).
            client: Local record, soft-deleted when the local side deleted it.
            local_operation: The local mutation that hit the conflict.
        """
        local_delete = local_operation is Operation.DELETE
        conflict_type = DELETE_VS_UPDATE if local_delete else UPDATE_VS_DELETE
        strategy = self._delete_policy.value
        now = self._clock()
        server_version = server.version if server is not None else 0
        version = max(server_version, client.version) + 1

        push_operation: Operation | None = None
        push_payload: dict[str, Any] = {}

        if local_delete:
            if server is None:
                raise ValueError("A local delete only conflicts with an existing server record")
            if self._delete_policy is DeletePolicy.DELETE_WINS:
                resolved = DomainRecord(
                    entity_type=server.entity_type,
                    record_id=server.record_id,
                    version=version,
                    data=dict(server.data),
                    updated_at=now,
                    column_updated_at=dict(server.column_updated_at),
                    deleted_at=client.deleted_at or now,
                )
                push_operation = Operation.DELETE
            else:
                # The server's update survives, the local delete is dropped
                resolved = DomainRecord(
                    entity_type=server.entity_type,
                    record_id=server.record_id,
                    version=server.version,
                    data=dict(server.data),
                    updated_at=server.updated_at,
                    column_updated_at=dict(server.column_updated_at),
                    deleted_at=None,
                )
        else:
            if self._delete_policy is DeletePolicy.DELETE_WINS:
                resolved = DomainRecord(
                    entity_type=client.entity_type,
                    record_id=client.record_id,
                    version=version,
                    data=dict(server.data if server is not None else client.data),
                    updated_at=now,
                    column_updated_at=dict(
                        server.column_updated_at if server is not None else {}
                    ),
                    deleted_at=(
                        server.deleted_at if server is not None and server.deleted_at else now
                    ),
                )
            else:
                # Restore the record with the local edit applied on top
                base = dict(server.data) if server is not None else {}
                resolved = DomainRecord(
                    entity_type=client.entity_type,
                    record_id=client.record_id,
                    version=version,
                    data={**base, **client.data},
                    updated_at=max(now, client.updated_at),
                    column_updated_at={
                        **(server.column_updated_at if server is not None else {}),
                        **client.column_updated_at,
                    },
                    deleted_at=None,
                )
                push_operation = Operation.CREATE if server is None else Operation.UPDATE
                push_payload = dict(resolved.data)

        audit_id = self._record(conflict_type, strategy, server, client, resolved)
        logger.info(
            "Resolved %s on %s:%s with %s",
            conflict_type,
            client.entity_type.value,
            client.record_id,
            strategy,
        )
        return Resolution(
            record=resolved,
            strategy=strategy,
            conflict_type=conflict_type,
            push_operation=push_operation,
            push_payload=push_payload,
            audit_id=audit_id,
        )
