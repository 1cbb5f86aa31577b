"""Audit sink for conflict resolutions.

Every resolution is appended to the ``conflict_audit`` table and never
updated or deleted. Record states are stored as versioned snapshots
(see notesync.core.schema) so old rows stay readable.

Whether the user has been told about a merge is tracked in a separate
``audit_notices`` table, keeping audit rows immutable.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from notesync.client.db import connect, reading, transaction
from notesync.core.schema import get_schema, snapshot_adapter
from notesync.core.types import DomainRecord, EntityType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConflictAuditEntry:
    """One recorded resolution.

    Snapshots are pydantic models of the entity (CaptureSnapshot, ...).
    """

    id: int
    entity_type: EntityType
    record_id: str
    conflict_type: str
    resolution_strategy: str
    server_data: Any
    client_data: Any
    resolved_data: Any
    resolved_at: float


def _dump(record: DomainRecord | None) -> str | None:
    if record is None:
        return None
    return get_schema(record.entity_type).snapshot(record).model_dump_json()


def _load(raw: str | None) -> Any:
    if raw is None:
        return None
    return snapshot_adapter.validate_json(raw)


class AuditSink:
    """Append-only log of conflict resolutions."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._lock = threading.RLock()
        self._conn = connect(self._db_path)
        self._create_tables()

    def _create_tables(self) -> None:
        with reading(self._conn):
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS conflict_audit (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    entity_type TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    conflict_type TEXT NOT NULL,
                    resolution_strategy TEXT NOT NULL,
                    server_data TEXT,
                    client_data TEXT NOT NULL,
                    resolved_data TEXT NOT NULL,
                    resolved_at REAL NOT NULL
                );

                CREATE INDEX IF NOT EXISTS ix_conflict_audit_record
                    ON conflict_audit (entity_type, record_id);

                CREATE TABLE IF NOT EXISTS audit_notices (
                    audit_id INTEGER PRIMARY KEY REFERENCES conflict_audit (id)
                );
            """)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def append(
        self,
        conflict_type: str,
        resolution_strategy: str,
        server: DomainRecord | None,
        client: DomainRecord,
        resolved: DomainRecord,
        resolved_at: float,
    ) -> int:
        """Record a resolution.

        Returns:
            Id of the new audit row.
        """
        with self._lock, transaction(self._conn):
            cursor = self._conn.execute(
                """
                INSERT INTO conflict_audit (
                    entity_type, record_id, conflict_type, resolution_strategy,
                    server_data, client_data, resolved_data, resolved_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    resolved.entity_type.value,
                    resolved.record_id,
                    conflict_type,
                    resolution_strategy,
                    _dump(server),
                    _dump(client),
                    _dump(resolved),
                    resolved_at,
                ),
            )
        audit_id = int(cursor.lastrowid)
        logger.debug(
            "Audit #%d: %s on %s:%s (%s)",
            audit_id,
            conflict_type,
            resolved.entity_type.value,
            resolved.record_id,
            resolution_strategy,
        )
        return audit_id

    def _query(self, where: str = "", params: tuple[Any, ...] = ()) -> list[ConflictAuditEntry]:
        with self._lock, reading(self._conn):
            rows = self._conn.execute(
                f"SELECT * FROM conflict_audit {where} ORDER BY id", params
            ).fetchall()
        return [
            ConflictAuditEntry(
                id=row["id"],
                entity_type=EntityType(row["entity_type"]),
                record_id=row["record_id"],
                conflict_type=row["conflict_type"],
                resolution_strategy=row["resolution_strategy"],
                server_data=_load(row["server_data"]),
                client_data=_load(row["client_data"]),
                resolved_data=_load(row["resolved_data"]),
                resolved_at=row["resolved_at"],
            )
            for row in rows
        ]

    def entries(
        self,
        entity_type: EntityType | str | None = None,
        record_id: str | None = None,
    ) -> list[ConflictAuditEntry]:
        """Audit rows, oldest first, optionally for one record."""
        if entity_type is None:
            return self._query()
        if record_id is None:
            return self._query("WHERE entity_type = ?", (EntityType(entity_type).value,))
        return self._query(
            "WHERE entity_type = ? AND record_id = ?",
            (EntityType(entity_type).value, record_id),
        )

    def unnotified(self) -> list[ConflictAuditEntry]:
        """Resolutions the user has not been told about yet."""
        return self._query("WHERE id NOT IN (SELECT audit_id FROM audit_notices)")

    def mark_notified(self, audit_ids: Iterable[int]) -> None:
        """Acknowledge merge notices."""
        with self._lock, transaction(self._conn):
            self._conn.executemany(
                "INSERT OR IGNORE INTO audit_notices (audit_id) VALUES (?)",
                [(audit_id,) for audit_id in audit_ids],
            )

    def __len__(self) -> int:
        with self._lock, reading(self._conn):
            row = self._conn.execute("SELECT COUNT(*) AS n FROM conflict_audit").fetchone()
        return int(row["n"])
