"""Local state management for the sync client.

This module provides:
- LocalRecordStore: SQLite-based store of domain records and sync state

Architecture:
    Each record keeps the last server version it is based on. A local
    edit changes data and per-column timestamps but never the version;
    only server acknowledgements (applied pushes, pulls, resolutions)
    move the version forward. The version observed at edit time is
    the baseline the outbox sends with the mutation.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from notesync.client.db import connect, reading, transaction
from notesync.core.types import Clock, DomainRecord, EntityType

logger = logging.getLogger(__name__)

# Key-value keys in sync_state
LAST_PULLED_AT = "last_pulled_at"
LAST_SUCCESS_AT = "last_success_at"
REMINDER_DISMISSED_UNTIL = "reminder_dismissed_until"


def _record_from_row(row: sqlite3.Row) -> DomainRecord:
    return DomainRecord(
        entity_type=EntityType(row["entity_type"]),
        record_id=row["record_id"],
        version=row["version"],
        data=json.loads(row["data"]),
        updated_at=row["updated_at"],
        column_updated_at=json.loads(row["column_updated_at"]),
        deleted_at=row["deleted_at"],
    )


class LocalRecordStore:
    """SQLite-based local copy of the user's records."""

    def __init__(self, db_path: Path, clock: Clock = time.time) -> None:
        """Initialize local state database.

        Args:
            db_path: Path to SQLite database file.
            clock: Time source in epoch seconds.
        """
        self._db_path = Path(db_path)
        self._clock = clock

        # Lock for thread-safe database access
        self._lock = threading.RLock()
        self._conn = connect(self._db_path)
        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        with reading(self._conn):
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS records (
                    entity_type TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    data TEXT NOT NULL,
                    updated_at REAL NOT NULL,
                    column_updated_at TEXT NOT NULL,
                    deleted_at REAL,
                    PRIMARY KEY (entity_type, record_id)
                );

                -- Key-value sync state
                CREATE TABLE IF NOT EXISTS sync_state (
                    key TEXT PRIMARY KEY,
                    value TEXT
                );
            """)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    # === Record operations ===

    def get(self, entity_type: EntityType | str, record_id: str) -> DomainRecord | None:
        """Get a record (deleted ones included).

        Returns:
            DomainRecord if found, None otherwise.
        """
        with self._lock, reading(self._conn):
            row = self._conn.execute(
                "SELECT * FROM records WHERE entity_type = ? AND record_id = ?",
                (EntityType(entity_type).value, record_id),
            ).fetchone()
        if row is None:
            return None
        return _record_from_row(row)

    def list_records(
        self,
        entity_type: EntityType | str | None = None,
        include_deleted: bool = False,
    ) -> list[DomainRecord]:
        """List records, newest first."""
        sql = "SELECT * FROM records WHERE 1 = 1"
        params: list[Any] = []
        if entity_type is not None:
            sql += " AND entity_type = ?"
            params.append(EntityType(entity_type).value)
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        sql += " ORDER BY updated_at DESC"
        with self._lock, reading(self._conn):
            rows = self._conn.execute(sql, params).fetchall()
        return [_record_from_row(row) for row in rows]

    def _upsert(self, record: DomainRecord) -> None:
        self._conn.execute(
            """
            INSERT OR REPLACE INTO records
            (entity_type, record_id, version, data, updated_at, column_updated_at, deleted_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.entity_type.value,
                record.record_id,
                record.version,
                json.dumps(record.data),
                record.updated_at,
                json.dumps(record.column_updated_at),
                record.deleted_at,
            ),
        )

    def put(self, record: DomainRecord) -> None:
        """Store a record as-is."""
        with self._lock, transaction(self._conn):
            self._upsert(record)

    def apply_local_edit(
        self,
        entity_type: EntityType | str,
        record_id: str,
        changes: Mapping[str, Any],
        edited_at: float | None = None,
    ) -> tuple[DomainRecord, int | None]:
        """Apply a user edit to the local copy.

        Args:
            entity_type: Entity table.
            record_id: Record identifier (created if missing).
            changes: Column -> new value.
            edited_at: Edit time (defaults to now).

        Returns:
            (updated record, baseline version) where the baseline is the
            server version the edit was made against, or None for a record
            the server has never seen.
        """
        stamp = self._clock() if edited_at is None else edited_at
        etype = EntityType(entity_type)
        with self._lock, transaction(self._conn):
            row = self._conn.execute(
                "SELECT * FROM records WHERE entity_type = ? AND record_id = ?",
                (etype.value, record_id),
            ).fetchone()
            current = _record_from_row(row) if row else None
            if current is None:
                record = DomainRecord(
                    entity_type=etype,
                    record_id=record_id,
                    version=0,
                    data=dict(changes),
                    updated_at=stamp,
                    column_updated_at={column: stamp for column in changes},
                )
                baseline = None
            else:
                record = DomainRecord(
                    entity_type=etype,
                    record_id=record_id,
                    version=current.version,
                    data={**current.data, **changes},
                    updated_at=stamp,
                    column_updated_at={
                        **current.column_updated_at,
                        **{column: stamp for column in changes},
                    },
                    deleted_at=None,
                )
                baseline = current.version if current.version > 0 else None
            self._upsert(record)
        return record, baseline

    def mark_deleted(
        self,
        entity_type: EntityType | str,
        record_id: str,
        deleted_at: float | None = None,
    ) -> int | None:
        """Soft-delete a record locally.

        Returns:
            Baseline version of the record, or None if it was never synced.
        """
        stamp = self._clock() if deleted_at is None else deleted_at
        etype = EntityType(entity_type)
        with self._lock, transaction(self._conn):
            row = self._conn.execute(
                "SELECT version FROM records WHERE entity_type = ? AND record_id = ?",
                (etype.value, record_id),
            ).fetchone()
            self._conn.execute(
                """
                UPDATE records SET deleted_at = ?, updated_at = ?
                WHERE entity_type = ? AND record_id = ?
                """,
                (stamp, stamp, etype.value, record_id),
            )
        if row is None or row["version"] == 0:
            return None
        return int(row["version"])

    def set_version(self, entity_type: EntityType | str, record_id: str, version: int) -> None:
        """Move a record's version forward after the server acknowledged it.

        Versions never go backwards.
        """
        with self._lock, transaction(self._conn):
            self._conn.execute(
                """
                UPDATE records SET version = ?
                WHERE entity_type = ? AND record_id = ? AND version < ?
                """,
                (version, EntityType(entity_type).value, record_id, version),
            )

    def apply_remote(
        self,
        record: DomainRecord,
        overlay: Mapping[str, Any] | None = None,
        overlay_changed_at: Mapping[str, float] | None = None,
    ) -> DomainRecord:
        """Store a server or merged record, keeping unsynced local edits.

        Args:
            record: Record to store.
            overlay: Columns edited locally and still queued; they stay
                visible on top of the stored record.
            overlay_changed_at: Edit times of the overlay columns.

        Returns:
            The stored record.
        """
        if overlay:
            record = DomainRecord(
                entity_type=record.entity_type,
                record_id=record.record_id,
                version=record.version,
                data={**record.data, **overlay},
                updated_at=max(
                    [record.updated_at, *(overlay_changed_at or {}).values()]
                ),
                column_updated_at={**record.column_updated_at, **(overlay_changed_at or {})},
                deleted_at=record.deleted_at,
            )
        with self._lock, transaction(self._conn):
            self._upsert(record)
        return record

    def purge(self, entity_type: EntityType | str, record_id: str) -> None:
        """Remove a record entirely."""
        with self._lock, transaction(self._conn):
            self._conn.execute(
                "DELETE FROM records WHERE entity_type = ? AND record_id = ?",
                (EntityType(entity_type).value, record_id),
            )

    # === Sync state ===

    def get_state(self, key: str) -> str | None:
        """Get a sync state value."""
        with self._lock, reading(self._conn):
            row = self._conn.execute(
                "SELECT value FROM sync_state WHERE key = ?", (key,)
            ).fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: str | None) -> None:
        """Set (or clear with None) a sync state value."""
        with self._lock, transaction(self._conn):
            if value is None:
                self._conn.execute("DELETE FROM sync_state WHERE key = ?", (key,))
            else:
                self._conn.execute(
                    "INSERT OR REPLACE INTO sync_state (key, value) VALUES (?, ?)",
                    (key, value),
                )

    def get_float(self, key: str) -> float | None:
        """Get a numeric sync state value."""
        value = self.get_state(key)
        return float(value) if value is not None else None

    def set_float(self, key: str, value: float | None) -> None:
        """Set a numeric sync state value."""
        self.set_state(key, None if value is None else repr(float(value)))

    @property
    def last_pulled_at(self) -> float | None:
        """Pull cursor."""
        return self.get_float(LAST_PULLED_AT)

    @last_pulled_at.setter
    def last_pulled_at(self, value: float | None) -> None:
        self.set_float(LAST_PULLED_AT, value)
