"""Outbox: durable queue of pending local mutations.

This module provides:
- Outbox: SQLite-backed, record-deduplicated mutation queue

Each local edit lands here before it is pushed. Entries are deduplicated
per (entity_type, record_id): a second edit to a record that has not been
pushed yet coalesces into the existing entry, overwriting the changed
columns while keeping the original base_version and enqueued_at.

Lifecycle:
    pending -> in-flight -> (removed)            applied
                         -> pending              retryable failure
                         -> conflicted -> (removed)  conflict resolved
                         -> dead                 rejected / exhausted

Supersession:
    An edit to a record whose entry is in flight cannot modify what was
    already sent. It becomes a successor pending entry and the in-flight
    entry is flagged ``superseded``. The successor is held back from drain
    until its predecessor settles:
    - applied/resolved: the successor is rebased onto the new server version
    - retryable failure: the predecessor is folded into the successor,
      so a stale update is never re-sent on its own (a local delete wins)

Thread safety:
    All transitions run under one RLock and one SQLite transaction.
    Nothing here performs network I/O.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from notesync.client.db import connect, reading, transaction
from notesync.client.sync.types import ACTIVE_STATUSES, EntryStatus, OutboxEntry
from notesync.core.errors import ValidationError
from notesync.core.schema import get_schema
from notesync.core.types import Clock, DomainRecord, EntityType, Operation

logger = logging.getLogger(__name__)

_ACTIVE_SQL = ", ".join(f"'{s.value}'" for s in ACTIVE_STATUSES)


def combine_operations(first: Operation, second: Operation) -> Operation:
    """Operation of an entry after coalescing ``second`` into ``first``.

    - anything then delete: delete
    - create then update/create: create (server never saw the record)
    - delete then create/update: update (record restored locally)
    - update then update/create: update
    """
    if second is Operation.DELETE:
        return Operation.DELETE
    if first is Operation.CREATE:
        return Operation.CREATE
    return Operation.UPDATE


class Outbox:
    """Durable, ordered, deduplicated queue of local mutations.

    Attributes:
        db_path: SQLite database file
    """

    def __init__(self, db_path: Path, clock: Clock = time.time) -> None:
        """Open (and create if needed) the outbox table.

        Args:
            db_path: Path to the SQLite database file.
            clock: Time source in epoch seconds.
        """
        self._db_path = Path(db_path)
        self._clock = clock
        self._lock = threading.RLock()
        self._conn = connect(self._db_path)
        self._create_tables()

    def _create_tables(self) -> None:
        with reading(self._conn):
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS outbox (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    entity_type TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    changed_at TEXT NOT NULL,
                    base_version INTEGER,
                    enqueued_at REAL NOT NULL,
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    last_attempt_at REAL,
                    next_attempt_at REAL NOT NULL,
                    status TEXT NOT NULL,
                    superseded INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    server_record TEXT
                );

                CREATE INDEX IF NOT EXISTS ix_outbox_drain
                    ON outbox (status, enqueued_at, id);

                CREATE INDEX IF NOT EXISTS ix_outbox_record
                    ON outbox (entity_type, record_id);
            """)
        logger.debug("Initialized outbox at %s", self._db_path)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    # === Queries ===

    def _fetch(self, sql: str, params: tuple[Any, ...] = ()) -> list[OutboxEntry]:
        rows = self._conn.execute(sql, params).fetchall()
        return [OutboxEntry.from_row(row) for row in rows]

    def _fetch_one(self, entry_id: int) -> OutboxEntry | None:
        entries = self._fetch("SELECT * FROM outbox WHERE id = ?", (entry_id,))
        return entries[0] if entries else None

    def _require(self, entry_id: int) -> OutboxEntry:
        entry = self._fetch_one(entry_id)
        if entry is None:
            raise KeyError(f"Outbox entry {entry_id} not found")
        return entry

    def get(self, entry_id: int) -> OutboxEntry | None:
        """Get an entry by id."""
        with self._lock, reading(self._conn):
            return self._fetch_one(entry_id)

    def find(self, entity_type: EntityType | str, record_id: str) -> list[OutboxEntry]:
        """Active (non-dead) entries for a record, oldest first."""
        with self._lock, reading(self._conn):
            return self._fetch(
                f"""
                SELECT * FROM outbox
                WHERE entity_type = ? AND record_id = ? AND status IN ({_ACTIVE_SQL})
                ORDER BY id
                """,
                (EntityType(entity_type).value, record_id),
            )

    def pending_for(self, entity_type: EntityType | str, record_id: str) -> OutboxEntry | None:
        """The pending entry for a record, if any."""
        for entry in self.find(entity_type, record_id):
            if entry.status is EntryStatus.PENDING:
                return entry
        return None

    def list_entries(self, status: EntryStatus | None = None) -> list[OutboxEntry]:
        """All entries, optionally filtered by status, in drain order."""
        with self._lock, reading(self._conn):
            if status is None:
                return self._fetch("SELECT * FROM outbox ORDER BY enqueued_at, id")
            return self._fetch(
                "SELECT * FROM outbox WHERE status = ? ORDER BY enqueued_at, id",
                (status.value,),
            )

    def dead_letters(self) -> list[OutboxEntry]:
        """Entries that need manual intervention."""
        return self.list_entries(EntryStatus.DEAD)

    def counts(self) -> dict[str, int]:
        """Number of entries per status."""
        stats = {status.value: 0 for status in EntryStatus}
        with self._lock, reading(self._conn):
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS n FROM outbox GROUP BY status"
            ).fetchall()
        for row in rows:
            stats[row["status"]] = row["n"]
        stats["total"] = sum(stats[s.value] for s in EntryStatus)
        return stats

    def next_due_at(self) -> float | None:
        """Earliest time a pending entry becomes drainable."""
        with self._lock, reading(self._conn):
            row = self._conn.execute(
                "SELECT MIN(next_attempt_at) AS due FROM outbox WHERE status = ?",
                (EntryStatus.PENDING.value,),
            ).fetchone()
        return row["due"] if row else None

    def __len__(self) -> int:
        """Number of entries still awaiting sync (dead letters excluded)."""
        with self._lock, reading(self._conn):
            row = self._conn.execute(
                f"SELECT COUNT(*) AS n FROM outbox WHERE status IN ({_ACTIVE_SQL})"
            ).fetchone()
        return int(row["n"])

    # === Writes ===

    def _insert(
        self,
        entity_type: EntityType,
        record_id: str,
        operation: Operation,
        payload: Mapping[str, Any],
        changed_at: Mapping[str, float],
        base_version: int | None,
        enqueued_at: float,
        next_attempt_at: float,
        attempt_count: int = 0,
    ) -> int:
        cursor = self._conn.execute(
            """
            INSERT INTO outbox (
                entity_type, record_id, operation, payload, changed_at,
                base_version, enqueued_at, attempt_count, next_attempt_at, status
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entity_type.value,
                record_id,
                operation.value,
                json.dumps(dict(payload)),
                json.dumps(dict(changed_at)),
                base_version,
                enqueued_at,
                attempt_count,
                next_attempt_at,
                EntryStatus.PENDING.value,
            ),
        )
        return int(cursor.lastrowid)

    def _write_merge(
        self,
        entry: OutboxEntry,
        operation: Operation,
        payload: Mapping[str, Any],
        changed_at: Mapping[str, float],
    ) -> None:
        if operation is Operation.DELETE:
            payload, changed_at = {}, {}
        self._conn.execute(
            "UPDATE outbox SET operation = ?, payload = ?, changed_at = ? WHERE id = ?",
            (
                operation.value,
                json.dumps(dict(payload)),
                json.dumps(dict(changed_at)),
                entry.id,
            ),
        )

    def enqueue(
        self,
        entity_type: EntityType | str,
        record_id: str,
        operation: Operation | str,
        payload: Mapping[str, Any] | None,
        base_version: int | None,
        edited_at: float | None = None,
    ) -> OutboxEntry:
        """Record a local mutation, coalescing with a queued one.

        Args:
            entity_type: Entity table of the record.
            record_id: Record identifier.
            operation: create, update or delete.
            payload: Changed columns -> new values (ignored for delete).
            base_version: Server version observed when the edit was made.
            edited_at: Time of the edit (defaults to now).

        Returns:
            The entry now holding this edit (possibly merged).

        Raises:
            ValidationError: Unknown entity type or column, or empty record id.
        """
        schema = get_schema(entity_type)
        op = Operation(operation)
        if not record_id:
            raise ValidationError("record_id must not be empty")
        data = {} if op is Operation.DELETE else dict(payload or {})
        schema.validate_columns(data)

        now = self._clock()
        stamp = now if edited_at is None else edited_at
        changed_at = {column: stamp for column in data}

        with self._lock, transaction(self._conn):
            active = self._fetch(
                f"""
                SELECT * FROM outbox
                WHERE entity_type = ? AND record_id = ? AND status IN ({_ACTIVE_SQL})
                ORDER BY id
                """,
                (schema.entity_type.value, record_id),
            )
            pending = next((e for e in active if e.status is EntryStatus.PENDING), None)
            in_flight = next((e for e in active if e.status is not EntryStatus.PENDING), None)

            if pending is not None:
                merged_op = combine_operations(pending.operation, op)
                self._write_merge(
                    pending,
                    merged_op,
                    {**pending.payload, **data},
                    {**pending.changed_at, **changed_at},
                )
                entry_id = pending.id
                logger.debug(
                    "Coalesced %s into entry #%d for %s:%s",
                    op.value,
                    pending.id,
                    schema.entity_type.value,
                    record_id,
                )
            elif in_flight is not None:
                entry_id = self._insert(
                    schema.entity_type,
                    record_id,
                    op,
                    data,
                    changed_at,
                    in_flight.base_version,
                    enqueued_at=now,
                    next_attempt_at=now,
                )
                self._conn.execute(
                    "UPDATE outbox SET superseded = 1 WHERE id = ?", (in_flight.id,)
                )
                logger.debug(
                    "Entry #%d superseded by #%d (%s) for %s:%s",
                    in_flight.id,
                    entry_id,
                    op.value,
                    schema.entity_type.value,
                    record_id,
                )
            else:
                entry_id = self._insert(
                    schema.entity_type,
                    record_id,
                    op,
                    data,
                    changed_at,
                    base_version,
                    enqueued_at=now,
                    next_attempt_at=now,
                )
                logger.debug(
                    "Enqueued #%d %s %s:%s (base version %s)",
                    entry_id,
                    op.value,
                    schema.entity_type.value,
                    record_id,
                    base_version,
                )

            return self._require(entry_id)

    def drain(self, batch_size: int) -> list[OutboxEntry]:
        """Claim the next batch of due pending entries.

        Entries come oldest ``enqueued_at`` first and are marked in-flight
        in the same transaction, so no entry is handed out twice. A
        successor waiting behind an in-flight entry is skipped. Calling
        drain again continues with the next entries.

        Args:
            batch_size: Maximum number of entries to claim.

        Returns:
            Claimed entries, possibly empty.
        """
        if batch_size < 1:
            return []
        now = self._clock()
        with self._lock, transaction(self._conn):
            entries = self._fetch(
                f"""
                SELECT * FROM outbox AS o
                WHERE o.status = ? AND o.next_attempt_at <= ?
                  AND NOT EXISTS (
                      SELECT 1 FROM outbox AS p
                      WHERE p.entity_type = o.entity_type
                        AND p.record_id = o.record_id
                        AND p.id <> o.id
                        AND p.status IN ({_ACTIVE_SQL})
                        AND p.status <> ?
                  )
                ORDER BY o.enqueued_at, o.id
                LIMIT ?
                """,
                (
                    EntryStatus.PENDING.value,
                    now,
                    EntryStatus.PENDING.value,
                    batch_size,
                ),
            )
            if not entries:
                return []
            self._conn.executemany(
                "UPDATE outbox SET status = ?, last_attempt_at = ? WHERE id = ?",
                [(EntryStatus.IN_FLIGHT.value, now, e.id) for e in entries],
            )

        for entry in entries:
            entry.status = EntryStatus.IN_FLIGHT
            entry.last_attempt_at = now
        logger.debug("Drained %d entries", len(entries))
        return entries

    def _rebase_successor(self, entry: OutboxEntry, base_version: int) -> None:
        # The server holds the record now, so a queued create becomes an update
        self._conn.execute(
            """
            UPDATE outbox SET base_version = ?,
                operation = CASE operation WHEN ? THEN ? ELSE operation END
            WHERE entity_type = ? AND record_id = ? AND status = ? AND id <> ?
            """,
            (
                base_version,
                Operation.CREATE.value,
                Operation.UPDATE.value,
                entry.entity_type.value,
                entry.record_id,
                EntryStatus.PENDING.value,
                entry.id,
            ),
        )

    def mark_applied(self, entry_id: int, new_version: int) -> OutboxEntry:
        """Remove an entry the server applied.

        A successor entry is rebased onto ``new_version``.
        """
        with self._lock, transaction(self._conn):
            entry = self._require(entry_id)
            self._conn.execute("DELETE FROM outbox WHERE id = ?", (entry_id,))
            if entry.superseded:
                self._rebase_successor(entry, new_version)
        logger.debug("Entry #%d applied at version %d", entry_id, new_version)
        return entry

    def mark_conflict(self, entry_id: int, server_record: DomainRecord | None) -> OutboxEntry:
        """Flag an in-flight entry as conflicted, keeping the server state."""
        with self._lock, transaction(self._conn):
            self._require(entry_id)
            self._conn.execute(
                "UPDATE outbox SET status = ?, server_record = ? WHERE id = ?",
                (
                    EntryStatus.CONFLICTED.value,
                    json.dumps(server_record.to_dict()) if server_record else None,
                    entry_id,
                ),
            )
            return self._require(entry_id)

    def mark_resolved(self, entry_id: int, base_version: int) -> OutboxEntry:
        """Remove a conflicted entry once its merge has been applied locally.

        Args:
            entry_id: The conflicted entry.
            base_version: Server version the merge was computed against; a
                successor entry is rebased onto it.
        """
        with self._lock, transaction(self._conn):
            entry = self._require(entry_id)
            self._conn.execute("DELETE FROM outbox WHERE id = ?", (entry_id,))
            if entry.superseded:
                self._rebase_successor(entry, base_version)
        logger.debug("Entry #%d resolved against version %d", entry_id, base_version)
        return entry

    def mark_failed(self, entry_id: int, error: str, retry_at: float) -> OutboxEntry:
        """Return an in-flight entry to pending after a retryable failure.

        Consumes one attempt. A superseded entry is folded into its
        successor instead: columns the successor does not touch are taken
        from it, the operations are combined and the attempt count carries
        over, so a stale update is never re-sent on its own.

        Returns:
            The entry that will carry the retry.
        """
        with self._lock, transaction(self._conn):
            entry = self._require(entry_id)
            attempts = entry.attempt_count + 1
            successor = None
            if entry.superseded:
                successor = next(
                    (
                        e
                        for e in self._fetch(
                            """
                            SELECT * FROM outbox
                            WHERE entity_type = ? AND record_id = ? AND status = ?
                            ORDER BY id LIMIT 1
                            """,
                            (
                                entry.entity_type.value,
                                entry.record_id,
                                EntryStatus.PENDING.value,
                            ),
                        )
                    ),
                    None,
                )

            if successor is not None:
                self._fold_into(entry, successor)
                self._conn.execute(
                    """
                    UPDATE outbox SET attempt_count = ?, next_attempt_at = ?,
                        last_error = ?, enqueued_at = ?
                    WHERE id = ?
                    """,
                    (attempts, retry_at, error, entry.enqueued_at, successor.id),
                )
                self._conn.execute("DELETE FROM outbox WHERE id = ?", (entry.id,))
                logger.debug("Superseded entry #%d folded into #%d", entry.id, successor.id)
                return self._require(successor.id)

            self._conn.execute(
                """
                UPDATE outbox SET status = ?, attempt_count = ?, next_attempt_at = ?,
                    last_error = ?, superseded = 0
                WHERE id = ?
                """,
                (EntryStatus.PENDING.value, attempts, retry_at, error, entry_id),
            )
            return self._require(entry_id)

    def _fold_into(self, older: OutboxEntry, newer: OutboxEntry) -> None:
        """Merge an older entry underneath a newer one (newer columns win)."""
        operation = combine_operations(older.operation, newer.operation)
        self._write_merge(
            newer,
            operation,
            {**older.payload, **newer.payload},
            {**older.changed_at, **newer.changed_at},
        )
        self._conn.execute(
            "UPDATE outbox SET base_version = ? WHERE id = ?",
            (older.base_version, newer.id),
        )

    def mark_dead(
        self,
        entry_id: int,
        reason: str,
        consume_attempt: bool = False,
    ) -> OutboxEntry:
        """Dead-letter an entry. It stays queryable but is never drained.

        Args:
            entry_id: Entry to dead-letter.
            reason: Shown to the user.
            consume_attempt: Count the failed attempt (retry exhaustion).
        """
        with self._lock, transaction(self._conn):
            entry = self._require(entry_id)
            attempts = entry.attempt_count + (1 if consume_attempt else 0)
            self._conn.execute(
                """
                UPDATE outbox SET status = ?, attempt_count = ?, last_error = ?,
                    superseded = 0
                WHERE id = ?
                """,
                (EntryStatus.DEAD.value, attempts, reason, entry_id),
            )
            logger.warning("Dead-lettered %r: %s", entry, reason)
            return self._require(entry_id)

    def release(self, entry_ids: list[int]) -> None:
        """Return in-flight entries to pending without consuming an attempt."""
        with self._lock, transaction(self._conn):
            self._conn.executemany(
                "UPDATE outbox SET status = ? WHERE id = ? AND status = ?",
                [
                    (EntryStatus.PENDING.value, entry_id, EntryStatus.IN_FLIGHT.value)
                    for entry_id in entry_ids
                ],
            )

    def recover_in_flight(self) -> int:
        """Return entries left in flight or conflicted by a crash to pending.

        Returns:
            Number of entries recovered.
        """
        with self._lock, transaction(self._conn):
            cursor = self._conn.execute(
                """
                UPDATE outbox SET status = ?, superseded = 0, server_record = NULL
                WHERE status IN (?, ?)
                """,
                (
                    EntryStatus.PENDING.value,
                    EntryStatus.IN_FLIGHT.value,
                    EntryStatus.CONFLICTED.value,
                ),
            )
            recovered = cursor.rowcount
            # A predecessor and its successor are both pending now: merge them
            groups = self._conn.execute(
                """
                SELECT entity_type, record_id FROM outbox WHERE status = ?
                GROUP BY entity_type, record_id HAVING COUNT(*) > 1
                """,
                (EntryStatus.PENDING.value,),
            ).fetchall()
            for group in groups:
                entries = self._fetch(
                    """
                    SELECT * FROM outbox
                    WHERE entity_type = ? AND record_id = ? AND status = ?
                    ORDER BY id
                    """,
                    (group["entity_type"], group["record_id"], EntryStatus.PENDING.value),
                )
                oldest, newest = entries[0], entries[-1]
                operation = oldest.operation
                payload: dict[str, Any] = {}
                changed_at: dict[str, float] = {}
                for entry in entries:
                    operation = combine_operations(operation, entry.operation)
                    payload.update(entry.payload)
                    changed_at.update(entry.changed_at)
                self._write_merge(newest, operation, payload, changed_at)
                self._conn.execute(
                    """
                    UPDATE outbox SET base_version = ?, enqueued_at = ?, attempt_count = ?
                    WHERE id = ?
                    """,
                    (oldest.base_version, oldest.enqueued_at, oldest.attempt_count, newest.id),
                )
                self._conn.executemany(
                    "DELETE FROM outbox WHERE id = ?",
                    [(entry.id,) for entry in entries[:-1]],
                )
        if recovered:
            logger.info("Recovered %d interrupted outbox entries", recovered)
        return recovered

    def expedite(self) -> int:
        """Make every pending entry due now (e.g. connectivity restored).

        Returns:
            Number of entries whose backoff was cut short.
        """
        now = self._clock()
        with self._lock, transaction(self._conn):
            cursor = self._conn.execute(
                "UPDATE outbox SET next_attempt_at = ? WHERE status = ? AND next_attempt_at > ?",
                (now, EntryStatus.PENDING.value, now),
            )
            return cursor.rowcount

    # === Manual intervention ===

    def retry_dead(self, entry_id: int) -> OutboxEntry:
        """Give a dead entry a fresh retry budget.

        If the record has since gained a pending entry, the dead entry is
        folded underneath it (newer edits win).

        Raises:
            KeyError: Entry not found.
            ValueError: Entry is not dead.
        """
        now = self._clock()
        with self._lock, transaction(self._conn):
            entry = self._require(entry_id)
            if entry.status is not EntryStatus.DEAD:
                raise ValueError(f"Entry {entry_id} is {entry.status.value}, not dead")
            active = self._fetch(
                f"""
                SELECT * FROM outbox
                WHERE entity_type = ? AND record_id = ? AND status IN ({_ACTIVE_SQL})
                ORDER BY id
                """,
                (entry.entity_type.value, entry.record_id),
            )
            pending = next((e for e in active if e.status is EntryStatus.PENDING), None)
            if pending is not None:
                self._fold_into(entry, pending)
                self._conn.execute("DELETE FROM outbox WHERE id = ?", (entry.id,))
                logger.info("Dead entry #%d folded into pending #%d", entry.id, pending.id)
                return self._require(pending.id)

            if active:
                raise ValueError(
                    f"{entry.entity_type.value}:{entry.record_id} has an operation "
                    "in flight, retry once it settles"
                )

            self._conn.execute(
                """
                UPDATE outbox SET status = ?, attempt_count = 0, next_attempt_at = ?,
                    last_error = NULL
                WHERE id = ?
                """,
                (EntryStatus.PENDING.value, now, entry_id),
            )
            logger.info("Dead entry #%d requeued", entry_id)
            return self._require(entry_id)

    def discard(self, entry_id: int) -> OutboxEntry:
        """Permanently drop a dead entry.

        Raises:
            KeyError: Entry not found.
            ValueError: Entry is not dead.
        """
        with self._lock, transaction(self._conn):
            entry = self._require(entry_id)
            if entry.status is not EntryStatus.DEAD:
                raise ValueError(f"Entry {entry_id} is {entry.status.value}, not dead")
            self._conn.execute("DELETE FROM outbox WHERE id = ?", (entry_id,))
        logger.info("Discarded dead entry #%d", entry_id)
        return entry
