"""Sync engine: composition root of the client.

This module provides:
- SyncEngine: Wires store, outbox, audit, resolver, orchestrator and
  scheduler together and exposes the operations the app calls

Every local edit goes through the engine: it updates the local copy,
records the mutation in the outbox and nudges the debounced trigger.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from notesync.client.api import HTTPTransport, SyncTransport
from notesync.client.state import LocalRecordStore
from notesync.client.sync.audit import AuditSink, ConflictAuditEntry
from notesync.client.sync.domain import ConflictDetector, ConflictResolver
from notesync.client.sync.notices import (
    DeadLetterNotice,
    NoticeChannel,
    NoticeKind,
    Subscription,
)
from notesync.client.sync.orchestrator import SyncOrchestrator
from notesync.client.sync.outbox import Outbox
from notesync.client.sync.reminder import OfflineReminder
from notesync.client.sync.retry import (
    EXPONENTIAL_POLICY,
    FIBONACCI_POLICY,
    RetryController,
    retry_with_policy,
)
from notesync.client.sync.scheduler import SyncScheduler
from notesync.client.sync.types import CycleReport, OutboxEntry
from notesync.core.config import SyncConfig
from notesync.core.errors import DeadLetterError
from notesync.core.schema import get_schema
from notesync.core.types import Clock, DomainRecord, EntityType, Operation, SyncState

logger = logging.getLogger(__name__)


class SyncEngine:
    """Local-first sync for captures, thoughts, ideas and todos.

    Usage:
        engine = SyncEngine(SyncConfig(data_dir=Path("~/.notesync")))
        engine.start()
        engine.edit("todo", todo_id, {"title": "Buy milk"})
        ...
        engine.stop()
    """

    def __init__(
        self,
        config: SyncConfig,
        transport: SyncTransport | None = None,
        clock: Clock = time.time,
        scheduler: Any = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Sync configuration.
            transport: Server transport (defaults to HTTP from config.server).
            clock: Time source in epoch seconds.
            scheduler: APScheduler instance for the background triggers.

        Raises:
            ValueError: If no transport is given and no server is configured.
        """
        if transport is None:
            if config.server is None:
                raise ValueError("No server configured")
            transport = HTTPTransport(config.server)

        self._config = config
        self._clock = clock
        self._transport = transport

        self.store = LocalRecordStore(config.db_path, clock=clock)
        self.outbox = Outbox(config.db_path, clock=clock)
        self.audit = AuditSink(config.db_path)
        self.notices = NoticeChannel()
        self.reminder = OfflineReminder(
            self.store,
            clock=clock,
            threshold=config.offline_threshold,
            snooze=config.reminder_snooze,
        )
        self.resolver = ConflictResolver(
            self.audit,
            delete_policy=config.delete_policy,
            clock=clock,
        )
        self.orchestrator = SyncOrchestrator(
            outbox=self.outbox,
            store=self.store,
            transport=transport,
            resolver=self.resolver,
            detector=ConflictDetector(),
            controller=RetryController(FIBONACCI_POLICY),
            notices=self.notices,
            reminder=self.reminder,
            clock=clock,
            batch_size=config.batch_size,
            pull_page_size=config.pull_page_size,
        )
        self.scheduler = SyncScheduler(
            run_cycle=self.sync_now,
            next_due_at=self.outbox.next_due_at,
            on_connectivity=self.outbox.expedite,
            periodic_interval=config.periodic_interval,
            debounce_delay=config.debounce_delay,
            scheduler=scheduler,
        )

    # === Lifecycle ===

    def start(self) -> None:
        """Recover interrupted work and start the background triggers."""
        self.outbox.recover_in_flight()
        self.scheduler.start()
        notice = self.reminder.check()
        if notice is not None:
            self.notices.publish(notice)

    def stop(self) -> None:
        """Stop the background triggers."""
        self.scheduler.stop()

    def close(self) -> None:
        """Stop and release every resource."""
        self.stop()
        close = getattr(self._transport, "close", None)
        if close is not None:
            close()
        self.audit.close()
        self.outbox.close()
        self.store.close()

    def __enter__(self) -> SyncEngine:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # === Local edits ===

    def _changed(self) -> None:
        if self.scheduler.is_running:
            self.scheduler.notify_local_change()

    def create(
        self,
        entity_type: EntityType | str,
        data: Mapping[str, Any],
        record_id: str | None = None,
    ) -> DomainRecord:
        """Create a record locally and queue it for sync.

        Args:
            entity_type: capture, thought, idea or todo.
            data: Initial columns.
            record_id: Identifier (a UUID is generated if omitted).

        Returns:
            The local record.
        """
        return self.edit(entity_type, record_id or str(uuid.uuid4()), data)

    def edit(
        self,
        entity_type: EntityType | str,
        record_id: str,
        changes: Mapping[str, Any],
    ) -> DomainRecord:
        """Change columns of a record locally and queue the change.

        Raises:
            ValidationError: Unknown entity type or column.
        """
        schema = get_schema(entity_type)
        schema.validate_columns(changes)
        now = self._clock()
        record, baseline = self.store.apply_local_edit(
            schema.entity_type, record_id, changes, edited_at=now
        )
        operation = Operation.CREATE if baseline is None else Operation.UPDATE
        self.outbox.enqueue(
            schema.entity_type, record_id, operation, changes, baseline, edited_at=now
        )
        self._changed()
        return record

    def delete(self, entity_type: EntityType | str, record_id: str) -> None:
        """Delete a record locally and queue the delete."""
        schema = get_schema(entity_type)
        now = self._clock()
        baseline = self.store.mark_deleted(schema.entity_type, record_id, deleted_at=now)
        self.outbox.enqueue(
            schema.entity_type, record_id, Operation.DELETE, None, baseline, edited_at=now
        )
        self._changed()

    def get(self, entity_type: EntityType | str, record_id: str) -> DomainRecord | None:
        """Local copy of a record."""
        return self.store.get(entity_type, record_id)

    # === Sync ===

    def sync_now(self, reason: str = "manual") -> CycleReport | None:
        """Run a sync cycle now.

        Returns:
            The report, or None if a cycle was already running.
        """
        return self.orchestrator.run_cycle(reason)

    def connectivity_restored(self) -> None:
        """Cut pending backoffs short and sync."""
        if self.scheduler.is_running:
            self.scheduler.notify_connectivity_restored()
        else:
            self.outbox.expedite()
            self.sync_now("connectivity")

    @property
    def state(self) -> SyncState:
        return self.orchestrator.sync_state

    def upload_binary(
        self,
        entity_type: EntityType | str,
        record_id: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Upload an attachment, retrying with exponential backoff.

        Raises:
            DeadLetterError: Retries exhausted (a DeadLetterNotice is sent).
            ValidationError: Upload refused.
        """
        upload = self._transport.upload_binary  # type: ignore[attr-defined]
        controller = RetryController(EXPONENTIAL_POLICY)
        try:
            retry_with_policy(
                lambda: upload(entity_type, record_id, data, content_type),
                controller,
                sleep=sleep,
            )
        except DeadLetterError as e:
            self.notices.publish(
                DeadLetterNotice(
                    entity_type=EntityType(entity_type).value,
                    record_id=record_id,
                    reason=str(e),
                )
            )
            raise

    # === Notices and manual intervention ===

    def subscribe(self, kinds: Iterable[NoticeKind] | None = None) -> Subscription:
        """Subscribe to user-facing notices."""
        return self.notices.subscribe(kinds)

    def dismiss_reminder(self) -> float:
        """Snooze the long-offline reminder."""
        return self.reminder.dismiss()

    def dead_letters(self) -> list[OutboxEntry]:
        return self.outbox.dead_letters()

    def retry_dead(self, entry_id: int) -> OutboxEntry:
        """Requeue a dead-lettered entry with a fresh retry budget."""
        entry = self.outbox.retry_dead(entry_id)
        self._changed()
        return entry

    def discard_dead(self, entry_id: int) -> OutboxEntry:
        """Drop a dead-lettered entry for good."""
        return self.outbox.discard(entry_id)

    def conflicts(self, unnotified_only: bool = False) -> list[ConflictAuditEntry]:
        """Recorded conflict resolutions."""
        if unnotified_only:
            return self.audit.unnotified()
        return self.audit.entries()

    def acknowledge_merges(self, audit_ids: Iterable[int]) -> None:
        """Mark merge notices as seen."""
        self.audit.mark_notified(audit_ids)

    def status(self) -> dict[str, Any]:
        """Snapshot of the sync status for display."""
        return {
            "state": self.state.value,
            "outbox": self.outbox.counts(),
            "last_success_at": self.reminder.last_success_at,
            "last_pulled_at": self.store.last_pulled_at,
            "next_retry_at": self.outbox.next_due_at(),
            "reminder_due": self.reminder.should_remind(),
            "unnotified_merges": len(self.audit.unnotified()),
        }
