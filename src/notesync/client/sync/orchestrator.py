"""Sync orchestrator: runs one push/pull cycle at a time.

This module provides:
- SyncOrchestrator: Drains the outbox, pushes batches, dispatches results,
  then pulls server changes

A cycle walks this state machine once per batch:

    IDLE -> DRAINING -> PUSHING -> APPLYING        (applied)
                                -> RESOLVING       (conflict)
                                -> RETRYING        (transient failure)
                                -> DEAD_LETTERING  (rejected / exhausted)
         -> DRAINING ... -> IDLE

Error handling:
    | Error               | Effect                                          |
    |---------------------|-------------------------------------------------|
    | NetworkError        | retry later per policy, dead-letter when spent  |
    | ValidationError     | dead-letter now, ValidationNotice               |
    | AuthenticationError | release the batch, abort the cycle              |
    | DatabaseError       | log, skip that entry for the rest of the cycle  |

Conflicts never surface as errors: they are detected from versions and
column sets, resolved, and the merged result is pushed back as a
follow-up update based on the server version.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Sequence
from dataclasses import replace
from typing import TYPE_CHECKING

from notesync.client.sync.domain import (
    ConflictDetector,
    ConflictResolver,
    DetectionKind,
    Resolution,
    merge_disjoint,
)
from notesync.client.sync.notices import (
    DeadLetterNotice,
    MergeNotice,
    NoticeChannel,
    SyncCompletedNotice,
    ValidationNotice,
)
from notesync.client.sync.retry import FIBONACCI_POLICY, RetryAction, RetryController
from notesync.client.sync.types import (
    CycleReport,
    EntryStatus,
    OrchestratorState,
    OutboxEntry,
    PushResult,
    PushStatus,
)
from notesync.core.errors import (
    AuthenticationError,
    DatabaseError,
    NetworkError,
    SyncError,
    ValidationError,
)
from notesync.core.schema import get_schema
from notesync.core.types import Clock, DomainRecord, Operation, SyncState

if TYPE_CHECKING:
    from notesync.client.api import SyncTransport
    from notesync.client.state import LocalRecordStore
    from notesync.client.sync.outbox import Outbox
    from notesync.client.sync.reminder import OfflineReminder

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """Runs sync cycles against the server.

    Only one cycle runs at a time; a second caller returns immediately.

    Usage:
        orchestrator = SyncOrchestrator(outbox, store, transport, resolver)
        report = orchestrator.run_cycle("periodic")
    """

    def __init__(
        self,
        outbox: Outbox,
        store: LocalRecordStore,
        transport: SyncTransport,
        resolver: ConflictResolver,
        detector: ConflictDetector | None = None,
        controller: RetryController | None = None,
        notices: NoticeChannel | None = None,
        reminder: OfflineReminder | None = None,
        clock: Clock = time.time,
        batch_size: int = 100,
        pull_page_size: int = 100,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            outbox: Queue of local mutations.
            store: Local copy of the records.
            transport: Server connection.
            resolver: Conflict resolver (writes the audit log).
            detector: Conflict detector.
            controller: Retry controller for push failures.
            notices: Channel for user-facing notices.
            reminder: Long-offline reminder to feed.
            clock: Time source in epoch seconds.
            batch_size: Maximum entries per push.
            pull_page_size: Maximum records per pull page.
        """
        self._outbox = outbox
        self._store = store
        self._transport = transport
        self._resolver = resolver
        self._detector = detector or ConflictDetector()
        self._controller = controller or RetryController(FIBONACCI_POLICY)
        self._notices = notices or NoticeChannel()
        self._reminder = reminder
        self._clock = clock
        self._batch_size = batch_size
        self._pull_page_size = pull_page_size

        self._cycle_lock = threading.Lock()
        self._state = OrchestratorState.IDLE
        self._sync_state = SyncState.IDLE
        self._last_report: CycleReport | None = None
        self._merged_ids: list[int] = []

    @property
    def state(self) -> OrchestratorState:
        """Current state of the cycle state machine."""
        return self._state

    @property
    def sync_state(self) -> SyncState:
        """Overall sync state shown to the user."""
        return self._sync_state

    @property
    def last_report(self) -> CycleReport | None:
        """Report of the last completed cycle."""
        return self._last_report

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    def _set_state(self, state: OrchestratorState) -> None:
        if state is not self._state:
            logger.debug("Orchestrator %s -> %s", self._state.name, state.name)
            self._state = state

    # === Cycle ===

    def run_cycle(self, reason: str = "manual") -> CycleReport | None:
        """Push everything due, then pull server changes.

        Args:
            reason: What triggered the cycle (for logs and the report).

        Returns:
            The cycle report, or None if another cycle was running.
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Sync cycle already running, skipping (%s)", reason)
            return None
        try:
            self._sync_state = SyncState.SYNCING
            report = self._run(reason)
            self._last_report = report
            return report
        finally:
            self._set_state(OrchestratorState.IDLE)
            self._cycle_lock.release()

    def _run(self, reason: str) -> CycleReport:
        report = CycleReport(reason=reason)
        self._merged_ids = []
        offline = False
        logger.info("Sync cycle started (%s)", reason)

        try:
            # No entry can legitimately be in flight between cycles
            self._outbox.recover_in_flight()
            offline = self._push_all(report)
            if not offline:
                self._pull_all(report)
        except AuthenticationError as e:
            logger.error("Sync aborted, authentication refused: %s", e)
            report.errors.append(str(e))
            self._sync_state = SyncState.ERROR
            return report
        except NetworkError as e:
            logger.warning("Pull failed: %s", e)
            report.errors.append(str(e))
            offline = True
        except DatabaseError as e:
            logger.error("Sync cycle failed on local database: %s", e)
            report.errors.append(str(e))
            self._sync_state = SyncState.ERROR
            return report

        if offline:
            self._sync_state = SyncState.OFFLINE
            self._remind()
        else:
            self._sync_state = SyncState.IDLE
            if self._reminder is not None:
                self._reminder.record_success()

        if self._merged_ids:
            self._notices.publish(
                MergeNotice(count=len(self._merged_ids), audit_ids=tuple(self._merged_ids))
            )
        self._notices.publish(
            SyncCompletedNotice(
                reason=reason,
                pushed=report.applied + report.auto_merged + report.resolved,
                pulled=report.pulled,
                failed=report.retried + report.dead_lettered,
            )
        )
        logger.info(
            "Sync cycle finished (%s): %d applied, %d merged, %d resolved, "
            "%d retrying, %d dead-lettered, %d pulled",
            reason,
            report.applied,
            report.auto_merged,
            report.resolved,
            report.retried,
            report.dead_lettered,
            report.pulled,
        )
        return report

    def _remind(self) -> None:
        if self._reminder is None:
            return
        notice = self._reminder.check()
        if notice is not None:
            self._notices.publish(notice)

    # === Push ===

    def _push_all(self, report: CycleReport) -> bool:
        """Push batches until nothing is due.

        Returns:
            True if the server was unreachable.
        """
        while True:
            self._set_state(OrchestratorState.DRAINING)
            batch = self._outbox.drain(self._batch_size)
            if not batch:
                return False
            report.batches += 1

            self._set_state(OrchestratorState.PUSHING)
            try:
                results = self._transport.push(batch)
            except AuthenticationError:
                self._outbox.release([entry.id for entry in batch])
                raise
            except (NetworkError, ValidationError) as e:
                logger.warning("Push of %d entries failed: %s", len(batch), e)
                report.errors.append(str(e))
                for entry in batch:
                    self._fail(entry, e, report)
                if isinstance(e, NetworkError):
                    # Everything else due would fail the same way
                    return True
                continue

            for entry, result in zip(batch, results):
                try:
                    self._dispatch(entry, result, report)
                except DatabaseError as e:
                    logger.error("Could not record result for %r: %s", entry, e)
                    report.errors.append(str(e))

    def _dispatch(self, entry: OutboxEntry, result: PushResult, report: CycleReport) -> None:
        """Apply the server's verdict for one entry."""
        if result.status is PushStatus.APPLIED and result.new_version is None:
            self._fail(entry, NetworkError("Malformed reply: applied without a version"), report)

        elif result.status is PushStatus.APPLIED:
            self._set_state(OrchestratorState.APPLYING)
            self._outbox.mark_applied(entry.id, result.new_version)
            self._store.set_version(entry.entity_type, entry.record_id, result.new_version)
            report.applied += 1
            logger.debug("Applied %r at version %d", entry, result.new_version)

        elif result.status is PushStatus.REJECTED:
            reason = result.reason or "rejected by server"
            self._fail(entry, ValidationError(reason), report)

        else:
            self._set_state(OrchestratorState.RESOLVING)
            self._outbox.mark_conflict(entry.id, result.server_record)
            server_version = result.server_version
            if server_version is None:
                server_version = result.server_record.version if result.server_record else 0
            self._reconcile(entry, result.server_record, server_version, report)

    def _fail(self, entry: OutboxEntry, error: SyncError, report: CycleReport) -> None:
        """Retry or dead-letter an entry after a failed push."""
        decision = self._controller.decide(entry.attempt_count + 1, error)

        if decision.action is RetryAction.RETRY:
            self._set_state(OrchestratorState.RETRYING)
            delay = (decision.delay_ms or 0) / 1000
            retry_at = self._clock() + delay
            self._outbox.mark_failed(entry.id, str(error), retry_at)
            report.retried += 1
            logger.info(
                "Retrying %r in %.1fs (attempt %d)",
                entry,
                delay,
                decision.attempt,
            )
            return

        self._set_state(OrchestratorState.DEAD_LETTERING)
        exhausted = decision.action is RetryAction.DEAD_LETTER
        dead = self._outbox.mark_dead(entry.id, decision.reason, consume_attempt=exhausted)
        report.dead_lettered += 1
        if exhausted:
            self._notices.publish(
                DeadLetterNotice(
                    entry_id=dead.id,
                    entity_type=dead.entity_type.value,
                    record_id=dead.record_id,
                    reason=decision.reason,
                )
            )
        else:
            self._notices.publish(
                ValidationNotice(
                    entry_id=dead.id,
                    entity_type=dead.entity_type.value,
                    record_id=dead.record_id,
                    reason=str(error),
                )
            )

    # === Conflicts ===

    def _client_record(self, entry: OutboxEntry) -> DomainRecord:
        """The local side of a conflict: the entry's changes at its baseline."""
        local = self._store.get(entry.entity_type, entry.record_id)
        deleted_at = None
        if entry.operation is Operation.DELETE:
            deleted_at = local.deleted_at if local and local.deleted_at else self._clock()
        return DomainRecord(
            entity_type=entry.entity_type,
            record_id=entry.record_id,
            version=entry.base_version or 0,
            data=dict(entry.payload),
            updated_at=max(entry.changed_at.values(), default=entry.enqueued_at),
            column_updated_at=dict(entry.changed_at),
            deleted_at=deleted_at,
        )

    def _reconcile(
        self,
        entry: OutboxEntry,
        server: DomainRecord | None,
        server_version: int,
        report: CycleReport,
    ) -> None:
        """Detect and resolve divergence between an entry and the server."""
        detection = self._detector.detect(entry, server)

        if detection.kind is DetectionKind.NO_CONFLICT:
            if entry.status is EntryStatus.PENDING:
                # Pulled a record we already built on
                return
            # The server refused a push that is not behind it
            self._fail(
                entry,
                NetworkError(f"Inconsistent conflict reply at version {server_version}"),
                report,
            )
            return

        if detection.kind is DetectionKind.ALREADY_DELETED:
            self._outbox.mark_resolved(entry.id, server_version)
            if server is not None:
                self._store.apply_remote(server)
            self._store.set_version(entry.entity_type, entry.record_id, server_version)
            report.applied += 1
            logger.debug("%r: record already deleted on server", entry)
            return

        client = self._client_record(entry)
        if detection.kind is DetectionKind.DELETE_CONFLICT:
            # A restored record needs every column, not just the edited ones
            local = self._store.get(entry.entity_type, entry.record_id)
            if local is not None:
                client = replace(
                    client,
                    data={**local.data, **client.data},
                    column_updated_at={**local.column_updated_at, **client.column_updated_at},
                )
            resolution = self._resolver.resolve_delete(server, client, entry.operation)
            report.resolved += 1
        elif server is None:
            self._fail(
                entry, NetworkError("Malformed reply: conflict without a server record"), report
            )
            return
        elif not detection.needs_resolver:
            # Disjoint columns: merged here, no conflict entry
            resolution = merge_disjoint(server, client)
            report.auto_merged += 1
        else:
            resolution = self._resolver.resolve(server, client)
            report.resolved += 1
            logger.info(
                "Concurrent edit of %s on %s:%s merged",
                ", ".join(sorted(detection.overlapping_columns)),
                entry.entity_type.value,
                entry.record_id,
            )

        self._apply_resolution(entry, server, server_version, resolution)

    def _apply_resolution(
        self,
        entry: OutboxEntry,
        server: DomainRecord | None,
        server_version: int,
        resolution: Resolution,
    ) -> None:
        """Settle the entry, queue the follow-up and update the local copy.

        The local copy keeps the server's version as its baseline until
        the follow-up push is acknowledged.
        """
        self._outbox.mark_resolved(entry.id, server_version)

        if resolution.push_operation is not None:
            schema = get_schema(entry.entity_type)
            payload = {
                column: value
                for column, value in (resolution.push_payload or {}).items()
                if column in schema.columns
            }
            base_version = server_version if server is not None else None
            self._outbox.enqueue(
                entry.entity_type,
                entry.record_id,
                resolution.push_operation,
                payload,
                base_version,
                edited_at=resolution.record.updated_at,
            )

        # The bumped version is left to the follow-up push to assign
        record = resolution.record.with_version(server_version)
        pending = self._outbox.pending_for(entry.entity_type, entry.record_id)
        if pending is not None and pending.operation is Operation.DELETE:
            self._store.apply_remote(replace(record, deleted_at=record.deleted_at or self._clock()))
        elif pending is not None:
            self._store.apply_remote(
                replace(record, deleted_at=None),
                overlay=pending.payload,
                overlay_changed_at=pending.changed_at,
            )
        else:
            self._store.apply_remote(record)

        if resolution.audit_id is not None:
            self._merged_ids.append(resolution.audit_id)

    # === Pull ===

    def _pull_all(self, report: CycleReport) -> None:
        """Page through server changes from the stored cursor."""
        cursor = self._store.last_pulled_at
        while True:
            page = self._transport.pull(cursor, self._pull_page_size)
            self._apply_pulled(page.records, report)
            if page.cursor is not None:
                cursor = page.cursor
                self._store.last_pulled_at = cursor
            if not page.has_more or not page.records:
                return

    def _apply_pulled(self, records: Sequence[DomainRecord], report: CycleReport) -> None:
        for server in records:
            try:
                pending = self._outbox.pending_for(server.entity_type, server.record_id)
                if pending is not None:
                    self._reconcile(pending, server, server.version, report)
                    report.pulled += 1
                    continue
                local = self._store.get(server.entity_type, server.record_id)
                if local is None or server.version > local.version:
                    self._store.apply_remote(server)
                    report.pulled += 1
            except DatabaseError as e:
                logger.error(
                    "Could not apply pulled %s:%s: %s",
                    server.entity_type.value,
                    server.record_id,
                    e,
                )
                report.errors.append(str(e))
