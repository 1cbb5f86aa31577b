"""Sync operations for local-first records.

Architecture:
    local edit -> Outbox -> SyncOrchestrator -> transport
                                 |-> ConflictDetector -> ConflictResolver -> AuditSink
                                 |-> RetryController (backoff / dead letters)

Components:
- **Outbox**: Durable, record-deduplicated queue of local mutations
- **SyncOrchestrator**: One push/pull cycle at a time
- **RetryController**: Fibonacci backoff for sync, exponential for uploads
- **ConflictDetector / ConflictResolver**: Version-based detection and
  per-column merge policies
- **AuditSink**: Append-only record of every resolution
- **NoticeChannel**: Merge, dead-letter, validation and reminder notices
- **SyncScheduler**: Periodic, debounced, connectivity and retry triggers
- **SyncEngine** (engine.py): Composition root, imported from its module
"""

from notesync.client.sync.audit import AuditSink, ConflictAuditEntry
from notesync.client.sync.domain import (
    ConflictDetector,
    ConflictResolver,
    Detection,
    DetectionKind,
    Resolution,
    auto_merge,
    merge_records,
)
from notesync.client.sync.notices import (
    DeadLetterNotice,
    MergeNotice,
    Notice,
    NoticeChannel,
    NoticeKind,
    OfflineReminderNotice,
    Subscription,
    SyncCompletedNotice,
    ValidationNotice,
)
from notesync.client.sync.orchestrator import SyncOrchestrator
from notesync.client.sync.outbox import Outbox, combine_operations
from notesync.client.sync.reminder import OfflineReminder
from notesync.client.sync.retry import (
    EXPONENTIAL_POLICY,
    FIBONACCI_POLICY,
    RetryAction,
    RetryController,
    RetryDecision,
    RetryPolicy,
    retry_with_policy,
)
from notesync.client.sync.scheduler import SyncScheduler
from notesync.client.sync.types import (
    CycleReport,
    EntryStatus,
    OrchestratorState,
    OutboxEntry,
    PullPage,
    PushResult,
    PushStatus,
)

__all__ = [
    # Audit
    "AuditSink",
    "ConflictAuditEntry",
    # Domain
    "ConflictDetector",
    "ConflictResolver",
    "Detection",
    "DetectionKind",
    "Resolution",
    "auto_merge",
    "merge_records",
    # Notices
    "DeadLetterNotice",
    "MergeNotice",
    "Notice",
    "NoticeChannel",
    "NoticeKind",
    "OfflineReminderNotice",
    "Subscription",
    "SyncCompletedNotice",
    "ValidationNotice",
    # Orchestrator
    "SyncOrchestrator",
    # Outbox
    "Outbox",
    "combine_operations",
    # Reminder
    "OfflineReminder",
    # Retry
    "EXPONENTIAL_POLICY",
    "FIBONACCI_POLICY",
    "RetryAction",
    "RetryController",
    "RetryDecision",
    "RetryPolicy",
    "retry_with_policy",
    # Scheduler
    "SyncScheduler",
    # Types
    "CycleReport",
    "EntryStatus",
    "OrchestratorState",
    "OutboxEntry",
    "PullPage",
    "PushResult",
    "PushStatus",
]
