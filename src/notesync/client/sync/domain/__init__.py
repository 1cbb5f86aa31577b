"""Domain modules for sync business rules.

This package centralizes the conflict logic of the sync engine:
- conflicts: Conflict detection from versions and column sets
- resolver: Per-column merge policies and delete resolution

Architecture:
    domain/ contains pure business logic without I/O. Persistence (outbox,
    local store, audit table) and transport stay outside; the resolver
    only sees an audit sink through the AuditAppender protocol.
"""

from notesync.client.sync.domain.conflicts import (
    ConflictDetector,
    Detection,
    DetectionKind,
    server_changed_columns,
)
from notesync.client.sync.domain.resolver import (
    AUTO_MERGE_STRATEGY,
    MERGE_STRATEGY,
    AuditAppender,
    ConflictResolver,
    Resolution,
    auto_merge,
    changes_against,
    merge_column,
    merge_disjoint,
    merge_records,
)

__all__ = [
    # conflicts
    "ConflictDetector",
    "Detection",
    "DetectionKind",
    "server_changed_columns",
    # resolver
    "AUTO_MERGE_STRATEGY",
    "MERGE_STRATEGY",
    "AuditAppender",
    "ConflictResolver",
    "Resolution",
    "auto_merge",
    "changes_against",
    "merge_column",
    "merge_disjoint",
    "merge_records",
]
