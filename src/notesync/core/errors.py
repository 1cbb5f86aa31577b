"""Error taxonomy for the sync engine.

This module provides:
- SyncError: Base exception
- NetworkError: Transient failure, retried per policy
- ValidationError, RejectedError: Permanent, surfaced to the user
- AuthenticationError: Credentials refused by the server
- DatabaseError: Local persistence failure, blocks one entry
- ConflictError: Informational, always resolved automatically
- DeadLetterError: Retry budget exhausted, needs manual action
"""

from __future__ import annotations


class SyncError(Exception):
    """Base exception for sync errors."""


class NetworkError(SyncError):
    """Transient transport failure (timeout, connection, 5xx, 408, 429).

    Attributes:
        status_code: HTTP status when the failure came from a response.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ValidationError(SyncError):
    """Client payload is malformed. Never retried."""


class RejectedError(ValidationError):
    """The server refused a single operation."""


class AuthenticationError(SyncError):
    """The server refused our credentials."""


class DatabaseError(SyncError):
    """Local persistence failure."""


class ConflictError(SyncError):
    """Server and client diverged from the shared baseline.

    Not a failure: conflicts are merged automatically and only surface
    as an informational notice.
    """

    def __init__(self, entity_type: str, record_id: str, server_version: int) -> None:
        self.entity_type = entity_type
        self.record_id = record_id
        self.server_version = server_version
        super().__init__(
            f"Conflict on {entity_type}:{record_id} (server version {server_version})"
        )


class DeadLetterError(SyncError):
    """An operation exhausted its retry budget."""

    def __init__(self, message: str, attempts: int, last_error: Exception | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error
