"""Core module - Configuration, errors, domain types and column schemas."""

from notesync.core.config import DeletePolicy, ServerConfig, SyncConfig
from notesync.core.errors import (
    AuthenticationError,
    ConflictError,
    DatabaseError,
    DeadLetterError,
    NetworkError,
    RejectedError,
    SyncError,
    ValidationError,
)
from notesync.core.schema import SCHEMAS, ColumnPolicy, EntitySchema, get_schema
from notesync.core.types import Clock, DomainRecord, EntityType, Operation, SyncState

__all__ = [
    # Config
    "DeletePolicy",
    "ServerConfig",
    "SyncConfig",
    # Errors
    "AuthenticationError",
    "ConflictError",
    "DatabaseError",
    "DeadLetterError",
    "NetworkError",
    "RejectedError",
    "SyncError",
    "ValidationError",
    # Schemas
    "SCHEMAS",
    "ColumnPolicy",
    "EntitySchema",
    "get_schema",
    # Types
    "Clock",
    "DomainRecord",
    "EntityType",
    "Operation",
    "SyncState",
]
