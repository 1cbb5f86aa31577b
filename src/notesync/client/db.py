"""SQLite helpers shared by the local store, outbox and audit sink.

Every component opens its own connection to the same database file:
- WAL journal so readers never block the single writer
- autocommit, with explicit BEGIN IMMEDIATE for multi-statement transitions
- sqlite3 errors surface as DatabaseError
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from notesync.core.errors import DatabaseError

logger = logging.getLogger(__name__)


def connect(db_path: Path | str) -> sqlite3.Connection:
    """Open a connection configured for the sync engine.

    Args:
        db_path: Path to the SQLite database file.

    Returns:
        Connection in autocommit mode with Row factory.

    Raises:
        DatabaseError: If the database cannot be opened.
    """
    path = Path(db_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
    except (OSError, sqlite3.Error) as e:
        raise DatabaseError(f"Cannot open database {path}: {e}") from e
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside a single write transaction.

    Rolls back on any exception. sqlite3 errors are re-raised as
    DatabaseError; other exceptions propagate unchanged.
    """
    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.Error as e:
        raise DatabaseError(f"Cannot begin transaction: {e}") from e
    try:
        yield conn
    except sqlite3.Error as e:
        conn.execute("ROLLBACK")
        raise DatabaseError(str(e)) from e
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        try:
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise DatabaseError(f"Commit failed: {e}") from e


@contextmanager
def reading(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Wrap read-only statements so sqlite3 errors become DatabaseError."""
    try:
        yield conn
    except sqlite3.Error as e:
        raise DatabaseError(str(e)) from e
