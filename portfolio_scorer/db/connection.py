"""
SQLite connection management.

``get_connection()`` yields a configured connection that:
  - Enables foreign key enforcement (OFF by default in SQLite).
  - Enables WAL journal mode so readers are not blocked during the job.
  - Sets a busy timeout so lock contention fails in bounded time.
  - Uses the ``sqlite3.Row`` factory so rows behave like dicts.
  - Commits on clean exit, rolls back on exception.

``atomic()`` wraps a multi-row write in a SAVEPOINT so it commits or
rolls back as one unit inside an outer connection scope (investment insert
plus holding quantity update, per-user score writes).

Usage::

    from portfolio_scorer.db.connection import atomic, get_connection

    with get_connection("data/db/portfolio_scorer.db") as conn:
        with atomic(conn):
            conn.execute("INSERT INTO ...")
            conn.execute("UPDATE ...")
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from itertools import count
from pathlib import Path
from typing import Generator

logger = logging.getLogger(__name__)

_savepoint_ids = count(1)


@contextmanager
def get_connection(
    db_path: str,
    wal_mode: bool = True,
    busy_timeout_ms: int = 5000,
) -> Generator[sqlite3.Connection, None, None]:
    """Context manager yielding a configured SQLite connection.

    The database file (and any parent directories) are created if missing.

    Args:
        db_path: Path to the SQLite database file, or ``":memory:"``.
        wal_mode: If ``True``, enable WAL journal mode.
        busy_timeout_ms: Milliseconds to wait on a locked database before
            raising ``OperationalError``.

    Yields:
        An open, configured ``sqlite3.Connection``.

    Raises:
        sqlite3.OperationalError: If the database cannot be opened or is locked.
    """
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path, timeout=busy_timeout_ms / 1000)
    conn.row_factory = sqlite3.Row

    try:
        # Pragmas must be set before any DML/DDL
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms};")

        if wal_mode and db_path != ":memory:":
            conn.execute("PRAGMA journal_mode = WAL;")

        yield conn
        conn.commit()

    except Exception:
        conn.rollback()
        raise

    finally:
        conn.close()


@contextmanager
def atomic(conn: sqlite3.Connection) -> Generator[sqlite3.Connection, None, None]:
    """Run the enclosed statements as one all-or-nothing unit.

    Nested use is safe: each level gets its own SAVEPOINT. On exception
    only the work since this savepoint is undone, and the exception
    propagates.
    """
    name = f"sp_{next(_savepoint_ids)}"
    conn.execute(f"SAVEPOINT {name};")
    try:
        yield conn
    except Exception:
        conn.execute(f"ROLLBACK TO SAVEPOINT {name};")
        conn.execute(f"RELEASE SAVEPOINT {name};")
        logger.debug("Rolled back savepoint %s", name)
        raise
    else:
        conn.execute(f"RELEASE SAVEPOINT {name};")
