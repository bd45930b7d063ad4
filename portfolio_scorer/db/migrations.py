"""
Sequential schema migrations.

``apply_schema()`` creates the baseline tables; everything after that is a
numbered ``Migration`` in ``MIGRATIONS``. Applied ids are recorded in
``schema_versions`` and each migration runs inside a SAVEPOINT together
with its ``schema_versions`` row, so a failed migration leaves neither its
DDL nor its marker behind and is retried on the next ``init-db``.

There are no down migrations. To add one, append a ``Migration`` with the
next id; never edit or reorder an applied entry.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from portfolio_scorer.db.connection import atomic

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    version_id:  str
    description: str
    statements:  tuple[str, ...] = ()


MIGRATIONS: tuple[Migration, ...] = (
    Migration("0001_baseline", "Baseline marker for the apply_schema() tables"),
    Migration(
        "0002_unique_active_alert",
        "At most one non-dismissed alert per (user, type, subject)",
        (
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_alerts_active_subject
                ON alerts(user_id, type, subject_key)
                WHERE is_dismissed = 0
            """,
        ),
    ),
    Migration(
        "0003_score_history_index",
        "Score history lookups by user, asset and time",
        (
            """
            CREATE INDEX IF NOT EXISTS idx_score_history_asset
                ON score_history(user_id, asset_id, calculated_at DESC)
            """,
        ),
    ),
)


def applied_versions(conn: sqlite3.Connection) -> set[str]:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_versions (
            version_id  TEXT NOT NULL PRIMARY KEY,
            description TEXT,
            applied_at  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
        );
        """
    )
    return {r["version_id"] for r in conn.execute("SELECT version_id FROM schema_versions;")}


def run_migrations(conn: sqlite3.Connection) -> int:
    """Apply pending migrations in order and commit.

    Returns:
        Number of migrations applied by this call (0 when up to date).

    Raises:
        sqlite3.Error: A migration failed; earlier ones stay applied.
    """
    done = applied_versions(conn)
    pending = [m for m in MIGRATIONS if m.version_id not in done]

    for migration in pending:
        logger.info("Applying migration %s: %s", migration.version_id, migration.description)
        try:
            with atomic(conn):
                for statement in migration.statements:
                    conn.execute(statement)
                conn.execute(
                    "INSERT INTO schema_versions (version_id, description) VALUES (?, ?);",
                    (migration.version_id, migration.description),
                )
        except sqlite3.Error as exc:
            logger.error("Migration %s FAILED: %s", migration.version_id, exc)
            raise
        conn.commit()

    if pending:
        logger.info("Applied %d migration(s).", len(pending))
    return len(pending)
