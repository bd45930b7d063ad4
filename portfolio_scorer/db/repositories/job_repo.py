"""
Repository for ``job_runs`` and ``job_checkpoints``.

A checkpoint row is written exactly once per (job run, step). Its presence
is what makes a step "committed": a resumed run loads the stored result
instead of re-executing the step.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Optional

from portfolio_scorer.db.repositories.base import BaseRepository, _dumps, _loads
from portfolio_scorer.models.job import JobCheckpoint, JobRun
from portfolio_scorer.utils.time_utils import parse_iso, to_iso, utcnow

logger = logging.getLogger(__name__)


class JobRunRepository(BaseRepository):
    """Create, update and read job runs and their checkpoints."""

    def insert_run(self, run: JobRun) -> int:
        self.execute(
            """
            INSERT INTO job_runs (
                job_type, correlation_id, status, users_processed, users_failed,
                metrics, error_details, error_message, started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                run.job_type,
                run.correlation_id,
                run.status,
                run.users_processed,
                run.users_failed,
                _dumps(run.metrics),
                _dumps(run.error_details),
                run.error_message,
                to_iso(run.started_at),
                to_iso(run.completed_at),
            ),
        )
        return self.last_insert_rowid()

    def update_run(self, run: JobRun) -> None:
        if run.id is None:
            raise ValueError("Cannot update a JobRun without an id.")
        self.execute(
            """
            UPDATE job_runs
            SET status = ?, users_processed = ?, users_failed = ?, metrics = ?,
                error_details = ?, error_message = ?, completed_at = ?
            WHERE id = ?;
            """,
            (
                run.status,
                run.users_processed,
                run.users_failed,
                _dumps(run.metrics),
                _dumps(run.error_details),
                run.error_message,
                to_iso(run.completed_at),
                run.id,
            ),
        )

    def get_run(self, run_id: int) -> Optional[JobRun]:
        row = self.fetchone("SELECT * FROM job_runs WHERE id = ?;", (run_id,))
        return _row_to_run(row) if row else None

    def get_recent_runs(self, limit: int = 10) -> list[JobRun]:
        rows = self.fetchall(
            "SELECT * FROM job_runs ORDER BY started_at DESC, id DESC LIMIT ?;", (limit,)
        )
        return [_row_to_run(r) for r in rows]

    # ── Checkpoints ───────────────────────────────────────────────────────────

    def commit_checkpoint(self, job_run_id: int, step_name: str, result: Any) -> JobCheckpoint:
        """Persist a step result. Fails if the step was already committed."""
        checkpoint = JobCheckpoint(
            job_run_id=job_run_id,
            step_name=step_name,
            result=result,
            committed_at=utcnow(),
        )
        self.execute(
            """
            INSERT INTO job_checkpoints (job_run_id, step_name, result, committed_at)
            VALUES (?, ?, ?, ?);
            """,
            (job_run_id, step_name, _dumps(result), to_iso(checkpoint.committed_at)),
        )
        return checkpoint

    def get_checkpoints(self, job_run_id: int) -> dict[str, JobCheckpoint]:
        """Committed checkpoints for a run, keyed by step name."""
        rows = self.fetchall(
            """
            SELECT * FROM job_checkpoints WHERE job_run_id = ?
            ORDER BY committed_at, step_name;
            """,
            (job_run_id,),
        )
        return {
            r["step_name"]: JobCheckpoint(
                job_run_id=r["job_run_id"],
                step_name=r["step_name"],
                result=_loads(r["result"]),
                committed_at=parse_iso(r["committed_at"]),
            )
            for r in rows
        }


# ── Row mapper ────────────────────────────────────────────────────────────────

def _row_to_run(row: sqlite3.Row) -> JobRun:
    return JobRun(
        id=row["id"],
        job_type=row["job_type"],
        correlation_id=row["correlation_id"],
        status=row["status"],
        users_processed=row["users_processed"],
        users_failed=row["users_failed"],
        metrics=_loads(row["metrics"], {}),
        error_details=_loads(row["error_details"], []),
        error_message=row["error_message"],
        started_at=parse_iso(row["started_at"]),
        completed_at=parse_iso(row["completed_at"]),
    )
