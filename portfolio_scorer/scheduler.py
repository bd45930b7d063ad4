"""Scheduler daemon for the overnight scoring job.

No external scheduler library is required: stdlib ``time`` and ``signal``
only. The job runs in-process so a failed run can be resumed from its
last committed checkpoint.

Typical usage via the CLI::

    portfolio-scorer start-scheduler

Or import directly::

    from portfolio_scorer.scheduler import SchedulerDaemon
    daemon = SchedulerDaemon(config)
    daemon.start()  # blocks until Ctrl-C

Only daily cron expressions of the form ``"M H * * *"`` are supported
(default ``"0 4 * * *"``, local time; override with ``OVERNIGHT_JOB_CRON``).
"""

from __future__ import annotations

import logging
import platform
import signal
import time
from datetime import datetime, timedelta
from typing import Optional

from portfolio_scorer.config import AppConfig

log = logging.getLogger(__name__)

TICK_SECONDS = 30


# ── Helpers ───────────────────────────────────────────────────────────────────


def parse_daily_cron(cron: str) -> tuple[int, int]:
    """Return ``(hour, minute)`` for a ``"M H * * *"`` expression.

    Raises:
        ValueError: Any other cron form.
    """
    fields = cron.split()
    if len(fields) != 5 or fields[2:] != ["*", "*", "*"]:
        raise ValueError(f"Only daily cron expressions 'M H * * *' are supported, got '{cron}'.")
    try:
        minute, hour = int(fields[0]), int(fields[1])
    except ValueError as exc:
        raise ValueError(f"Cron minute and hour must be integers, got '{cron}'.") from exc
    if not (0 <= minute <= 59 and 0 <= hour <= 23):
        raise ValueError(f"Cron minute/hour out of range in '{cron}'.")
    return hour, minute


def _next_cron_run(cron: str, now: Optional[datetime] = None) -> datetime:
    """Return the next local datetime matching the daily *cron* expression."""
    hour, minute = parse_daily_cron(cron)
    now = now or datetime.now()
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


# ── Daemon ────────────────────────────────────────────────────────────────────


class SchedulerDaemon:
    """Runs the overnight job once per day at the configured cron time.

    Parameters
    ----------
    config:
        Application config; ``scheduler.cron`` and ``scheduler.max_retries``
        drive the schedule and retry policy.
    run_immediately:
        When *True*, run the job once on start before waiting for the
        first scheduled slot.
    """

    def __init__(self, config: AppConfig, run_immediately: bool = False) -> None:
        self.config = config
        self.cron = config.scheduler.cron
        self.run_immediately = run_immediately
        parse_daily_cron(self.cron)
        self._running = False

    # ── Job execution ─────────────────────────────────────────────────────────

    def run_job(self) -> Optional[str]:
        """Run the job, resuming it after a failure up to ``max_retries`` times.

        Returns the final JobRun status, or ``None`` if the job could not
        be started at all.
        """
        from portfolio_scorer.cache.client import RecommendationCache
        from portfolio_scorer.db.connection import get_connection
        from portfolio_scorer.pipeline.orchestrator import OvernightJobOrchestrator

        log.info(
            "=== Overnight job starting at %s ===",
            datetime.now().isoformat(timespec="seconds"),
        )
        cache = RecommendationCache(self.config.cache) if self.config.cache.redis_url else None
        retries = self.config.scheduler.max_retries
        job_run_id: Optional[int] = None
        status: Optional[str] = None

        try:
            with get_connection(
                self.config.database.db_path,
                wal_mode=self.config.database.wal_mode,
                busy_timeout_ms=self.config.database.busy_timeout_ms,
            ) as conn:
                orchestrator = OvernightJobOrchestrator(conn, self.config, cache=cache)
                for attempt in range(retries + 1):
                    result = orchestrator.run(resume_job_run_id=job_run_id)
                    job_run_id, status = result.job_run_id, result.status
                    if status != "failed":
                        break
                    log.error(
                        "Job run %s failed (attempt %d/%d): %s",
                        job_run_id, attempt + 1, retries + 1, result.error,
                    )
        except Exception as exc:
            log.error("Overnight job could not run: %s", exc, exc_info=True)
            return None
        finally:
            if cache is not None:
                cache.close()

        log.info("Overnight job run %s finished with status %s", job_run_id, status)
        return status

    # ── Main loop ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the daemon. Blocks until Ctrl-C (or SIGTERM on Linux/macOS)."""
        next_run = datetime.now() if self.run_immediately else _next_cron_run(self.cron)
        log.info("Scheduler started.  cron=%s  db=%s", self.cron, self.config.database.db_path)
        log.info("Next run: %s", next_run.isoformat(timespec="seconds"))

        self._running = True

        def _shutdown(signum, frame):  # noqa: ANN001
            log.info("Signal %d received; stopping scheduler.", signum)
            self._running = False

        signal.signal(signal.SIGINT, _shutdown)
        if platform.system() != "Windows":
            signal.signal(signal.SIGTERM, _shutdown)

        while self._running:
            if datetime.now() >= next_run:
                self.run_job()
                next_run = _next_cron_run(self.cron)
                log.info("Next run scheduled: %s", next_run.isoformat(timespec="seconds"))
            time.sleep(TICK_SECONDS)

        log.info("Scheduler stopped.")
