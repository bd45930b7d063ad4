"""
Tests for portfolio_scorer/scheduler.py.

What we test
------------
  - parse_daily_cron() accepts "M H * * *" only, with values in range.
  - _next_cron_run() picks today's slot if still ahead, otherwise tomorrow's.
  - run_job() resumes a failed run up to max_retries times, reusing the id.
  - run_job() stops retrying once a run is not "failed".
"""

from __future__ import annotations

from datetime import datetime
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from portfolio_scorer.config import AppConfig
from portfolio_scorer.pipeline.orchestrator import OvernightJobOrchestrator
from portfolio_scorer.scheduler import SchedulerDaemon, _next_cron_run, parse_daily_cron


def _config(tmp_path, max_retries: int = 2) -> AppConfig:
    return AppConfig.model_validate({
        "database": {"db_path": str(tmp_path / "scorer.db")},
        "logging": {"log_file": ""},
        "scheduler": {"max_retries": max_retries},
    })


def _result(status: str, job_run_id: int = 7) -> SimpleNamespace:
    return SimpleNamespace(job_run_id=job_run_id, status=status, error="boom" if status == "failed" else None)


# ── Cron helpers ──────────────────────────────────────────────────────────────

class TestCron:
    def test_parse_default(self):
        assert parse_daily_cron("0 4 * * *") == (4, 0)

    @pytest.mark.parametrize("cron", ["0 4 * * 1", "*/5 * * * *", "60 4 * * *", "0 24 * * *", "0 4 *"])
    def test_unsupported(self, cron):
        with pytest.raises(ValueError):
            parse_daily_cron(cron)

    def test_next_run_later_today(self):
        now = datetime(2026, 10, 19, 3, 59, 30)
        assert _next_cron_run("0 4 * * *", now) == datetime(2026, 10, 19, 4, 0)

    def test_next_run_tomorrow(self):
        now = datetime(2026, 10, 19, 4, 0)
        assert _next_cron_run("0 4 * * *", now) == datetime(2026, 10, 20, 4, 0)

    def test_daemon_rejects_bad_cron(self):
        config = AppConfig.model_validate({"scheduler": {"cron": "0 4 1 * *"}})
        with pytest.raises(ValueError):
            SchedulerDaemon(config)


# ── run_job ───────────────────────────────────────────────────────────────────

class TestRunJob:
    def test_failed_run_resumed_until_retries_exhausted(self, tmp_path):
        daemon = SchedulerDaemon(_config(tmp_path, max_retries=2))
        with patch.object(OvernightJobOrchestrator, "run", return_value=_result("failed")) as m:
            assert daemon.run_job() == "failed"
        assert m.call_count == 3
        assert [c.kwargs["resume_job_run_id"] for c in m.call_args_list] == [None, 7, 7]

    def test_stops_after_success(self, tmp_path):
        daemon = SchedulerDaemon(_config(tmp_path))
        with patch.object(
            OvernightJobOrchestrator, "run",
            side_effect=[_result("failed"), _result("partial")],
        ) as m:
            assert daemon.run_job() == "partial"
        assert m.call_count == 2

    def test_unexpected_error_returns_none(self, tmp_path):
        daemon = SchedulerDaemon(_config(tmp_path))
        with patch.object(OvernightJobOrchestrator, "run", side_effect=RuntimeError("disk")):
            assert daemon.run_job() is None
