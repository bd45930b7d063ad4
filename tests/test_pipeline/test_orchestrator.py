"""
Tests for portfolio_scorer/pipeline/orchestrator.py.

What we test
------------
  - A full run executes all ten steps, checkpoints each, and completes.
  - Finalize writes status, counters and the metric set.
  - DATA_REFRESHED events are recorded under the "system" user.
  - A failing step is retried, then fails the run with checkpoints intact.
  - Resuming a failed run skips committed steps and finishes.
  - Resuming a finished run does nothing.
  - Production without providers fails before any user is processed.
  - Users with failures make the run "partial".
  - plan() reports without writing.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from portfolio_scorer.config import AppConfig
from portfolio_scorer.db.repositories.job_repo import JobRunRepository
from portfolio_scorer.events.store import EventStore
from portfolio_scorer.models.events import EventType
from portfolio_scorer.models.job import JOB_STEPS
from portfolio_scorer.models.scoring import ExchangeRates, PriceQuote
from portfolio_scorer.pipeline.orchestrator import SYSTEM_USER, OvernightJobOrchestrator
from portfolio_scorer.providers import Providers
from portfolio_scorer.utils.time_utils import utcnow

USER = "user-0001-aaaa"


class _Prices:
    def __init__(self) -> None:
        self.calls = 0

    def get_prices(self, symbols):
        self.calls += 1
        table = {"AAPL": "100", "BND": "50", "VOO": "400"}
        return [
            PriceQuote(symbol=s, price=table[s], currency="USD",
                       fetched_at=utcnow(), source="fake")
            for s in symbols if s in table
        ]


class _Rates:
    def __init__(self) -> None:
        self.calls = 0

    def get_rates(self, base, targets):
        self.calls += 1
        return ExchangeRates(base=base, rates={"EUR": "0.92"}, fetched_at=utcnow(), source="fake")


@pytest.fixture
def providers() -> Providers:
    return Providers(prices=_Prices(), rates=_Rates())


def _orchestrator(conn, config, providers, cache=None) -> OvernightJobOrchestrator:
    return OvernightJobOrchestrator(conn, config, providers=providers, cache=cache)


# ── Full run ──────────────────────────────────────────────────────────────────

class TestFullRun:
    def test_all_steps_run_and_complete(self, seeded_db, app_config, providers, fake_cache):
        result = _orchestrator(seeded_db, app_config, providers, fake_cache).run()
        assert result.status == "completed"
        assert result.steps_run == list(JOB_STEPS)
        assert result.steps_skipped == []
        assert result.users_total == 1
        assert result.users_processed == 1
        assert result.users_failed == 0
        assert set(JobRunRepository(seeded_db).get_checkpoints(result.job_run_id)) == set(JOB_STEPS)

    def test_market_data_fetched_once(self, seeded_db, app_config, providers):
        _orchestrator(seeded_db, app_config, providers).run()
        assert providers.rates.calls == 1
        assert providers.prices.calls == 1

    def test_finalize_metrics(self, seeded_db, app_config, providers, fake_cache):
        result = _orchestrator(seeded_db, app_config, providers, fake_cache).run()
        metrics = result.metrics
        assert metrics["assets_scored"] == 3
        assert metrics["recommendations_generated"] == 1
        assert metrics["users_cached"] == 1
        assert metrics["cache_failures"] == 0
        assert metrics["alerts_created"] == 1
        assert metrics["drift_alerts_created"] == 1
        for key in ("fetch_rates_ms", "process_users_ms", "total_duration_ms",
                    "recommendation_duration_ms", "cache_warm_ms", "alert_detection_ms"):
            assert key in metrics

    def test_cache_warmed_with_recommendation(self, seeded_db, app_config, providers, fake_cache):
        _orchestrator(seeded_db, app_config, providers, fake_cache).run()
        payload = fake_cache.get(USER)
        assert payload is not None
        assert payload["total_investable"] == "1000.00"
        assert payload["audit_trail"]["criteria_version_id"] == f"cv-{USER}"

    def test_no_cache_skips_warm_step(self, seeded_db, app_config, providers):
        result = _orchestrator(seeded_db, app_config, providers).run()
        assert result.status == "completed"
        assert result.metrics["users_cached"] == 0

    def test_data_refreshed_events_use_system_user(self, seeded_db, app_config, providers):
        result = _orchestrator(seeded_db, app_config, providers).run()
        events = EventStore(seeded_db).get_by_event_type(SYSTEM_USER, EventType.DATA_REFRESHED)
        assert {e.payload["data_type"] for e in events} == {"exchange_rates", "prices"}
        assert all(e.correlation_id == result.correlation_id for e in events)

    def test_failed_user_makes_run_partial(self, seeded_db, app_config, providers, seed_user):
        seed_user(seeded_db, user_id="user-0002-bbbb", portfolio_id="pf-2",
                  with_criteria=False, class_suffix="-2")
        result = _orchestrator(seeded_db, app_config, providers).run()
        assert result.status == "partial"
        assert result.users_failed == 1
        assert result.error_details[0]["user_id"] == "user-0002-bbbb"
        assert result.error_details[0]["stage"] == "load-criteria"

    def test_dev_without_rate_provider_uses_mock_rates(self, seeded_db, app_config):
        result = _orchestrator(seeded_db, app_config, Providers()).run()
        assert result.status == "completed"


# ── Failure and resume ────────────────────────────────────────────────────────

class TestFailureAndResume:
    def test_step_failure_fails_run_and_keeps_checkpoints(self, seeded_db, app_config, providers):
        orch = _orchestrator(seeded_db, app_config, providers)
        with patch.object(orch, "_run_score_portfolios", side_effect=RuntimeError("db gone")) as m:
            result = orch.run()
        assert m.call_count == app_config.scheduler.max_retries
        assert result.status == "failed"
        assert result.error == "score-portfolios: db gone"
        committed = JobRunRepository(seeded_db).get_checkpoints(result.job_run_id)
        assert set(committed) == set(JOB_STEPS[:4])

    def test_resume_skips_committed_steps(self, seeded_db, app_config, providers):
        orch = _orchestrator(seeded_db, app_config, providers)
        with patch.object(orch, "_run_score_portfolios", side_effect=RuntimeError("db gone")):
            failed = orch.run()

        resumed = _orchestrator(seeded_db, app_config, providers).run(
            resume_job_run_id=failed.job_run_id
        )
        assert resumed.status == "completed"
        assert resumed.correlation_id == failed.correlation_id
        assert resumed.steps_skipped == list(JOB_STEPS[:4])
        assert resumed.steps_run == list(JOB_STEPS[4:])
        assert providers.rates.calls == 1

    def test_transient_failure_is_retried(self, seeded_db, app_config, providers):
        orch = _orchestrator(seeded_db, app_config, providers)
        outcomes = [RuntimeError("blip"), {"user_ids": [USER], "count": 1}]
        with patch.object(orch, "_run_get_active_users", side_effect=outcomes):
            result = orch.run()
        assert result.status == "completed"

    def test_resume_finished_run_is_noop(self, seeded_db, app_config, providers):
        done = _orchestrator(seeded_db, app_config, providers).run()
        again = _orchestrator(seeded_db, app_config, providers).run(resume_job_run_id=done.job_run_id)
        assert again.steps_run == []
        assert again.steps_skipped == list(JOB_STEPS)
        assert again.status == "completed"

    def test_resume_unknown_run_raises(self, seeded_db, app_config, providers):
        with pytest.raises(ValueError):
            _orchestrator(seeded_db, app_config, providers).run(resume_job_run_id=999)

    def test_production_without_providers_fails_fast(self, seeded_db):
        config = AppConfig.model_validate({
            "logging": {"log_file": ""},
            "providers": {"environment": "production"},
        })
        result = _orchestrator(seeded_db, config, Providers()).run()
        assert result.status == "failed"
        assert "Exchange rate provider not configured" in result.error
        assert result.users_processed == 0
        assert set(JobRunRepository(seeded_db).get_checkpoints(result.job_run_id)) == set()


# ── plan ──────────────────────────────────────────────────────────────────────

class TestPlan:
    def test_plan_does_not_write(self, seeded_db, app_config, providers):
        plan = _orchestrator(seeded_db, app_config, providers).plan()
        assert plan["steps"] == list(JOB_STEPS)
        assert plan["active_users"] == 1
        assert plan["currencies"] == ["USD"]
        assert plan["provider_warnings"] == []
        assert JobRunRepository(seeded_db).get_recent_runs() == []
