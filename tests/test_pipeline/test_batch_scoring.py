"""
Tests for portfolio_scorer/pipeline/batch_scoring.py.

What we test
------------
score_user():
  - Writes CALC_STARTED → INPUTS_CAPTURED → SCORES_COMPUTED → CALC_COMPLETED.
  - Stores latest scores and appends history.
  - No criteria / no assets → failed result tagged PRECONDITION, with a
    CALC_COMPLETED(failed) event and no scores.
  - An unexpected error is converted to a failed result with its stage.
  - Captured inputs contain the snapshot prices and only relevant rates.

process_users():
  - Failures are isolated per user; counts add up.
  - A batch-scope error fails every user in that batch only.
  - A failed batch is rolled back to its savepoint; earlier uncommitted
    work on the connection survives.
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

from portfolio_scorer.db.repositories.portfolio_repo import PortfolioRepository
from portfolio_scorer.db.repositories.score_repo import ScoreRepository
from portfolio_scorer.errors import FailureKind
from portfolio_scorer.events.store import EventStore
from portfolio_scorer.models.portfolio import User
from portfolio_scorer.models.events import EventType, InputsCapturedPayload
from portfolio_scorer.pipeline.batch_scoring import (
    BATCH_STAGE,
    NO_ASSETS,
    NO_CRITERIA,
    BatchScoringService,
)

USER = "user-0001-aaaa"


def _event_types(conn, cid: str) -> list[EventType]:
    return [e.event_type for e in EventStore(conn).get_by_correlation_id(cid)]


# ── score_user ────────────────────────────────────────────────────────────────

class TestScoreUser:
    def test_success_writes_fixed_event_sequence(self, seeded_db, app_config, snapshot):
        result = BatchScoringService(seeded_db, app_config).score_user(USER, snapshot)
        assert result.success is True
        assert result.scores_computed == 3
        assert _event_types(seeded_db, result.correlation_id) == [
            EventType.CALC_STARTED,
            EventType.INPUTS_CAPTURED,
            EventType.SCORES_COMPUTED,
            EventType.CALC_COMPLETED,
        ]

    def test_scores_stored_and_history_appended(self, seeded_db, app_config, snapshot):
        service = BatchScoringService(seeded_db, app_config)
        service.score_user(USER, snapshot)
        second = service.score_user(USER, snapshot)

        scores = ScoreRepository(seeded_db).get_latest_scores(USER)
        assert scores["pf-1-aapl"].score == "0.0000"
        assert scores["pf-1-voo"].score == "15.0000"
        assert scores["pf-1-bnd"].percentage == "100.0000"
        assert scores["pf-1-bnd"].correlation_id == second.correlation_id
        assert len(ScoreRepository(seeded_db).get_history(USER, "pf-1-bnd")) == 2

    def test_no_criteria_is_precondition_failure(self, in_memory_db, app_config, snapshot, seed_user):
        seed_user(in_memory_db, with_criteria=False)
        result = BatchScoringService(in_memory_db, app_config).score_user(USER, snapshot)
        assert result.success is False
        assert result.error == NO_CRITERIA
        assert result.stage == "load-criteria"
        assert result.failure_kind is FailureKind.PRECONDITION
        events = EventStore(in_memory_db).get_by_correlation_id(result.correlation_id)
        assert [e.event_type for e in events] == [EventType.CALC_STARTED, EventType.CALC_COMPLETED]
        assert events[-1].payload["status"] == "failed"
        assert events[-1].payload["error_message"] == NO_CRITERIA
        assert ScoreRepository(in_memory_db).get_latest_scores(USER) == {}

    def test_no_assets_is_precondition_failure(self, seeded_db, app_config, snapshot):
        seeded_db.execute("UPDATE portfolio_assets SET is_ignored = 1;")
        result = BatchScoringService(seeded_db, app_config).score_user(USER, snapshot)
        assert result.error == NO_ASSETS
        assert result.stage == "load-holdings"

    def test_unexpected_error_is_caught_with_stage(self, seeded_db, app_config, snapshot):
        service = BatchScoringService(seeded_db, app_config)
        with patch.object(service.scores, "store_scores", side_effect=RuntimeError("disk full")):
            result = service.score_user(USER, snapshot)
        assert result.success is False
        assert result.stage == "store-scores"
        assert result.error == "disk full"
        assert result.failure_kind is None
        assert EventType.SCORES_COMPUTED not in _event_types(seeded_db, result.correlation_id)

    def test_inputs_capture_snapshot(self, seeded_db, app_config, snapshot):
        result = BatchScoringService(seeded_db, app_config).score_user(USER, snapshot)
        event = next(e for e in EventStore(seeded_db).get_by_correlation_id(result.correlation_id)
                     if e.event_type is EventType.INPUTS_CAPTURED)
        inputs = InputsCapturedPayload.model_validate(event.payload)
        assert sorted(p.symbol for p in inputs.prices) == ["AAPL", "BND"]
        assert inputs.exchange_rates == {"USD_EUR": "0.92"}
        assert inputs.criteria_version_id == f"cv-{USER}"
        assert inputs.as_of == snapshot.as_of
        assert sorted(inputs.asset_ids) == ["pf-1-aapl", "pf-1-bnd", "pf-1-voo"]

    def test_stale_fundamentals_flagged(self, in_memory_db, app_config, snapshot,
                                        seed_user, seed_fundamentals):
        seed_user(in_memory_db)
        seed_fundamentals(in_memory_db, fetched_at=snapshot.as_of - timedelta(days=8))
        result = BatchScoringService(in_memory_db, app_config).score_user(USER, snapshot)
        event = next(e for e in EventStore(in_memory_db).get_by_correlation_id(result.correlation_id)
                     if e.event_type is EventType.INPUTS_CAPTURED)
        inputs = InputsCapturedPayload.model_validate(event.payload)
        assert all(f.is_stale for f in inputs.fundamentals)


# ── process_users ─────────────────────────────────────────────────────────────

class TestProcessUsers:
    def test_failures_isolated_per_user(self, seeded_db, app_config, snapshot, seed_user):
        seed_user(seeded_db, user_id="user-0002-bbbb", portfolio_id="pf-2",
                  with_criteria=False, class_suffix="-2")
        seed_user(seeded_db, user_id="user-0003-cccc", portfolio_id="pf-3", class_suffix="-3")
        users = [USER, "user-0002-bbbb", "user-0003-cccc"]
        result = BatchScoringService(seeded_db, app_config).process_users(users, snapshot)

        assert result.users_processed == 3
        assert result.users_failed == 1
        assert [r.success for r in result.results] == [True, False, True]
        assert result.results[1].error == NO_CRITERIA
        assert result.total_assets_scored == 6
        assert [r.user_id for r in result.results] == users

    def test_batch_error_fails_only_that_batch(self, seeded_db, app_config, snapshot, seed_user):
        seed_user(seeded_db, user_id="user-0002-bbbb", portfolio_id="pf-2", class_suffix="-2")
        seeded_db.commit()
        service = BatchScoringService(seeded_db, app_config)
        real = service.portfolios.get_symbols_for_users

        def flaky(user_ids):
            if USER in user_ids:
                raise RuntimeError("fundamentals unavailable")
            return real(user_ids)

        with patch.object(service.portfolios, "get_symbols_for_users", side_effect=flaky):
            result = service.process_users([USER, "user-0002-bbbb"], snapshot, batch_size=1)

        first, second = result.results
        assert first.success is False
        assert first.stage == BATCH_STAGE
        assert second.success is True
        assert result.users_failed == 1

    def test_batch_error_undoes_only_that_batch(self, seeded_db, app_config, snapshot):
        # Uncommitted work owned by the caller must survive the failed batch
        PortfolioRepository(seeded_db).upsert_user(User(id="user-0009-zzzz"))
        service = BatchScoringService(seeded_db, app_config)
        real = service.process_batch

        def fails_after_writing(user_ids, snap):
            real(user_ids, snap)
            raise RuntimeError("late batch failure")

        with patch.object(service, "process_batch", side_effect=fails_after_writing):
            result = service.process_users([USER], snapshot)

        assert result.users_failed == 1
        assert result.results[0].stage == BATCH_STAGE
        assert PortfolioRepository(seeded_db).get_user("user-0009-zzzz") is not None
        assert ScoreRepository(seeded_db).get_latest_scores(USER) == {}
        assert EventStore(seeded_db).get_by_user_id(USER) == []

    def test_preconditions_returned_not_raised(self, in_memory_db, app_config, snapshot, seed_user):
        seed_user(in_memory_db, with_criteria=False)
        with patch("portfolio_scorer.pipeline.batch_scoring._classify") as classify:
            result = BatchScoringService(in_memory_db, app_config).score_user(USER, snapshot)
        classify.assert_not_called()
        assert result.failure_kind is FailureKind.PRECONDITION
