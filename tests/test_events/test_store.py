"""
Tests for portfolio_scorer/events/store.py.

What we test
------------
  - append() assigns ids and stores payloads unchanged.
  - Query methods filter by correlation id, user and event type.
  - SCORES_COMPUTED without a prior INPUTS_CAPTURED is rejected.
  - append_batch() is all-or-nothing.
  - The user id argument wins over the event's own user id.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from portfolio_scorer.errors import EventOrderingError
from portfolio_scorer.events.store import EventStore
from portfolio_scorer.models.events import (
    CalcCompletedPayload,
    CalcStartedPayload,
    CalculationEvent,
    EventType,
    InputsCapturedPayload,
    ScoresComputedPayload,
)
from portfolio_scorer.models.scoring import AssetScoreResult, CriterionRule, ScoringAsset

_TS = datetime(2026, 10, 19, 4, 0, tzinfo=timezone.utc)


def _started(cid: str, user_id: str = "u1") -> CalculationEvent:
    return CalculationEvent.build(
        cid, user_id, CalcStartedPayload(correlation_id=cid, user_id=user_id, timestamp=_TS)
    )


def _inputs(cid: str, user_id: str = "u1") -> CalculationEvent:
    return CalculationEvent.build(cid, user_id, InputsCapturedPayload(
        criteria_version_id="cv1",
        criteria=[CriterionRule(id="pe", metric="pe_ratio", operator="lt", value="20", points=10)],
        assets=[ScoringAsset(asset_id="a1", symbol="AAPL")],
        as_of=_TS,
    ))


def _scores(cid: str, user_id: str = "u1") -> CalculationEvent:
    return CalculationEvent.build(cid, user_id, ScoresComputedPayload(results=[
        AssetScoreResult(asset_id="a1", symbol="AAPL", score="10.0000",
                         max_possible_score="10.0000", percentage="100.0000"),
    ]))


class TestAppend:
    def test_append_returns_increasing_ids(self, in_memory_db):
        store = EventStore(in_memory_db)
        first = store.append("u1", _started("c1"))
        second = store.append("u1", _inputs("c1"))
        assert second > first

    def test_payload_round_trips_unchanged(self, in_memory_db):
        store = EventStore(in_memory_db)
        event = _inputs("c1")
        store.append("u1", event)
        loaded = store.get_by_correlation_id("c1")[0]
        assert loaded.payload == event.payload
        assert loaded.created_at is not None
        assert isinstance(loaded.typed_payload(), InputsCapturedPayload)

    def test_user_id_argument_overrides_event(self, in_memory_db):
        store = EventStore(in_memory_db)
        store.append("u2", _started("c1", user_id="u1"))
        assert store.get_by_correlation_id("c1")[0].user_id == "u2"


class TestOrdering:
    def test_scores_without_inputs_rejected(self, in_memory_db):
        store = EventStore(in_memory_db)
        store.append("u1", _started("c1"))
        with pytest.raises(EventOrderingError):
            store.append("u1", _scores("c1"))

    def test_scores_after_inputs_accepted(self, in_memory_db):
        store = EventStore(in_memory_db)
        for event in (_started("c1"), _inputs("c1"), _scores("c1")):
            store.append("u1", event)
        types = [e.event_type for e in store.get_by_correlation_id("c1")]
        assert types == [EventType.CALC_STARTED, EventType.INPUTS_CAPTURED,
                         EventType.SCORES_COMPUTED]

    def test_append_batch_rolls_back_on_failure(self, in_memory_db):
        store = EventStore(in_memory_db)
        with pytest.raises(EventOrderingError):
            store.append_batch([_started("c1"), _scores("c1")])
        assert store.get_by_correlation_id("c1") == []


class TestQueries:
    def test_get_by_event_type_filters(self, in_memory_db):
        store = EventStore(in_memory_db)
        store.append("u1", _started("c1"))
        store.append("u1", _inputs("c1"))
        store.append("u1", CalculationEvent.build("c1", "u1", CalcCompletedPayload(
            duration_ms=5, asset_count=1, status="success",
        )))
        found = store.get_by_event_type("u1", EventType.CALC_COMPLETED)
        assert len(found) == 1
        assert found[0].payload["status"] == "success"

    def test_get_calc_started_event(self, in_memory_db):
        store = EventStore(in_memory_db)
        store.append("u1", _started("c1"))
        assert store.get_calc_started_event("c1").event_type is EventType.CALC_STARTED
        assert store.get_calc_started_event("missing") is None

    def test_get_by_user_id_scoped(self, in_memory_db):
        store = EventStore(in_memory_db)
        store.append("u1", _started("c1"))
        store.append("u2", _started("c2", user_id="u2"))
        assert [e.correlation_id for e in store.get_by_user_id("u1")] == ["c1"]
