"""
Tests for portfolio_scorer/investments.py.

What we test
------------
parse_requests():
  - ``ASSET_ID:QUANTITY@PRICE`` parsing; malformed items raise ValueError.

InvestmentRecorder.record():
  - Investment rows, holding quantities and events written together.
  - One INVESTMENT_RECORDED per asset, then INVESTMENT_CONFIRMED with the total.
  - A bad asset in the middle of a multi-asset confirmation writes nothing.
  - Opportunity alerts pointing at a bought asset are auto-dismissed.
"""

from __future__ import annotations

import pytest

from portfolio_scorer.alerts.detector import AlertDetector
from portfolio_scorer.alerts.service import AlertService
from portfolio_scorer.errors import PreconditionFailure
from portfolio_scorer.events.store import EventStore
from portfolio_scorer.investments import InvestmentRecorder, InvestmentRequest, parse_requests
from portfolio_scorer.models.events import EventType
from portfolio_scorer.pipeline.batch_scoring import BatchScoringService

USER = "user-0001-aaaa"


def _count(conn, table: str) -> int:
    return conn.execute(f"SELECT COUNT(*) FROM {table};").fetchone()[0]


def _quantity(conn, asset_id: str) -> str:
    return conn.execute(
        "SELECT quantity FROM portfolio_assets WHERE id = ?;", (asset_id,)
    ).fetchone()[0]


# ── parse_requests ────────────────────────────────────────────────────────────

class TestParseRequests:
    def test_parses_items(self):
        assert parse_requests(["pf-1-voo:2@400.50", " pf-1-bnd : 1.5@50"]) == [
            InvestmentRequest("pf-1-voo", "2", "400.50"),
            InvestmentRequest("pf-1-bnd", "1.5", "50"),
        ]

    @pytest.mark.parametrize("raw", ["pf-1-voo", "pf-1-voo:2", "pf-1-voo:two@400"])
    def test_malformed(self, raw):
        with pytest.raises(ValueError):
            parse_requests([raw])


# ── record ────────────────────────────────────────────────────────────────────

class TestInvestmentRecorder:
    def test_multi_asset_confirmation(self, seeded_db):
        recorded = InvestmentRecorder(seeded_db).record(
            USER, "pf-1",
            [InvestmentRequest("pf-1-voo", "2", "400"), InvestmentRequest("pf-1-bnd", "4", "50.25")],
            recommendation_id="rec-1",
        )
        assert recorded.total_amount == "1001.00"
        assert recorded.new_quantities == {"pf-1-voo": "2", "pf-1-bnd": "14"}
        assert _quantity(seeded_db, "pf-1-bnd") == "14"
        assert _count(seeded_db, "investments") == 2

        events = EventStore(seeded_db).get_by_correlation_id(recorded.correlation_id)
        assert [e.event_type for e in events] == [
            EventType.INVESTMENT_RECORDED,
            EventType.INVESTMENT_RECORDED,
            EventType.INVESTMENT_CONFIRMED,
        ]
        assert events[0].payload["total_amount"] == "800.00"
        assert events[-1].payload["investment_ids"] == recorded.investment_ids
        assert events[-1].payload["recommendation_id"] == "rec-1"

    def test_unknown_asset_rolls_back_everything(self, seeded_db):
        with pytest.raises(PreconditionFailure, match="missing"):
            InvestmentRecorder(seeded_db).record(
                USER, "pf-1",
                [InvestmentRequest("pf-1-voo", "2", "400"), InvestmentRequest("missing", "1", "1")],
            )
        assert _quantity(seeded_db, "pf-1-voo") == "0"
        assert _count(seeded_db, "investments") == 0
        assert _count(seeded_db, "calculation_events") == 0

    def test_invalid_price(self, seeded_db):
        with pytest.raises(ValueError, match="Invalid price or quantity"):
            InvestmentRecorder(seeded_db).record(USER, "pf-1", [InvestmentRequest("pf-1-voo", "1", "-5")])

    def test_empty_request(self, seeded_db):
        with pytest.raises(PreconditionFailure):
            InvestmentRecorder(seeded_db).record(USER, "pf-1", [])

    def test_buying_better_asset_dismisses_opportunity(self, seeded_db, app_config, snapshot):
        BatchScoringService(seeded_db, app_config).score_user(USER, snapshot)
        AlertDetector(seeded_db, app_config, snapshot).detect_opportunity_alerts(USER)
        assert AlertService(seeded_db).get_unread_count(USER) == 1

        recorded = InvestmentRecorder(seeded_db, app_config).record(
            USER, "pf-1", [InvestmentRequest("pf-1-voo", "1", "400")]
        )
        assert recorded.alerts_dismissed == 1
        assert AlertService(seeded_db).get_unread_count(USER) == 0
