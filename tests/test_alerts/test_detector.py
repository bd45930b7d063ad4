"""
Tests for portfolio_scorer/alerts/detector.py.

What we test
------------
Opportunity detection (seeded user: held AAPL scores 0, watched VOO 15):
  - Creates "VOO scores higher than your AAPL" once; a rerun with the same
    scores skips instead of duplicating.
  - Disabled preference → nothing created.
  - Auto-dismissal once the better asset is added.

Drift detection (Equities at 66.67% against a 40-60% range):
  - WARNING alert created with the over-allocation suggestion.
  - Rerun with the same values does not create a second alert.
  - Class back in range → existing alert dismissed.
  - A [0, 0] target range is honoured, not treated as unbounded.
  - Threshold from preferences: a higher threshold suppresses the alert.
"""

from __future__ import annotations

from dataclasses import replace

import pytest

from portfolio_scorer.alerts.detector import AlertDetector
from portfolio_scorer.alerts.preferences import AlertPreferencesService
from portfolio_scorer.alerts.service import AlertService
from portfolio_scorer.db.repositories.portfolio_repo import PortfolioRepository
from portfolio_scorer.models.alert import AlertSeverity, AlertType
from portfolio_scorer.models.portfolio import AssetClass
from portfolio_scorer.models.scoring import PriceQuote
from portfolio_scorer.pipeline.batch_scoring import BatchScoringService

USER = "user-0001-aaaa"


@pytest.fixture
def scored_db(seeded_db, app_config, snapshot):
    BatchScoringService(seeded_db, app_config).score_user(USER, snapshot)
    seeded_db.commit()
    return seeded_db


def _active(conn, alert_type: AlertType):
    page = AlertService(conn).get_alerts(USER, alert_type=alert_type)
    return page.alerts


# ── Opportunity ───────────────────────────────────────────────────────────────

class TestOpportunityDetection:
    def test_alert_created_for_better_watched_asset(self, scored_db, app_config, snapshot):
        result = AlertDetector(scored_db, app_config, snapshot).detect_opportunity_alerts(USER)
        assert result.error is None
        assert result.classes_analyzed == 2
        assert result.assets_checked == 2
        assert result.alerts_created == 1

        (alert,) = _active(scored_db, AlertType.OPPORTUNITY)
        assert alert.title == "VOO scores higher than your AAPL"
        assert alert.message == "VOO scores 15.00 vs your AAPL (0.00). Consider swapping?"
        assert alert.subject_key == "pf-1-aapl:pf-1-voo"
        assert alert.metadata["asset_class_name"] == "Equities"

    def test_rerun_does_not_duplicate(self, scored_db, app_config, snapshot):
        detector = AlertDetector(scored_db, app_config, snapshot)
        detector.detect_opportunity_alerts(USER)
        second = detector.detect_opportunity_alerts(USER)
        assert second.alerts_created == 0
        assert second.alerts_skipped == 1
        assert len(_active(scored_db, AlertType.OPPORTUNITY)) == 1

    def test_disabled_preference(self, scored_db, app_config, snapshot):
        AlertPreferencesService(scored_db).update(USER, opportunity_alerts_enabled=False)
        result = AlertDetector(scored_db, app_config, snapshot).detect_opportunity_alerts(USER)
        assert result.alerts_created == 0
        assert _active(scored_db, AlertType.OPPORTUNITY) == []

    def test_auto_dismiss_when_better_asset_added(self, scored_db, app_config, snapshot):
        detector = AlertDetector(scored_db, app_config, snapshot)
        detector.detect_opportunity_alerts(USER)
        assert detector.auto_dismiss_for_added_asset(USER, "VOO") == 1
        assert _active(scored_db, AlertType.OPPORTUNITY) == []

    def test_unscored_user_checks_nothing(self, seeded_db, app_config, snapshot):
        result = AlertDetector(seeded_db, app_config, snapshot).detect_opportunity_alerts(USER)
        assert result.assets_checked == 0
        assert result.alerts_created == 0


# ── Drift ─────────────────────────────────────────────────────────────────────

class TestDriftDetection:
    def test_over_allocated_class_alerted(self, seeded_db, app_config, snapshot):
        result = AlertDetector(seeded_db, app_config, snapshot).detect_drift_alerts(USER)
        assert result.error is None
        assert result.classes_analyzed == 2
        assert result.alerts_created == 1

        (alert,) = _active(seeded_db, AlertType.ALLOCATION_DRIFT)
        assert alert.severity is AlertSeverity.WARNING
        assert alert.subject_key == "ac-eq"
        assert alert.title == "Equities allocation drift detected"
        assert alert.message == (
            "Equities at 66.67%, target is 40.00-60.00%. Consider not adding to this class"
        )
        assert alert.metadata["direction"] == "over"

    def test_rerun_keeps_single_alert(self, seeded_db, app_config, snapshot):
        detector = AlertDetector(seeded_db, app_config, snapshot)
        detector.detect_drift_alerts(USER)
        second = detector.detect_drift_alerts(USER)
        assert second.alerts_created == 0
        assert second.alerts_updated == 0
        assert len(_active(seeded_db, AlertType.ALLOCATION_DRIFT)) == 1

    def test_back_in_range_dismisses(self, seeded_db, app_config, snapshot, as_of):
        AlertDetector(seeded_db, app_config, snapshot).detect_drift_alerts(USER)

        # Equities 750 / Bonds 500: exactly 60% and 40%, both range edges
        cheaper = dict(snapshot.prices)
        cheaper["AAPL"] = PriceQuote(symbol="AAPL", price="75", currency="USD", fetched_at=as_of)
        result = AlertDetector(
            seeded_db, app_config, replace(snapshot, prices=cheaper)
        ).detect_drift_alerts(USER)

        assert result.alerts_dismissed == 1
        assert _active(seeded_db, AlertType.ALLOCATION_DRIFT) == []
        assert result.alerts_created == 0

    def test_zero_target_range_is_a_real_range(self, seeded_db, app_config, snapshot):
        PortfolioRepository(seeded_db).upsert_asset_class(AssetClass(
            id="ac-bd", user_id=USER, name="Bonds", target_min="0", target_max="0",
        ))
        result = AlertDetector(seeded_db, app_config, snapshot).detect_drift_alerts(USER)
        assert result.alerts_created == 2

        by_class = {a.subject_key: a for a in _active(seeded_db, AlertType.ALLOCATION_DRIFT)}
        bonds = by_class["ac-bd"]
        assert bonds.severity is AlertSeverity.CRITICAL
        assert bonds.metadata["direction"] == "over"
        assert bonds.message.startswith("Bonds at 33.33%, target is 0.00-0.00%")

    def test_user_threshold_suppresses(self, seeded_db, app_config, snapshot):
        AlertPreferencesService(seeded_db).update(USER, drift_threshold="10")
        result = AlertDetector(seeded_db, app_config, snapshot).detect_drift_alerts(USER)
        assert result.classes_analyzed == 2
        assert result.alerts_created == 0

    def test_batch_summary(self, seeded_db, app_config, snapshot):
        summary = AlertDetector(seeded_db, app_config, snapshot).run_drift([USER, "ghost"])
        assert summary.users_processed == 2
        assert summary.alerts_created == 1
