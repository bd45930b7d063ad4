"""
Tests for portfolio_scorer/alerts/service.py.

What we test
------------
Content and dedup:
  - Opportunity alert text for held AAPL at 70 and candidate VOO at 85.
  - Score-difference changes below 5 points leave the alert alone; at or
    above 5 the alert is rewritten and becomes unread.
  - Drift amount changes below 2 points are ignored; larger moves update,
    and severity escalates to CRITICAL at twice the threshold.
  - drift_of() direction and magnitude.

User-facing operations:
  - Pagination, limit cap, unread filtering and counts.
  - mark_as_read / dismiss / dismiss_all; foreign alert ids are not found.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from portfolio_scorer.alerts.service import (
    MAX_PAGE_SIZE,
    AlertService,
    AssetAlertDetails,
    ClassAlertDetails,
    drift_of,
    drift_severity,
)
from portfolio_scorer.models.alert import AlertSeverity, AlertType

USER = "user-0001-aaaa"

EQUITIES = ClassAlertDetails("ac-eq", "Equities", Decimal("40"), Decimal("60"))
THRESHOLD = Decimal("5")


def _asset(asset_id: str, symbol: str, score: str) -> AssetAlertDetails:
    return AssetAlertDetails(asset_id, symbol, Decimal(score))


@pytest.fixture
def service(seeded_db) -> AlertService:
    return AlertService(seeded_db)


# ── Opportunity alerts ────────────────────────────────────────────────────────

class TestOpportunityAlerts:
    def test_content(self, service):
        alert = service.create_opportunity_alert(
            USER, _asset("a1", "AAPL", "70"), _asset("a2", "VOO", "85"), EQUITIES
        )
        assert alert.id is not None
        assert alert.title == "VOO scores higher than your AAPL"
        assert alert.message == "VOO scores 85.00 vs your AAPL (70.00). Consider swapping?"
        assert alert.severity is AlertSeverity.INFO
        assert alert.metadata["score_difference"] == "15"

    def test_small_change_ignored(self, service):
        service.create_opportunity_alert(USER, _asset("a1", "ABC", "70"), _asset("a2", "XYZ", "85"), EQUITIES)
        existing = service.find_existing_opportunity(USER, "a1", "a2")
        assert service.update_opportunity_if_changed(
            existing, _asset("a1", "ABC", "70"), _asset("a2", "XYZ", "88"), EQUITIES
        ) is False

    def test_large_change_rewrites_and_marks_unread(self, service):
        created = service.create_opportunity_alert(
            USER, _asset("a1", "ABC", "70"), _asset("a2", "XYZ", "85"), EQUITIES
        )
        service.mark_as_read(USER, created.id)
        existing = service.find_existing_opportunity(USER, "a1", "a2")
        assert service.update_opportunity_if_changed(
            existing, _asset("a1", "ABC", "70"), _asset("a2", "XYZ", "90"), EQUITIES
        ) is True
        updated = service.repo.get(USER, created.id)
        assert updated.message == "XYZ scores 90.00 vs your ABC (70.00). Consider swapping?"
        assert updated.is_read is False

    def test_auto_dismiss_by_better_asset(self, service):
        service.create_opportunity_alert(USER, _asset("a1", "ABC", "70"), _asset("a2", "XYZ", "85"), EQUITIES)
        service.create_opportunity_alert(USER, _asset("a3", "DEF", "60"), _asset("a2", "XYZ", "85"), EQUITIES)
        assert service.auto_dismiss_for_added_asset(USER, "a2") == 2
        assert service.get_unread_count(USER) == 0


# ── Drift alerts ──────────────────────────────────────────────────────────────

class TestDriftAlerts:
    def test_drift_of(self):
        assert drift_of(Decimal("70"), Decimal("40"), Decimal("60")) == ("over", Decimal("10"))
        assert drift_of(Decimal("35"), Decimal("40"), Decimal("60")) == ("under", Decimal("5"))
        direction, amount = drift_of(Decimal("50"), Decimal("40"), Decimal("60"))
        assert amount <= 0

    def test_severity(self):
        assert drift_severity(Decimal("10"), THRESHOLD) is AlertSeverity.CRITICAL
        assert drift_severity(Decimal("9.99"), THRESHOLD) is AlertSeverity.WARNING

    def test_under_allocation_message(self, service):
        alert = service.create_drift_alert(USER, EQUITIES, Decimal("32.5"), THRESHOLD)
        assert alert.message == "Equities at 32.50%, target is 40.00-60.00%. Increase contributions here"
        assert alert.severity is AlertSeverity.WARNING

    def test_churn_below_two_points_ignored(self, service):
        service.create_drift_alert(USER, EQUITIES, Decimal("68"), THRESHOLD)
        existing = service.find_existing_drift(USER, "ac-eq")
        assert service.update_drift_if_changed(existing, EQUITIES, Decimal("69"), THRESHOLD) is False

    def test_larger_move_updates_and_escalates(self, service):
        created = service.create_drift_alert(USER, EQUITIES, Decimal("68"), THRESHOLD)
        existing = service.find_existing_drift(USER, "ac-eq")
        assert service.update_drift_if_changed(existing, EQUITIES, Decimal("71"), THRESHOLD) is True
        updated = service.repo.get(USER, created.id)
        assert updated.severity is AlertSeverity.CRITICAL
        assert updated.metadata["drift_amount"] == "11"


# ── Reads and actions ─────────────────────────────────────────────────────────

class TestUserOperations:
    def _make(self, service, n: int) -> list[int]:
        return [
            service.create_drift_alert(
                USER, ClassAlertDetails(f"c{i}", f"Class {i}", Decimal("40"), Decimal("60")),
                Decimal("70"), THRESHOLD,
            ).id
            for i in range(n)
        ]

    def test_pagination_newest_first(self, service):
        ids = self._make(service, 5)
        page = service.get_alerts(USER, limit=2, offset=1)
        assert page.total == 5
        assert [a.id for a in page.alerts] == [ids[3], ids[2]]

    def test_limit_capped(self, service):
        assert service.get_alerts(USER, limit=1000).limit == MAX_PAGE_SIZE

    def test_mark_read_and_unread_filter(self, service):
        ids = self._make(service, 3)
        assert service.mark_as_read(USER, ids[0]).is_read is True
        assert service.get_unread_count(USER) == 2
        assert service.get_alerts(USER, unread_only=True).total == 2

    def test_dismiss_hides_alert(self, service):
        ids = self._make(service, 2)
        dismissed = service.dismiss(USER, ids[0])
        assert dismissed.is_dismissed is True
        assert dismissed.dismissed_at is not None
        assert service.dismiss(USER, ids[0]) is None
        assert service.get_alerts(USER).total == 1
        assert service.get_alerts(USER, include_dismissed=True).total == 2

    def test_other_users_alert_not_found(self, service):
        (alert_id,) = self._make(service, 1)
        assert service.mark_as_read("someone-else", alert_id) is None
        assert service.dismiss("someone-else", alert_id) is None

    def test_dismiss_all_by_type(self, service):
        self._make(service, 2)
        service.create_opportunity_alert(USER, _asset("a1", "ABC", "70"), _asset("a2", "XYZ", "85"), EQUITIES)
        assert service.dismiss_all(USER, AlertType.ALLOCATION_DRIFT) == 2
        assert service.get_alerts(USER).total == 1
