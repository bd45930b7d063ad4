"""
Tests for portfolio_scorer/alerts/preferences.py.

What we test
------------
  - First read creates the default row (opportunity and drift on, 5.00).
  - Updates persist and normalise the threshold to two places.
  - Out-of-range thresholds, unknown frequencies and unknown fields are
    rejected.
"""

from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from portfolio_scorer.alerts.preferences import AlertPreferencesService
from portfolio_scorer.db.repositories.alert_repo import AlertRepository

USER = "user-0001-aaaa"


class TestAlertPreferences:
    def test_defaults_created_on_first_read(self, seeded_db):
        assert AlertRepository(seeded_db).get_preferences(USER) is None
        prefs = AlertPreferencesService(seeded_db).get(USER)
        assert prefs.opportunity_alerts_enabled is True
        assert prefs.drift_alerts_enabled is True
        assert prefs.drift_threshold == "5.00"
        assert AlertRepository(seeded_db).get_preferences(USER) == prefs

    def test_configured_default_threshold(self, seeded_db):
        service = AlertPreferencesService(seeded_db, Decimal("7.5"))
        assert service.get_drift_threshold(USER) == Decimal("7.50")

    def test_update_persists(self, seeded_db):
        service = AlertPreferencesService(seeded_db)
        service.update(USER, drift_alerts_enabled=False, drift_threshold="12.5")
        assert service.is_drift_enabled(USER) is False
        assert service.get(USER).drift_threshold == "12.50"
        assert service.is_opportunity_enabled(USER) is True

    @pytest.mark.parametrize("threshold", ["0", "50.01", "abc"])
    def test_threshold_out_of_range(self, seeded_db, threshold):
        with pytest.raises(ValidationError):
            AlertPreferencesService(seeded_db).update(USER, drift_threshold=threshold)

    def test_unknown_frequency(self, seeded_db):
        with pytest.raises(ValidationError):
            AlertPreferencesService(seeded_db).update(USER, alert_frequency="hourly")

    @pytest.mark.parametrize("field", ["sms_enabled", "push_token"])
    def test_unknown_field(self, seeded_db, field):
        with pytest.raises(ValueError, match="Unknown preference fields"):
            AlertPreferencesService(seeded_db).update(USER, **{field: "x"})
