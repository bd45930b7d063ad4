"""
Per-user alert preferences.

A user without a stored row gets the defaults on first read; the row is
written at that point so later updates are plain upserts.
"""

from __future__ import annotations

import logging
import sqlite3
from decimal import Decimal
from typing import Any

from portfolio_scorer.db.repositories.alert_repo import AlertRepository
from portfolio_scorer.models.alert import AlertPreferences

logger = logging.getLogger(__name__)


class AlertPreferencesService:
    """Read and update alert preferences.

    Args:
        conn:                    Open SQLite connection.
        default_drift_threshold: Threshold written for users with no row yet.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        default_drift_threshold: Decimal = Decimal("5.00"),
    ) -> None:
        self.repo = AlertRepository(conn)
        self.default_drift_threshold = default_drift_threshold

    def get(self, user_id: str) -> AlertPreferences:
        """Stored preferences, creating the default row if absent."""
        prefs = self.repo.get_preferences(user_id)
        if prefs is None:
            prefs = AlertPreferences(
                user_id=user_id, drift_threshold=str(self.default_drift_threshold)
            )
            self.repo.upsert_preferences(prefs)
            logger.debug("Created default alert preferences for user %s", user_id)
        return prefs

    def update(self, user_id: str, **changes: Any) -> AlertPreferences:
        """Apply ``changes`` and persist.

        Raises:
            ValueError: Unknown field, or a value out of range (a drift
                threshold outside 0.01-50 raises pydantic.ValidationError).
        """
        current = self.get(user_id)
        data = current.model_dump()
        unknown = set(changes) - set(data)
        if unknown:
            raise ValueError(f"Unknown preference fields: {sorted(unknown)}")
        data.update(changes)
        updated = AlertPreferences.model_validate(data)
        self.repo.upsert_preferences(updated)
        logger.info("Alert preferences updated for user %s: %s", user_id, sorted(changes))
        return updated

    def is_opportunity_enabled(self, user_id: str) -> bool:
        return self.get(user_id).opportunity_alerts_enabled

    def is_drift_enabled(self, user_id: str) -> bool:
        return self.get(user_id).drift_alerts_enabled

    def get_drift_threshold(self, user_id: str) -> Decimal:
        return Decimal(self.get(user_id).drift_threshold)
