"""
Alert creation, deduplication and the user-facing alert operations.

Dedup policy (shared by both alert kinds)
-----------------------------------------
Look up the non-dismissed alert for the subject key. Create one when none
exists. When one exists, rewrite it only if the underlying magnitude moved
by at least the tolerance (score difference: 5 points; drift amount: 2
percentage points). Smaller moves leave the alert untouched.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from portfolio_scorer.config import AlertConfig
from portfolio_scorer.db.repositories.alert_repo import AlertRepository
from portfolio_scorer.models.alert import Alert, AlertSeverity, AlertType
from portfolio_scorer.utils.decimals import quantize, subtract, to_decimal

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

OVER_SUGGESTION = "Consider not adding to this class"
UNDER_SUGGESTION = "Increase contributions here"


@dataclass(frozen=True)
class AssetAlertDetails:
    asset_id: str
    symbol:   str
    score:    Decimal


@dataclass(frozen=True)
class ClassAlertDetails:
    class_id:   str
    class_name: str
    target_min: Decimal
    target_max: Decimal


@dataclass(frozen=True)
class AlertPage:
    alerts: list[Alert]
    total:  int
    limit:  int
    offset: int


def _two(value: Decimal) -> str:
    return f"{quantize(value, 2):.2f}"


def opportunity_subject(current_asset_id: str, better_asset_id: str) -> str:
    return f"{current_asset_id}:{better_asset_id}"


def drift_severity(drift_amount: Decimal, threshold: Decimal) -> AlertSeverity:
    """CRITICAL at or above twice the threshold, WARNING below."""
    return AlertSeverity.CRITICAL if drift_amount >= threshold * 2 else AlertSeverity.WARNING


def drift_of(current: Decimal, target_min: Decimal, target_max: Decimal) -> tuple[str, Decimal]:
    """(direction, amount) by which ``current`` lies outside [min, max].

    Amount is zero or negative when ``current`` is within range.
    """
    if current > target_max:
        return "over", subtract(current, target_max)
    return "under", subtract(target_min, current)


class AlertService:
    """Writes and reads alerts for one connection.

    Args:
        conn:   Open SQLite connection.
        config: Alert thresholds (``AlertConfig``); defaults apply if omitted.
    """

    def __init__(self, conn: sqlite3.Connection, config: Optional[AlertConfig] = None) -> None:
        self.repo = AlertRepository(conn)
        self.config = config or AlertConfig()

    # ── Opportunity alerts ────────────────────────────────────────────────────

    def create_opportunity_alert(
        self,
        user_id: str,
        current: AssetAlertDetails,
        better: AssetAlertDetails,
        asset_class: ClassAlertDetails,
    ) -> Alert:
        title, message, metadata = _opportunity_content(current, better, asset_class)
        alert = Alert(
            user_id=user_id,
            type=AlertType.OPPORTUNITY,
            severity=AlertSeverity.INFO,
            subject_key=opportunity_subject(current.asset_id, better.asset_id),
            title=title,
            message=message,
            metadata=metadata,
        )
        alert_id = self.repo.insert(alert)
        logger.info(
            "Opportunity alert created | user=%s | %s -> %s | diff=%s",
            user_id, current.symbol, better.symbol, metadata["score_difference"],
        )
        return alert.model_copy(update={"id": alert_id})

    def find_existing_opportunity(
        self,
        user_id: str,
        current_asset_id: str,
        better_asset_id: str,
    ) -> Optional[Alert]:
        return self.repo.find_active(
            user_id, AlertType.OPPORTUNITY,
            opportunity_subject(current_asset_id, better_asset_id),
        )

    def update_opportunity_if_changed(
        self,
        existing: Alert,
        current: AssetAlertDetails,
        better: AssetAlertDetails,
        asset_class: ClassAlertDetails,
    ) -> bool:
        """Rewrite ``existing`` if the score difference moved by ≥ tolerance.

        Returns:
            True when the alert was updated.
        """
        old_diff = to_decimal(existing.metadata.get("score_difference")) or Decimal(0)
        new_diff = subtract(better.score, current.score)
        if abs(subtract(new_diff, old_diff)) < self.config.score_update_threshold:
            logger.debug(
                "Opportunity alert %s unchanged (diff %s -> %s)", existing.id, old_diff, new_diff
            )
            return False
        title, message, metadata = _opportunity_content(current, better, asset_class)
        self.repo.update_content(existing.id, title, message, AlertSeverity.INFO, metadata)
        logger.info("Opportunity alert %s updated (diff %s -> %s)", existing.id, old_diff, new_diff)
        return True

    def auto_dismiss_for_added_asset(self, user_id: str, better_asset_id: str) -> int:
        """Dismiss opportunity alerts whose better asset the user now holds."""
        count = 0
        for alert in self.repo.find_active_by_metadata(
            user_id, AlertType.OPPORTUNITY, "better_asset_id", better_asset_id
        ):
            if self.repo.dismiss(user_id, alert.id):
                count += 1
        if count:
            logger.info(
                "Auto-dismissed %d opportunity alert(s) for user %s (asset %s added)",
                count, user_id, better_asset_id,
            )
        return count

    # ── Drift alerts ──────────────────────────────────────────────────────────

    def create_drift_alert(
        self,
        user_id: str,
        asset_class: ClassAlertDetails,
        current_allocation: Decimal,
        threshold: Decimal,
    ) -> Alert:
        severity, title, message, metadata = _drift_content(asset_class, current_allocation, threshold)
        alert = Alert(
            user_id=user_id,
            type=AlertType.ALLOCATION_DRIFT,
            severity=severity,
            subject_key=asset_class.class_id,
            title=title,
            message=message,
            metadata=metadata,
        )
        alert_id = self.repo.insert(alert)
        logger.info(
            "Drift alert created | user=%s | class=%s | drift=%s | %s",
            user_id, asset_class.class_name, metadata["drift_amount"], severity.value,
        )
        return alert.model_copy(update={"id": alert_id})

    def find_existing_drift(self, user_id: str, class_id: str) -> Optional[Alert]:
        return self.repo.find_active(user_id, AlertType.ALLOCATION_DRIFT, class_id)

    def update_drift_if_changed(
        self,
        existing: Alert,
        asset_class: ClassAlertDetails,
        current_allocation: Decimal,
        threshold: Decimal,
    ) -> bool:
        """Rewrite ``existing`` if the drift amount moved by ≥ tolerance."""
        old_drift = to_decimal(existing.metadata.get("drift_amount")) or Decimal(0)
        _, new_drift = drift_of(current_allocation, asset_class.target_min, asset_class.target_max)
        if abs(subtract(new_drift, old_drift)) < self.config.drift_update_threshold:
            return False
        severity, title, message, metadata = _drift_content(asset_class, current_allocation, threshold)
        self.repo.update_content(existing.id, title, message, severity, metadata)
        logger.info("Drift alert %s updated (drift %s -> %s)", existing.id, old_drift, new_drift)
        return True

    # ── User-facing reads and actions ─────────────────────────────────────────

    def get_alerts(
        self,
        user_id: str,
        limit: int = 20,
        offset: int = 0,
        unread_only: bool = False,
        alert_type: Optional[AlertType] = None,
        include_dismissed: bool = False,
    ) -> AlertPage:
        """One page of alerts, newest first. ``limit`` is capped at 100."""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        alerts, total = self.repo.list_for_user(
            user_id, limit, offset, unread_only, alert_type, include_dismissed
        )
        return AlertPage(alerts=alerts, total=total, limit=limit, offset=offset)

    def get_unread_count(self, user_id: str) -> int:
        return self.repo.count_unread(user_id)

    def mark_as_read(self, user_id: str, alert_id: int) -> Optional[Alert]:
        if not self.repo.mark_read(user_id, alert_id):
            logger.warning("Alert %s not found for user %s", alert_id, user_id)
            return None
        return self.repo.get(user_id, alert_id)

    def dismiss(self, user_id: str, alert_id: int) -> Optional[Alert]:
        if not self.repo.dismiss(user_id, alert_id):
            logger.warning("Alert %s not found or already dismissed for user %s", alert_id, user_id)
            return None
        return self.repo.get(user_id, alert_id)

    def dismiss_all(self, user_id: str, alert_type: Optional[AlertType] = None) -> int:
        count = self.repo.dismiss_all(user_id, alert_type)
        logger.info("Dismissed %d alert(s) for user %s", count, user_id)
        return count


# ── Content builders ──────────────────────────────────────────────────────────

def _opportunity_content(
    current: AssetAlertDetails,
    better: AssetAlertDetails,
    asset_class: ClassAlertDetails,
) -> tuple[str, str, dict]:
    title = f"{better.symbol} scores higher than your {current.symbol}"
    message = (
        f"{better.symbol} scores {_two(better.score)} vs your "
        f"{current.symbol} ({_two(current.score)}). Consider swapping?"
    )
    metadata = {
        "current_asset_id":     current.asset_id,
        "current_asset_symbol": current.symbol,
        "current_score":        str(current.score),
        "better_asset_id":      better.asset_id,
        "better_asset_symbol":  better.symbol,
        "better_score":         str(better.score),
        "score_difference":     str(subtract(better.score, current.score)),
        "asset_class_id":       asset_class.class_id,
        "asset_class_name":     asset_class.class_name,
    }
    return title, message, metadata


def _drift_content(
    asset_class: ClassAlertDetails,
    current_allocation: Decimal,
    threshold: Decimal,
) -> tuple[AlertSeverity, str, str, dict]:
    direction, amount = drift_of(current_allocation, asset_class.target_min, asset_class.target_max)
    suggestion = OVER_SUGGESTION if direction == "over" else UNDER_SUGGESTION
    name = asset_class.class_name
    title = f"{name} allocation drift detected"
    message = (
        f"{name} at {_two(current_allocation)}%, target is "
        f"{_two(asset_class.target_min)}-{_two(asset_class.target_max)}%. {suggestion}"
    )
    metadata = {
        "asset_class_id":     asset_class.class_id,
        "asset_class_name":   name,
        "current_allocation": str(current_allocation),
        "target_min":         str(asset_class.target_min),
        "target_max":         str(asset_class.target_max),
        "drift_amount":       str(amount),
        "direction":          direction,
    }
    return drift_severity(amount, threshold), title, message, metadata
