"""
Opportunity and drift alert detection.

Opportunity
-----------
For every held asset (quantity > 0, classified) in the user's primary
portfolio, find the best-scoring asset of the same class that the user
does not hold there: an entry in one of their other portfolios, or a
zero-quantity watch entry. If it beats the held asset by at least the
opportunity threshold (10 points), create or refresh the alert for that
(current, better) pair.

Drift
-----
For every class with a target range, compute its share of the primary
portfolio's value. Out of range by at least the user's drift threshold:
create or refresh the class's drift alert. Back in range: dismiss it.

Both detectors honour the user's preferences and never raise: a failure
is logged, the user's writes are rolled back and the message is put on
the result's ``error``.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from portfolio_scorer.alerts.preferences import AlertPreferencesService
from portfolio_scorer.alerts.service import (
    AlertService,
    AssetAlertDetails,
    ClassAlertDetails,
)
from portfolio_scorer.config import AppConfig
from portfolio_scorer.db.connection import atomic
from portfolio_scorer.db.repositories.portfolio_repo import PortfolioRepository
from portfolio_scorer.db.repositories.score_repo import ScoreRepository
from portfolio_scorer.pipeline.batch_scoring import MarketSnapshot
from portfolio_scorer.recommendations.allocator import value_holdings_by_class
from portfolio_scorer.utils.decimals import (
    HUNDRED,
    ZERO,
    add,
    divide,
    multiply,
    subtract,
    to_decimal,
    to_decimal_or,
)
from portfolio_scorer.utils.time_utils import elapsed_ms

logger = logging.getLogger(__name__)


@dataclass
class OpportunityDetectionResult:
    classes_analyzed: int = 0
    assets_checked:   int = 0
    alerts_created:   int = 0
    alerts_updated:   int = 0
    alerts_skipped:   int = 0
    duration_ms:      int = 0
    error:            Optional[str] = None


@dataclass
class DriftDetectionResult:
    classes_analyzed: int = 0
    alerts_created:   int = 0
    alerts_updated:   int = 0
    alerts_dismissed: int = 0
    duration_ms:      int = 0
    error:            Optional[str] = None


@dataclass
class DetectionSummary:
    """Totals over many users for one alert kind."""

    users_processed:  int = 0
    users_failed:     int = 0
    alerts_created:   int = 0
    alerts_updated:   int = 0
    alerts_dismissed: int = 0
    alerts_skipped:   int = 0
    duration_ms:      int = 0


class AlertDetector:
    """Runs alert detection for users against the run's market snapshot.

    Args:
        conn:     Open SQLite connection.
        config:   Application config (alert thresholds).
        snapshot: Prices and rates used to value holdings. Without one,
                  holdings are valued at purchase price.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: AppConfig,
        snapshot: Optional[MarketSnapshot] = None,
    ) -> None:
        self.conn = conn
        self.config = config
        self.snapshot = snapshot
        self.alerts = AlertService(conn, config.alerts)
        self.preferences = AlertPreferencesService(conn, config.alerts.default_drift_threshold)
        self.portfolios = PortfolioRepository(conn)
        self.scores = ScoreRepository(conn)

    # ── Opportunity ───────────────────────────────────────────────────────────

    def detect_opportunity_alerts(self, user_id: str) -> OpportunityDetectionResult:
        started = time.perf_counter()
        result = OpportunityDetectionResult()
        try:
            if not self.preferences.is_opportunity_enabled(user_id):
                logger.debug("Opportunity alerts disabled for user %s", user_id)
                return result
            with atomic(self.conn):
                self._detect_opportunities(user_id, result)
        except Exception as exc:
            logger.error("Opportunity detection failed for user %s: %s", user_id, exc, exc_info=True)
            result.error = str(exc)
        result.duration_ms = elapsed_ms(started)
        return result

    def _detect_opportunities(self, user_id: str, result: OpportunityDetectionResult) -> None:
        portfolio = self.portfolios.get_primary_portfolio(user_id)
        if portfolio is None:
            return
        scores = self.scores.get_latest_scores(user_id)
        classes = {ac.id: ac for ac in self.portfolios.get_asset_classes(user_id)}
        primary = self.portfolios.get_holdings(portfolio.id)
        held = [
            h for h in primary
            if h.asset_class_id in classes and (to_decimal(h.quantity) or ZERO) > 0
        ]
        held_symbols = {h.symbol for h in held}
        candidates = [
            h for h in self.portfolios.get_user_holdings(user_id)
            if h.asset_class_id in classes
            and h.symbol not in held_symbols
            and (h.portfolio_id != portfolio.id or (to_decimal(h.quantity) or ZERO) == 0)
        ]

        threshold = self.config.alerts.opportunity_score_threshold
        class_ids = sorted({h.asset_class_id for h in held})
        result.classes_analyzed = len(class_ids)

        for class_id in class_ids:
            ac = classes[class_id]
            details = ClassAlertDetails(
                class_id=ac.id,
                class_name=ac.name,
                target_min=to_decimal_or(ac.target_min, ZERO),
                target_max=to_decimal_or(ac.target_max, HUNDRED),
            )
            others = sorted(
                (
                    AssetAlertDetails(h.id, h.symbol, to_decimal(scores[h.id].score) or ZERO)
                    for h in candidates
                    if h.asset_class_id == class_id and h.id in scores
                ),
                key=lambda a: (-a.score, a.symbol),
            )
            for h in held:
                if h.asset_class_id != class_id or h.id not in scores:
                    continue
                result.assets_checked += 1
                current = AssetAlertDetails(h.id, h.symbol, to_decimal(scores[h.id].score) or ZERO)
                best = others[0] if others else None
                if best is None or subtract(best.score, current.score) < threshold:
                    continue
                existing = self.alerts.find_existing_opportunity(user_id, current.asset_id, best.asset_id)
                if existing is None:
                    self.alerts.create_opportunity_alert(user_id, current, best, details)
                    result.alerts_created += 1
                elif self.alerts.update_opportunity_if_changed(existing, current, best, details):
                    result.alerts_updated += 1
                else:
                    result.alerts_skipped += 1

    # ── Drift ─────────────────────────────────────────────────────────────────

    def detect_drift_alerts(self, user_id: str) -> DriftDetectionResult:
        started = time.perf_counter()
        result = DriftDetectionResult()
        try:
            prefs = self.preferences.get(user_id)
            if not prefs.drift_alerts_enabled:
                logger.debug("Drift alerts disabled for user %s", user_id)
                return result
            with atomic(self.conn):
                self._detect_drift(user_id, Decimal(prefs.drift_threshold), result)
        except Exception as exc:
            logger.error("Drift detection failed for user %s: %s", user_id, exc, exc_info=True)
            result.error = str(exc)
        result.duration_ms = elapsed_ms(started)
        return result

    def _detect_drift(self, user_id: str, threshold: Decimal, result: DriftDetectionResult) -> None:
        user = self.portfolios.get_user(user_id)
        portfolio = self.portfolios.get_primary_portfolio(user_id)
        if user is None or portfolio is None:
            return
        ranged = [ac for ac in self.portfolios.get_asset_classes(user_id) if ac.has_target_range]
        if not ranged:
            return

        prices = self.snapshot.prices if self.snapshot else {}
        rates = self.snapshot.exchange_rates if self.snapshot else {}
        values = value_holdings_by_class(
            self.portfolios.get_holdings(portfolio.id), prices, rates, user.base_currency
        )
        total = ZERO
        for v in values.values():
            total = add(total, v)
        if total <= 0:
            logger.debug("Portfolio %s has no value; drift skipped", portfolio.id)
            return

        for ac in ranged:
            result.classes_analyzed += 1
            details = ClassAlertDetails(
                class_id=ac.id,
                class_name=ac.name,
                target_min=to_decimal_or(ac.target_min, ZERO),
                target_max=to_decimal_or(ac.target_max, HUNDRED),
            )
            current = divide(multiply(values.get(ac.id, ZERO), HUNDRED), total)
            existing = self.alerts.find_existing_drift(user_id, ac.id)

            if details.target_min <= current <= details.target_max:
                if existing is not None and self.alerts.repo.dismiss(user_id, existing.id):
                    result.alerts_dismissed += 1
                    logger.info("Drift alert %s dismissed; %s back in range", existing.id, ac.name)
                continue

            if current > details.target_max:
                drift = subtract(current, details.target_max)
            else:
                drift = subtract(details.target_min, current)
            if drift < threshold:
                continue
            if existing is None:
                self.alerts.create_drift_alert(user_id, details, current, threshold)
                result.alerts_created += 1
            elif self.alerts.update_drift_if_changed(existing, details, current, threshold):
                result.alerts_updated += 1

    # ── Auto-resolution ───────────────────────────────────────────────────────

    def auto_dismiss_for_added_asset(self, user_id: str, symbol: str) -> int:
        """Dismiss opportunity alerts whose better asset now has this symbol held.

        Matches by asset id of every holding with ``symbol`` across the
        user's portfolios, so adding the asset to any portfolio resolves it.
        """
        count = 0
        for h in self.portfolios.get_user_holdings(user_id):
            if h.symbol == symbol:
                count += self.alerts.auto_dismiss_for_added_asset(user_id, h.id)
        return count

    # ── Batch helpers ─────────────────────────────────────────────────────────

    def run_opportunity(self, user_ids: list[str]) -> DetectionSummary:
        started = time.perf_counter()
        summary = DetectionSummary()
        for user_id in user_ids:
            r = self.detect_opportunity_alerts(user_id)
            summary.users_processed += 1
            summary.users_failed += int(r.error is not None)
            summary.alerts_created += r.alerts_created
            summary.alerts_updated += r.alerts_updated
            summary.alerts_skipped += r.alerts_skipped
        summary.duration_ms = elapsed_ms(started)
        logger.info(
            "Opportunity alerts | users=%d | created=%d | updated=%d | failed=%d",
            summary.users_processed, summary.alerts_created, summary.alerts_updated, summary.users_failed,
        )
        return summary

    def run_drift(self, user_ids: list[str]) -> DetectionSummary:
        started = time.perf_counter()
        summary = DetectionSummary()
        for user_id in user_ids:
            r = self.detect_drift_alerts(user_id)
            summary.users_processed += 1
            summary.users_failed += int(r.error is not None)
            summary.alerts_created += r.alerts_created
            summary.alerts_updated += r.alerts_updated
            summary.alerts_dismissed += r.alerts_dismissed
        summary.duration_ms = elapsed_ms(started)
        logger.info(
            "Drift alerts | users=%d | created=%d | updated=%d | dismissed=%d | failed=%d",
            summary.users_processed, summary.alerts_created, summary.alerts_updated,
            summary.alerts_dismissed, summary.users_failed,
        )
        return summary
