"""
Per-user recommendation generation for the nightly job.

For each user that scored successfully, read their latest scores and the
primary portfolio, value the portfolio at the run's prices, compute class
allocation gaps and distribute the user's default contribution across the
scored assets. Every generated recommendation is inserted as a new row;
earlier ones are never touched.

Per-user failures (user missing, empty portfolio, nothing scored, DB error)
are returned as failed ``UserRecommendationResult`` entries with a reason;
they never abort the batch.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Optional

from portfolio_scorer.config import AppConfig
from portfolio_scorer.db.repositories.portfolio_repo import PortfolioRepository
from portfolio_scorer.db.repositories.recommendation_repo import RecommendationRepository
from portfolio_scorer.db.repositories.score_repo import ScoreRepository, StoredScore
from portfolio_scorer.errors import PreconditionFailure
from portfolio_scorer.models.portfolio import AssetClass, Holding
from portfolio_scorer.models.recommendation import (
    AllocationGap,
    AuditTrail,
    GeneratedRecommendation,
)
from portfolio_scorer.pipeline.batch_scoring import MarketSnapshot
from portfolio_scorer.recommendations.allocator import (
    UNCLASSIFIED,
    AssetContext,
    compute_allocation_gaps,
    generate_recommendation_items,
    validate_total_equals,
    value_holdings_by_class,
)
from portfolio_scorer.utils.decimals import HUNDRED, ZERO, fmt_money, to_decimal, to_decimal_or
from portfolio_scorer.utils.time_utils import elapsed_ms

logger = logging.getLogger(__name__)

NO_USER = "User not found or no portfolio"
NO_ASSETS = "No assets in portfolio"
NO_SCORES = "No scored assets"


@dataclass
class UserRecommendationResult:
    user_id:           str
    success:           bool
    correlation_id:    str
    recommendation_id: Optional[str] = None
    item_count:        int = 0
    total_amount:      Optional[str] = None
    duration_ms:       int = 0
    error:             Optional[str] = None


@dataclass
class BatchRecommendationResult:
    users_processed: int = 0
    users_success:   int = 0
    users_failed:    int = 0
    duration_ms:     int = 0
    results:         list[UserRecommendationResult] = field(default_factory=list)

    @property
    def recommendations_generated(self) -> int:
        return self.users_success


def user_correlation_id(run_correlation_id: str, user_id: str) -> str:
    """Per-user id derived from the run's correlation id."""
    return f"{run_correlation_id}:rec:{user_id[:8]}"


def build_asset_contexts(
    holdings: list[Holding],
    scores: dict[str, StoredScore],
    asset_classes: list[AssetClass],
    gaps: list[AllocationGap],
) -> list[AssetContext]:
    """Join scored holdings with their class allocation state.

    Holdings without a stored score are left out. Unclassified holdings
    are always treated as over-allocated.
    """
    classes = {ac.id: ac for ac in asset_classes}
    gap_by_class = {g.class_id: g for g in gaps}
    contexts: list[AssetContext] = []
    for h in holdings:
        stored = scores.get(h.id)
        if stored is None or h.is_ignored:
            continue
        score = to_decimal(stored.score) or ZERO
        gap = gap_by_class.get(h.asset_class_id)
        ac = classes.get(h.asset_class_id)
        if gap is None or ac is None:
            contexts.append(AssetContext(
                asset_id=h.id,
                symbol=h.symbol,
                score=score,
                class_id=None,
                class_name=UNCLASSIFIED,
                current_allocation=ZERO,
                target_allocation=ZERO,
                allocation_gap=ZERO,
                is_over_allocated=True,
                target_max=ZERO,
            ))
            continue
        contexts.append(AssetContext(
            asset_id=h.id,
            symbol=h.symbol,
            score=score,
            class_id=ac.id,
            class_name=ac.name,
            current_allocation=to_decimal(gap.current_allocation) or ZERO,
            target_allocation=to_decimal(gap.target_midpoint) or ZERO,
            allocation_gap=to_decimal(gap.gap) or ZERO,
            is_over_allocated=gap.is_over_allocated,
            min_allocation=to_decimal(ac.min_allocation_value) or ZERO,
            target_max=to_decimal_or(gap.target_max, HUNDRED),
        ))
    return contexts


class RecommendationGenerator:
    """Builds and saves one ``GeneratedRecommendation`` per user.

    Args:
        conn:     Open SQLite connection.
        config:   Application config (priority policy).
        snapshot: The run's market snapshot (prices and rates).
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: AppConfig,
        snapshot: MarketSnapshot,
    ) -> None:
        self.conn = conn
        self.config = config
        self.snapshot = snapshot
        self.portfolios = PortfolioRepository(conn)
        self.scores = ScoreRepository(conn)
        self.recommendations = RecommendationRepository(conn)

    def build(self, user_id: str, correlation_id: str) -> GeneratedRecommendation:
        """Compute a recommendation without saving it.

        Raises:
            PreconditionFailure: User or portfolio missing, no holdings, or
                no stored scores.
        """
        user = self.portfolios.get_user(user_id)
        portfolio = self.portfolios.get_primary_portfolio(user_id) if user else None
        if user is None or portfolio is None:
            raise PreconditionFailure(NO_USER)

        holdings = self.portfolios.get_holdings(portfolio.id)
        if not holdings:
            raise PreconditionFailure(NO_ASSETS)

        scores = self.scores.get_latest_scores(user_id)
        held_ids = {h.id for h in holdings}
        scored = {aid: s for aid, s in scores.items() if aid in held_ids}
        if not scored:
            raise PreconditionFailure(NO_SCORES)

        asset_classes = self.portfolios.get_asset_classes(user_id)
        class_values = value_holdings_by_class(
            holdings,
            self.snapshot.prices,
            self.snapshot.exchange_rates,
            user.base_currency,
        )
        gaps = compute_allocation_gaps(asset_classes, class_values)
        contexts = build_asset_contexts(holdings, scored, asset_classes, gaps)

        total_investable = fmt_money(to_decimal(user.default_contribution) or ZERO)
        items = generate_recommendation_items(
            contexts, total_investable, self.config.recommendations.priority_policy
        )
        if items and not validate_total_equals(items, total_investable):
            logger.warning(
                "Recommendation amounts for user %s do not sum to %s "
                "(every asset over-allocated?)", user_id, total_investable,
            )

        latest = max(
            scored.values(),
            key=lambda s: (s.calculated_at.isoformat() if s.calculated_at else "", s.correlation_id),
        )
        return GeneratedRecommendation(
            user_id=user_id,
            portfolio_id=portfolio.id,
            correlation_id=correlation_id,
            generated_at=self.snapshot.as_of,
            total_investable=total_investable,
            base_currency=user.base_currency,
            items=items,
            allocation_gaps=gaps,
            audit_trail=AuditTrail(
                criteria_version_id=latest.criteria_version_id,
                exchange_rates_snapshot=dict(self.snapshot.exchange_rates),
                scores_correlation_id=latest.correlation_id,
                prices_as_of=self.snapshot.prices_as_of,
                rates_as_of=self.snapshot.rates_as_of,
            ),
        )

    def generate_for_user(self, user_id: str, run_correlation_id: str) -> UserRecommendationResult:
        """Build and insert a recommendation for one user. Never raises."""
        started = time.perf_counter()
        correlation_id = user_correlation_id(run_correlation_id, user_id)
        try:
            rec = self.build(user_id, correlation_id)
            rec_id = self.recommendations.insert(rec)
        except PreconditionFailure as exc:
            logger.info("No recommendation for user %s: %s", user_id, exc)
            return UserRecommendationResult(
                user_id=user_id, success=False, correlation_id=correlation_id,
                duration_ms=elapsed_ms(started), error=str(exc),
            )
        except Exception as exc:
            logger.error("Recommendation failed for user %s: %s", user_id, exc, exc_info=True)
            return UserRecommendationResult(
                user_id=user_id, success=False, correlation_id=correlation_id,
                duration_ms=elapsed_ms(started), error=str(exc),
            )

        return UserRecommendationResult(
            user_id=user_id,
            success=True,
            correlation_id=correlation_id,
            recommendation_id=rec_id,
            item_count=len(rec.items),
            total_amount=rec.total_investable,
            duration_ms=elapsed_ms(started),
        )

    def generate_batch(
        self,
        user_ids: list[str],
        run_correlation_id: str,
        batch_size: Optional[int] = None,
    ) -> BatchRecommendationResult:
        """Generate for ``user_ids`` in sequential batches, committing each."""
        size = batch_size or self.config.scoring.user_batch_size
        started = time.perf_counter()
        result = BatchRecommendationResult()

        for offset in range(0, len(user_ids), size):
            for user_id in user_ids[offset:offset + size]:
                r = self.generate_for_user(user_id, run_correlation_id)
                result.results.append(r)
                result.users_processed += 1
                if r.success:
                    result.users_success += 1
                else:
                    result.users_failed += 1
            self.conn.commit()

        result.duration_ms = elapsed_ms(started)
        logger.info(
            "Recommendations | users=%d | generated=%d | skipped=%d | %dms",
            result.users_processed, result.users_success, result.users_failed, result.duration_ms,
        )
        return result
