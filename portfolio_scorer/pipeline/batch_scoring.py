"""
Batch scoring across many users.

``BatchScoringService`` scores users in fixed-size batches against one
``MarketSnapshot`` (rates and prices fetched once for the whole run). For
each user it writes the fixed event sequence:

    CALC_STARTED → INPUTS_CAPTURED → SCORES_COMPUTED → CALC_COMPLETED

Failure isolation
-----------------
- No active criteria / no assets: returned as a failed result tagged
  ``FailureKind.PRECONDITION``; CALC_COMPLETED(status="failed") is still
  written so the audit trail shows why. The batch continues.
- Exception while scoring one user: caught, converted to a failed result
  with the stage it happened in. The batch continues.
- Exception at batch scope (e.g. loading the batch's fundamentals): every
  user in that batch is failed with stage ``"batch-processing"``. Later
  batches still run.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from portfolio_scorer.config import AppConfig
from portfolio_scorer.db.connection import atomic
from portfolio_scorer.db.repositories.market_repo import MarketDataRepository
from portfolio_scorer.db.repositories.portfolio_repo import PortfolioRepository
from portfolio_scorer.db.repositories.score_repo import ScoreRepository
from portfolio_scorer.errors import (
    FailureKind,
    PersistenceFailure,
    ProviderFailure,
)
from portfolio_scorer.events.store import EventStore
from portfolio_scorer.models.events import (
    CalcCompletedPayload,
    CalcStartedPayload,
    CalculationEvent,
    InputsCapturedPayload,
    ScoresComputedPayload,
)
from portfolio_scorer.models.portfolio import Holding
from portfolio_scorer.models.scoring import AssetFundamentals, PriceQuote, ScoringAsset
from portfolio_scorer.scoring.engine import score_assets
from portfolio_scorer.utils.time_utils import elapsed_ms, is_stale, utcnow

logger = logging.getLogger(__name__)

NO_CRITERIA = "No active criteria configured"
NO_ASSETS = "No assets in portfolio"
BATCH_STAGE = "batch-processing"


# ── Result types ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MarketSnapshot:
    """Rates and prices shared by every user in one run. Never mutated.

    Attributes:
        exchange_rates: Pair-keyed rates, e.g. ``{"USD_EUR": "0.92"}``.
        prices:         Latest quote per symbol.
        as_of:          Reference time for staleness checks.
        rates_as_of:    When the rates were fetched.
        prices_as_of:   When the prices were fetched (``None`` if none).
    """

    exchange_rates: dict[str, str]
    prices:         dict[str, PriceQuote]
    as_of:          datetime
    rates_as_of:    Optional[datetime] = None
    prices_as_of:   Optional[datetime] = None


@dataclass
class UserProcessingResult:
    """Outcome for one user: either scores were stored, or a tagged failure.

    Attributes:
        user_id:          User processed.
        success:          True when scores were stored and events written.
        correlation_id:   Correlation id of this calculation.
        scores_computed:  Number of asset scores stored.
        duration_ms:      Wall time for this user.
        error:            Failure message when ``success`` is False.
        stage:            Step the failure happened in.
        failure_kind:     Precondition / provider / persistence.
    """

    user_id:         str
    success:         bool
    correlation_id:  str
    scores_computed: int = 0
    duration_ms:     int = 0
    error:           Optional[str] = None
    stage:           Optional[str] = None
    failure_kind:    Optional[FailureKind] = None


@dataclass
class BatchProcessingResult:
    users_processed:     int = 0
    users_success:       int = 0
    users_failed:        int = 0
    total_assets_scored: int = 0
    total_duration_ms:   int = 0
    results:             list[UserProcessingResult] = field(default_factory=list)

    def add(self, result: UserProcessingResult) -> None:
        self.results.append(result)
        self.users_processed += 1
        if result.success:
            self.users_success += 1
            self.total_assets_scored += result.scores_computed
        else:
            self.users_failed += 1

    def merge(self, other: "BatchProcessingResult") -> None:
        for r in other.results:
            self.add(r)


# ── Service ───────────────────────────────────────────────────────────────────

class BatchScoringService:
    """Scores users batch by batch.

    Args:
        conn:        Open SQLite connection (committed after each batch).
        config:      Application config (batch size, staleness window).
        event_store: Event store bound to ``conn``; built if omitted.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: AppConfig,
        event_store: Optional[EventStore] = None,
    ) -> None:
        self.conn = conn
        self.config = config
        self.events = event_store or EventStore(conn)
        self.portfolios = PortfolioRepository(conn)
        self.market = MarketDataRepository(conn)
        self.scores = ScoreRepository(conn)
        self.stale_after = timedelta(days=config.scoring.stale_after_days)

    def process_users(
        self,
        user_ids: list[str],
        snapshot: MarketSnapshot,
        batch_size: Optional[int] = None,
    ) -> BatchProcessingResult:
        """Score ``user_ids`` in sequential batches.

        Returns:
            Aggregate counts plus one ``UserProcessingResult`` per user,
            in input order.
        """
        size = batch_size or self.config.scoring.user_batch_size
        started = time.perf_counter()
        total = BatchProcessingResult()
        n_batches = (len(user_ids) + size - 1) // size

        for index in range(n_batches):
            batch = user_ids[index * size:(index + 1) * size]
            logger.info("Scoring batch %d/%d (%d users)", index + 1, n_batches, len(batch))
            try:
                with atomic(self.conn):
                    batch_result = self.process_batch(batch, snapshot)
            except Exception as exc:
                logger.error("Batch %d failed: %s", index + 1, exc, exc_info=True)
                batch_result = BatchProcessingResult()
                for user_id in batch:
                    batch_result.add(UserProcessingResult(
                        user_id=user_id,
                        success=False,
                        correlation_id="",
                        error=str(exc),
                        stage=BATCH_STAGE,
                        failure_kind=_classify(exc),
                    ))
            self.conn.commit()
            total.merge(batch_result)

        total.total_duration_ms = elapsed_ms(started)
        logger.info(
            "Batch scoring finished | users=%d | ok=%d | failed=%d | assets=%d | %dms",
            total.users_processed, total.users_success, total.users_failed,
            total.total_assets_scored, total.total_duration_ms,
        )
        return total

    def process_batch(
        self,
        user_ids: list[str],
        snapshot: MarketSnapshot,
    ) -> BatchProcessingResult:
        """Score one batch. Batch-scope errors propagate to the caller."""
        started = time.perf_counter()
        symbols = self.portfolios.get_symbols_for_users(user_ids)
        fundamentals = self._load_fundamentals(symbols, snapshot.as_of)

        result = BatchProcessingResult()
        for user_id in user_ids:
            result.add(self.score_user(user_id, snapshot, fundamentals))
        result.total_duration_ms = elapsed_ms(started)
        return result

    def score_user(
        self,
        user_id: str,
        snapshot: MarketSnapshot,
        fundamentals: Optional[dict[str, AssetFundamentals]] = None,
    ) -> UserProcessingResult:
        """Run one user's calculation. Never raises."""
        started = time.perf_counter()
        correlation_id = str(uuid4())
        stage = "calc-started"

        try:
            self._emit(user_id, correlation_id, CalcStartedPayload(
                correlation_id=correlation_id,
                user_id=user_id,
                timestamp=utcnow(),
            ))

            stage = "load-criteria"
            criteria_version = self.portfolios.get_active_criteria(user_id)
            if criteria_version is None or not criteria_version.criteria:
                return self._skip(user_id, correlation_id, started, NO_CRITERIA, stage)

            stage = "load-holdings"
            holdings = self.portfolios.get_user_holdings(user_id)
            if not holdings:
                return self._skip(user_id, correlation_id, started, NO_ASSETS, stage)

            stage = "capture-inputs"
            if fundamentals is None:
                fundamentals = self._load_fundamentals(
                    sorted({h.symbol for h in holdings}), snapshot.as_of
                )
            inputs = _capture_inputs(criteria_version.id, criteria_version.criteria,
                                     holdings, snapshot, fundamentals)
            self._emit(user_id, correlation_id, inputs)

            stage = "compute-scores"
            results = score_assets(
                inputs.assets,
                inputs.criteria,
                {f.symbol: f for f in inputs.fundamentals},
            )

            stage = "store-scores"
            with atomic(self.conn):
                self.scores.store_scores(
                    user_id, results, criteria_version.id, correlation_id, snapshot.as_of
                )
                self._emit(user_id, correlation_id, ScoresComputedPayload(results=results))
                duration = elapsed_ms(started)
                self._emit(user_id, correlation_id, CalcCompletedPayload(
                    duration_ms=duration,
                    asset_count=len(results),
                    status="success",
                ))

            return UserProcessingResult(
                user_id=user_id,
                success=True,
                correlation_id=correlation_id,
                scores_computed=len(results),
                duration_ms=duration,
            )

        except Exception as exc:
            kind = _classify(exc)
            logger.error("Scoring failed for user %s at %s: %s", user_id, stage, exc)
            self._emit_failure(user_id, correlation_id, started, str(exc))
            return UserProcessingResult(
                user_id=user_id,
                success=False,
                correlation_id=correlation_id,
                duration_ms=elapsed_ms(started),
                error=str(exc),
                stage=stage,
                failure_kind=kind,
            )

    # ── Private helpers ───────────────────────────────────────────────────────

    def _skip(
        self,
        user_id: str,
        correlation_id: str,
        started: float,
        reason: str,
        stage: str,
    ) -> UserProcessingResult:
        """Close out a user with nothing to score (no criteria or no assets)."""
        logger.info("User %s skipped: %s", user_id, reason)
        self._emit_failure(user_id, correlation_id, started, reason)
        return UserProcessingResult(
            user_id=user_id,
            success=False,
            correlation_id=correlation_id,
            duration_ms=elapsed_ms(started),
            error=reason,
            stage=stage,
            failure_kind=FailureKind.PRECONDITION,
        )

    def _load_fundamentals(
        self,
        symbols: list[str],
        as_of: datetime,
    ) -> dict[str, AssetFundamentals]:
        loaded = self.market.get_fundamentals(symbols)
        return {
            symbol: f.model_copy(update={
                "is_stale": is_stale(f.fetched_at, as_of, self.stale_after)
            })
            for symbol, f in loaded.items()
        }

    def _emit(self, user_id: str, correlation_id: str, payload) -> int:
        return self.events.append(
            user_id, CalculationEvent.build(correlation_id, user_id, payload)
        )

    def _emit_failure(
        self,
        user_id: str,
        correlation_id: str,
        started: float,
        message: str,
    ) -> None:
        try:
            self._emit(user_id, correlation_id, CalcCompletedPayload(
                duration_ms=elapsed_ms(started),
                asset_count=0,
                status="failed",
                error_message=message,
            ))
        except Exception as exc:
            logger.error(
                "Could not record CALC_COMPLETED failure for user %s (correlation_id=%s): %s",
                user_id, correlation_id, exc,
            )


def _capture_inputs(
    criteria_version_id: str,
    criteria,
    holdings: list[Holding],
    snapshot: MarketSnapshot,
    fundamentals: dict[str, AssetFundamentals],
) -> InputsCapturedPayload:
    """Freeze exactly what this user's calculation reads."""
    symbols = sorted({h.symbol for h in holdings})
    currencies = {h.currency for h in holdings}
    currencies.update(q.currency for s, q in snapshot.prices.items() if s in symbols)
    rates = {
        pair: rate
        for pair, rate in sorted(snapshot.exchange_rates.items())
        if pair.split("_", 1)[-1] in currencies or pair.split("_", 1)[0] in currencies
    }
    return InputsCapturedPayload(
        criteria_version_id=criteria_version_id,
        criteria=list(criteria),
        assets=[
            ScoringAsset(asset_id=h.id, symbol=h.symbol, asset_class_id=h.asset_class_id)
            for h in holdings
        ],
        prices=[snapshot.prices[s] for s in symbols if s in snapshot.prices],
        exchange_rates=rates,
        fundamentals=[fundamentals[s] for s in symbols if s in fundamentals],
        as_of=snapshot.as_of,
    )


def _classify(exc: BaseException) -> Optional[FailureKind]:
    if isinstance(exc, ProviderFailure):
        return FailureKind.PROVIDER
    if isinstance(exc, (PersistenceFailure, sqlite3.Error)):
        return FailureKind.PERSISTENCE
    return None
