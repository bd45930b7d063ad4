"""
Repository for ``asset_scores`` (latest score per user/asset) and
``score_history`` (append-only trail of every computed score).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from portfolio_scorer.db.connection import atomic
from portfolio_scorer.db.repositories.base import BaseRepository, _dumps
from portfolio_scorer.models.scoring import AssetScoreResult
from portfolio_scorer.utils.time_utils import parse_iso, to_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredScore:
    """Latest persisted score for one asset."""

    asset_id:            str
    symbol:              str
    score:               str
    percentage:          str
    criteria_version_id: str
    correlation_id:      str
    calculated_at:       Optional[datetime]


class ScoreRepository(BaseRepository):
    """Write scores for one calculation and read the latest per asset."""

    def store_scores(
        self,
        user_id: str,
        results: list[AssetScoreResult],
        criteria_version_id: str,
        correlation_id: str,
        calculated_at: datetime,
    ) -> int:
        """Overwrite latest scores and append history rows in one unit.

        Returns:
            Number of scores written.
        """
        ts = to_iso(calculated_at)
        with atomic(self.conn):
            self.executemany(
                """
                INSERT INTO asset_scores (
                    user_id, asset_id, symbol, score, max_possible_score, percentage,
                    breakdown, criteria_version_id, correlation_id, calculated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, asset_id) DO UPDATE SET
                    symbol              = excluded.symbol,
                    score               = excluded.score,
                    max_possible_score  = excluded.max_possible_score,
                    percentage          = excluded.percentage,
                    breakdown           = excluded.breakdown,
                    criteria_version_id = excluded.criteria_version_id,
                    correlation_id      = excluded.correlation_id,
                    calculated_at       = excluded.calculated_at;
                """,
                [
                    (
                        user_id,
                        r.asset_id,
                        r.symbol,
                        r.score,
                        r.max_possible_score,
                        r.percentage,
                        _dumps([b.model_dump(mode="json") for b in r.breakdown]),
                        criteria_version_id,
                        correlation_id,
                        ts,
                    )
                    for r in results
                ],
            )
            self.executemany(
                """
                INSERT INTO score_history (
                    user_id, asset_id, symbol, score, percentage,
                    criteria_version_id, correlation_id, calculated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                [
                    (user_id, r.asset_id, r.symbol, r.score, r.percentage,
                     criteria_version_id, correlation_id, ts)
                    for r in results
                ],
            )
        return len(results)

    def get_latest_scores(self, user_id: str) -> dict[str, StoredScore]:
        """Latest score per asset for the user, keyed by asset id."""
        rows = self.fetchall(
            "SELECT * FROM asset_scores WHERE user_id = ? ORDER BY asset_id;", (user_id,)
        )
        return {
            r["asset_id"]: StoredScore(
                asset_id=r["asset_id"],
                symbol=r["symbol"],
                score=r["score"],
                percentage=r["percentage"],
                criteria_version_id=r["criteria_version_id"],
                correlation_id=r["correlation_id"],
                calculated_at=parse_iso(r["calculated_at"]),
            )
            for r in rows
        }

    def get_history(self, user_id: str, asset_id: str, limit: int = 30) -> list[StoredScore]:
        """Score history for one asset, newest first."""
        rows = self.fetchall(
            """
            SELECT * FROM score_history
            WHERE user_id = ? AND asset_id = ?
            ORDER BY calculated_at DESC, id DESC
            LIMIT ?;
            """,
            (user_id, asset_id, limit),
        )
        return [
            StoredScore(
                asset_id=r["asset_id"],
                symbol=r["symbol"],
                score=r["score"],
                percentage=r["percentage"],
                criteria_version_id=r["criteria_version_id"],
                correlation_id=r["correlation_id"],
                calculated_at=parse_iso(r["calculated_at"]),
            )
            for r in rows
        ]
