"""
Repository for generated recommendations.

Each save inserts a new ``recommendations`` row with its items; existing
rows are never updated.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional
from uuid import uuid4

from portfolio_scorer.db.connection import atomic
from portfolio_scorer.db.repositories.base import BaseRepository, _dumps, _loads
from portfolio_scorer.models.recommendation import (
    AllocationGap,
    AuditTrail,
    GeneratedRecommendation,
    RecommendationItem,
)
from portfolio_scorer.utils.time_utils import parse_iso, to_iso

logger = logging.getLogger(__name__)

# Item fields kept in the ``details`` JSON column
_ITEM_COLUMNS = {"asset_id", "symbol", "score", "recommended_amount", "is_over_allocated", "sort_order"}


class RecommendationRepository(BaseRepository):
    """Insert and read ``GeneratedRecommendation`` snapshots."""

    def insert(self, rec: GeneratedRecommendation) -> str:
        """Persist a recommendation and its items; return the new id."""
        rec_id = rec.id or str(uuid4())
        with atomic(self.conn):
            self.execute(
                """
                INSERT INTO recommendations (
                    id, user_id, portfolio_id, correlation_id, generated_at,
                    total_investable, base_currency, allocation_gaps, audit_trail
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    rec_id,
                    rec.user_id,
                    rec.portfolio_id,
                    rec.correlation_id,
                    to_iso(rec.generated_at),
                    rec.total_investable,
                    rec.base_currency,
                    _dumps([g.model_dump(mode="json") for g in rec.allocation_gaps]),
                    _dumps(rec.audit_trail.model_dump(mode="json")),
                ),
            )
            self.executemany(
                """
                INSERT INTO recommendation_items (
                    recommendation_id, asset_id, symbol, score, recommended_amount,
                    is_over_allocated, sort_order, details
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                [
                    (
                        rec_id,
                        item.asset_id,
                        item.symbol,
                        item.score,
                        item.recommended_amount,
                        int(item.is_over_allocated),
                        item.sort_order,
                        _dumps(item.model_dump(mode="json", exclude=_ITEM_COLUMNS)),
                    )
                    for item in rec.items
                ],
            )
        return rec_id

    def get_latest(self, user_id: str) -> Optional[GeneratedRecommendation]:
        row = self.fetchone(
            """
            SELECT * FROM recommendations WHERE user_id = ?
            ORDER BY generated_at DESC, created_at DESC LIMIT 1;
            """,
            (user_id,),
        )
        return self._hydrate(row) if row else None

    def get_by_id(self, rec_id: str) -> Optional[GeneratedRecommendation]:
        row = self.fetchone("SELECT * FROM recommendations WHERE id = ?;", (rec_id,))
        return self._hydrate(row) if row else None

    def _hydrate(self, row: sqlite3.Row) -> GeneratedRecommendation:
        item_rows = self.fetchall(
            """
            SELECT * FROM recommendation_items
            WHERE recommendation_id = ? ORDER BY sort_order;
            """,
            (row["id"],),
        )
        items = [
            RecommendationItem(
                asset_id=r["asset_id"],
                symbol=r["symbol"],
                score=r["score"],
                recommended_amount=r["recommended_amount"],
                is_over_allocated=bool(r["is_over_allocated"]),
                sort_order=r["sort_order"],
                **_loads(r["details"], {}),
            )
            for r in item_rows
        ]
        return GeneratedRecommendation(
            id=row["id"],
            user_id=row["user_id"],
            portfolio_id=row["portfolio_id"],
            correlation_id=row["correlation_id"],
            generated_at=parse_iso(row["generated_at"]),
            total_investable=row["total_investable"],
            base_currency=row["base_currency"],
            items=items,
            allocation_gaps=[AllocationGap.model_validate(g) for g in _loads(row["allocation_gaps"], [])],
            audit_trail=AuditTrail.model_validate(_loads(row["audit_trail"], {})),
        )
