"""
Repository for users, portfolios, asset classes, holdings, criteria
versions and investments.

These tables are owned by the product's CRUD surface; the nightly job
reads them. ``record_investment`` is the one multi-row write here and runs
inside a SAVEPOINT so the investment row and the holding quantity change
land together or not at all.
"""

from __future__ import annotations

import logging
import sqlite3
from decimal import Decimal
from typing import Optional

from portfolio_scorer.db.connection import atomic
from portfolio_scorer.db.repositories.base import BaseRepository, _dumps, _loads
from portfolio_scorer.models.portfolio import (
    AssetClass,
    CriteriaVersion,
    Holding,
    Investment,
    Portfolio,
    User,
)
from portfolio_scorer.models.scoring import CriterionRule
from portfolio_scorer.utils.decimals import add, to_decimal
from portfolio_scorer.utils.time_utils import parse_iso, to_iso, utcnow

logger = logging.getLogger(__name__)


class PortfolioRepository(BaseRepository):
    """Read/write access to the portfolio-side tables."""

    # ── Users ─────────────────────────────────────────────────────────────────

    def upsert_user(self, user: User) -> None:
        self.execute(
            """
            INSERT INTO users (id, email, base_currency, default_contribution, is_active)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                email                = excluded.email,
                base_currency        = excluded.base_currency,
                default_contribution = excluded.default_contribution,
                is_active            = excluded.is_active;
            """,
            (user.id, user.email, user.base_currency, user.default_contribution, int(user.is_active)),
        )

    def get_user(self, user_id: str) -> Optional[User]:
        row = self.fetchone(
            "SELECT * FROM users WHERE id = ? AND deleted_at IS NULL;", (user_id,)
        )
        if row is None:
            return None
        return User(
            id=row["id"],
            email=row["email"],
            base_currency=row["base_currency"],
            default_contribution=row["default_contribution"],
            is_active=bool(row["is_active"]),
        )

    def get_active_user_ids(self) -> list[str]:
        """Ids of active, non-deleted users that own at least one portfolio."""
        rows = self.fetchall(
            """
            SELECT DISTINCT u.id
            FROM users u
            JOIN portfolios p ON p.user_id = u.id
            WHERE u.is_active = 1 AND u.deleted_at IS NULL
            ORDER BY u.id;
            """
        )
        return [r["id"] for r in rows]

    # ── Portfolios ────────────────────────────────────────────────────────────

    def insert_portfolio(self, portfolio: Portfolio) -> None:
        self.execute(
            "INSERT INTO portfolios (id, user_id, name) VALUES (?, ?, ?);",
            (portfolio.id, portfolio.user_id, portfolio.name),
        )

    def get_primary_portfolio(self, user_id: str) -> Optional[Portfolio]:
        """The user's first portfolio (recommendations and alerts target it)."""
        row = self.fetchone(
            """
            SELECT * FROM portfolios WHERE user_id = ?
            ORDER BY created_at ASC, id ASC LIMIT 1;
            """,
            (user_id,),
        )
        if row is None:
            return None
        return Portfolio(id=row["id"], user_id=row["user_id"], name=row["name"])

    # ── Asset classes ─────────────────────────────────────────────────────────

    def upsert_asset_class(self, asset_class: AssetClass) -> None:
        self.execute(
            """
            INSERT INTO asset_classes (id, user_id, name, target_min, target_max, min_allocation_value)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name                 = excluded.name,
                target_min           = excluded.target_min,
                target_max           = excluded.target_max,
                min_allocation_value = excluded.min_allocation_value;
            """,
            (
                asset_class.id,
                asset_class.user_id,
                asset_class.name,
                asset_class.target_min,
                asset_class.target_max,
                asset_class.min_allocation_value,
            ),
        )

    def get_asset_classes(self, user_id: str) -> list[AssetClass]:
        rows = self.fetchall(
            "SELECT * FROM asset_classes WHERE user_id = ? ORDER BY name, id;", (user_id,)
        )
        return [
            AssetClass(
                id=r["id"],
                user_id=r["user_id"],
                name=r["name"],
                target_min=r["target_min"],
                target_max=r["target_max"],
                min_allocation_value=r["min_allocation_value"],
            )
            for r in rows
        ]

    # ── Holdings ──────────────────────────────────────────────────────────────

    def upsert_holding(self, holding: Holding) -> None:
        self.execute(
            """
            INSERT INTO portfolio_assets (
                id, portfolio_id, symbol, name, quantity, purchase_price,
                currency, asset_class_id, is_ignored
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                quantity       = excluded.quantity,
                purchase_price = excluded.purchase_price,
                asset_class_id = excluded.asset_class_id,
                is_ignored     = excluded.is_ignored,
                updated_at     = strftime('%Y-%m-%dT%H:%M:%SZ', 'now');
            """,
            (
                holding.id,
                holding.portfolio_id,
                holding.symbol,
                holding.name,
                holding.quantity,
                holding.purchase_price,
                holding.currency,
                holding.asset_class_id,
                int(holding.is_ignored),
            ),
        )

    def get_holdings(self, portfolio_id: str, include_ignored: bool = False) -> list[Holding]:
        sql = "SELECT * FROM portfolio_assets WHERE portfolio_id = ?"
        if not include_ignored:
            sql += " AND is_ignored = 0"
        rows = self.fetchall(sql + " ORDER BY symbol, id;", (portfolio_id,))
        return [_row_to_holding(r) for r in rows]

    def get_user_holdings(self, user_id: str) -> list[Holding]:
        """Non-ignored holdings across every portfolio the user owns."""
        rows = self.fetchall(
            """
            SELECT pa.* FROM portfolio_assets pa
            JOIN portfolios p ON p.id = pa.portfolio_id
            WHERE p.user_id = ? AND pa.is_ignored = 0
            ORDER BY pa.symbol, pa.id;
            """,
            (user_id,),
        )
        return [_row_to_holding(r) for r in rows]

    def get_symbols_for_users(self, user_ids: list[str]) -> list[str]:
        """Distinct symbols held or watched by ``user_ids``, sorted."""
        if not user_ids:
            return []
        rows = self.fetchall(
            f"""
            SELECT DISTINCT pa.symbol FROM portfolio_assets pa
            JOIN portfolios p ON p.id = pa.portfolio_id
            WHERE p.user_id IN ({self.placeholders(len(user_ids))}) AND pa.is_ignored = 0
            ORDER BY pa.symbol;
            """,
            tuple(user_ids),
        )
        return [r["symbol"] for r in rows]

    def get_currencies(self) -> list[str]:
        """Every currency the job may need a rate for: base and holding currencies."""
        rows = self.fetchall(
            """
            SELECT base_currency AS currency FROM users WHERE is_active = 1
            UNION
            SELECT currency FROM portfolio_assets WHERE is_ignored = 0
            ORDER BY currency;
            """
        )
        return [r["currency"] for r in rows]

    # ── Criteria ──────────────────────────────────────────────────────────────

    def insert_criteria_version(self, version: CriteriaVersion) -> None:
        self.execute(
            """
            INSERT INTO criteria_versions (id, user_id, name, version, criteria, is_active)
            VALUES (?, ?, ?, ?, ?, ?);
            """,
            (
                version.id,
                version.user_id,
                version.name,
                version.version,
                _dumps([c.model_dump(mode="json") for c in version.criteria]),
                int(version.is_active),
            ),
        )

    def get_active_criteria(self, user_id: str) -> Optional[CriteriaVersion]:
        """Latest active criteria version for the user, or ``None``."""
        row = self.fetchone(
            """
            SELECT * FROM criteria_versions
            WHERE user_id = ? AND is_active = 1
            ORDER BY version DESC, created_at DESC LIMIT 1;
            """,
            (user_id,),
        )
        if row is None:
            return None
        return CriteriaVersion(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            version=row["version"],
            criteria=[CriterionRule.model_validate(c) for c in _loads(row["criteria"], [])],
            is_active=bool(row["is_active"]),
            created_at=parse_iso(row["created_at"]),
        )

    # ── Investments ───────────────────────────────────────────────────────────

    def record_investment(self, investment: Investment) -> Decimal:
        """Insert an investment and add its quantity to the holding, atomically.

        Returns:
            The holding's new quantity.

        Raises:
            ValueError: If the holding does not exist or the quantity is invalid.
        """
        quantity = to_decimal(investment.quantity)
        if quantity is None or quantity <= 0:
            raise ValueError(f"Invalid investment quantity: {investment.quantity!r}")

        with atomic(self.conn):
            row = self.fetchone(
                "SELECT quantity FROM portfolio_assets WHERE id = ? AND portfolio_id = ?;",
                (investment.asset_id, investment.portfolio_id),
            )
            if row is None:
                raise ValueError(
                    f"Holding {investment.asset_id} not found in portfolio {investment.portfolio_id}."
                )
            current = to_decimal(row["quantity"]) or Decimal(0)
            new_quantity = add(current, quantity)

            self.execute(
                """
                INSERT INTO investments (
                    id, user_id, portfolio_id, asset_id, symbol, quantity,
                    price_per_unit, currency, total_amount, recommendation_id, invested_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    investment.id,
                    investment.user_id,
                    investment.portfolio_id,
                    investment.asset_id,
                    investment.symbol,
                    investment.quantity,
                    investment.price_per_unit,
                    investment.currency,
                    investment.total_amount,
                    investment.recommendation_id,
                    to_iso(investment.invested_at or utcnow()),
                ),
            )
            self.execute(
                """
                UPDATE portfolio_assets
                SET quantity = ?, updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now')
                WHERE id = ?;
                """,
                (str(new_quantity), investment.asset_id),
            )
        return new_quantity


# ── Row mappers ───────────────────────────────────────────────────────────────

def _row_to_holding(row: sqlite3.Row) -> Holding:
    return Holding(
        id=row["id"],
        portfolio_id=row["portfolio_id"],
        symbol=row["symbol"],
        name=row["name"],
        quantity=row["quantity"],
        purchase_price=row["purchase_price"],
        currency=row["currency"],
        asset_class_id=row["asset_class_id"],
        is_ignored=bool(row["is_ignored"]),
    )
