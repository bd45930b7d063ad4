"""
Portfolio domain records read by the nightly job.

These tables are owned by the CRUD side of the product; the pipeline only
reads them (plus the atomic investment write in ``PortfolioRepository``).
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from portfolio_scorer.models.scoring import CriterionRule


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: Optional[str] = None
    base_currency: str = "USD"
    default_contribution: str = "0"
    is_active: bool = True


class Portfolio(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    name: str = "Portfolio"


class AssetClass(BaseModel):
    """User-defined asset class with an optional target allocation range (%)."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    name: str
    target_min: Optional[str] = None
    target_max: Optional[str] = None
    min_allocation_value: Optional[str] = None

    @property
    def has_target_range(self) -> bool:
        return self.target_min is not None and self.target_max is not None


class Holding(BaseModel):
    """A row of ``portfolio_assets``.

    A holding with quantity ``"0"`` is a watched asset: it is scored but
    counts as not held for opportunity detection.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    portfolio_id: str
    symbol: str
    name: Optional[str] = None
    quantity: str = "0"
    purchase_price: str = "0"
    currency: str = "USD"
    asset_class_id: Optional[str] = None
    is_ignored: bool = False


class CriteriaVersion(BaseModel):
    """An immutable version of a user's criteria set."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    name: str = "Default"
    version: int = 1
    criteria: list[CriterionRule] = Field(default_factory=list)
    is_active: bool = True
    created_at: Optional[datetime] = None


class Investment(BaseModel):
    """A confirmed purchase; recorded atomically with the holding update."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    portfolio_id: str
    asset_id: str
    symbol: str
    quantity: str
    price_per_unit: str
    currency: str
    total_amount: str
    recommendation_id: Optional[str] = None
    invested_at: Optional[datetime] = None
