"""
Generated recommendation snapshot.

A ``GeneratedRecommendation`` is produced once per user per run and is
never updated in place; the next run writes a new one. The audit trail
records which criteria version, rate snapshot and scoring correlation id
the amounts were derived from.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class AllocationGap(BaseModel):
    """Current vs. target allocation for one asset class (percentages)."""

    model_config = ConfigDict(frozen=True)

    class_id: Optional[str]
    class_name: str
    current_value: str
    current_allocation: str
    target_min: str
    target_max: str
    target_midpoint: str
    gap: str
    is_over_allocated: bool


class RecommendationItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    asset_id: str
    symbol: str
    score: str
    class_id: Optional[str] = None
    class_name: Optional[str] = None
    current_allocation: str
    target_allocation: str
    allocation_gap: str
    priority: str
    recommended_amount: str
    redistributed_from: Optional[str] = None
    is_over_allocated: bool = False
    explanation: Optional[str] = None
    sort_order: int = 0


class AuditTrail(BaseModel):
    model_config = ConfigDict(frozen=True)

    criteria_version_id: Optional[str] = None
    exchange_rates_snapshot: dict[str, str] = Field(default_factory=dict)
    scores_correlation_id: str
    prices_as_of: Optional[datetime] = None
    rates_as_of: Optional[datetime] = None


class GeneratedRecommendation(BaseModel):
    """Attributes:
        id: DB identifier assigned on save (``None`` before).
        correlation_id: Per-user id ``{run correlation}:rec:{user prefix}``.
        total_investable: Capital distributed across ``items`` (money string).
    """

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    user_id: str
    portfolio_id: str
    correlation_id: str
    generated_at: datetime
    total_investable: str
    base_currency: str
    items: list[RecommendationItem] = Field(default_factory=list)
    allocation_gaps: list[AllocationGap] = Field(default_factory=list)
    audit_trail: AuditTrail
