"""
Scoring inputs and outputs.

Decimal quantities (prices, rates, metric values, scores) are carried as
strings so that a model round-tripped through JSON (event payloads,
checkpoints) is byte-identical to the original. Arithmetic happens in
``scoring.engine`` on ``decimal.Decimal`` values parsed from these strings.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

VALID_OPERATORS = frozenset({"gt", "gte", "lt", "lte", "eq", "equals", "between", "exists"})
VALID_SKIP_REASONS = frozenset({"missing_fundamental", "data_stale"})


class CriterionRule(BaseModel):
    """One scoring rule from a versioned criteria set.

    Attributes:
        id: Stable criterion identifier within the criteria version.
        name: Human-readable label, e.g. ``"P/E below 20"``.
        metric: Fundamentals key the operator is evaluated against.
        operator: One of ``VALID_OPERATORS``.
        value: Threshold (decimal string); unused for ``exists``.
        value2: Upper bound for ``between``.
        points: Signed points awarded on match.
        required_fundamentals: Inputs that must be present. Defaults to
            ``[metric]`` when left empty.
        asset_class_ids: Classes this rule applies to; empty means all.
        requires_fresh_data: Skip with ``data_stale`` when inputs are stale.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    metric: str
    operator: str
    value: Optional[str] = None
    value2: Optional[str] = None
    points: int
    required_fundamentals: list[str] = Field(default_factory=list)
    asset_class_ids: list[str] = Field(default_factory=list)
    requires_fresh_data: bool = False

    @field_validator("operator")
    @classmethod
    def validate_operator(cls, v: str) -> str:
        if v not in VALID_OPERATORS:
            raise ValueError(
                f"Unknown operator '{v}'. Must be one of {sorted(VALID_OPERATORS)}."
            )
        return v

    @model_validator(mode="after")
    def default_required_fundamentals(self) -> "CriterionRule":
        if not self.required_fundamentals:
            object.__setattr__(self, "required_fundamentals", [self.metric])
        return self

    def applies_to(self, asset_class_id: Optional[str]) -> bool:
        return not self.asset_class_ids or asset_class_id in self.asset_class_ids


class AssetFundamentals(BaseModel):
    """Fundamental ratios for one symbol, tagged with source and freshness."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    metrics: dict[str, Optional[str]] = Field(default_factory=dict)
    source: str = "unknown"
    fetched_at: datetime
    is_stale: bool = False


class PriceQuote(BaseModel):
    """Latest price for one symbol."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    price: str
    currency: str
    fetched_at: datetime
    source: str = "unknown"


class ExchangeRates(BaseModel):
    """Rates from ``base`` into each target currency, as decimal strings."""

    model_config = ConfigDict(frozen=True)

    base: str
    rates: dict[str, str] = Field(default_factory=dict)
    fetched_at: datetime
    source: str = "unknown"

    def as_pairs(self) -> dict[str, str]:
        """Return rates keyed by pair, e.g. ``{"USD_BRL": "5.12"}``."""
        return {f"{self.base}_{cur}": rate for cur, rate in sorted(self.rates.items())}


class ScoringAsset(BaseModel):
    """An asset handed to the scoring engine."""

    model_config = ConfigDict(frozen=True)

    asset_id: str
    symbol: str
    asset_class_id: Optional[str] = None


class CriterionResult(BaseModel):
    """Outcome of evaluating one criterion against one asset."""

    model_config = ConfigDict(frozen=True)

    criterion_id: str
    criterion_name: str = ""
    matched: bool
    points_awarded: int
    actual_value: Optional[str] = None
    skipped_reason: Optional[str] = None

    @field_validator("skipped_reason")
    @classmethod
    def validate_skipped_reason(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in VALID_SKIP_REASONS:
            raise ValueError(
                f"Unknown skipped_reason '{v}'. Must be one of {sorted(VALID_SKIP_REASONS)}."
            )
        return v


class AssetScoreResult(BaseModel):
    """Score for one asset: fixed-precision strings plus per-criterion breakdown."""

    model_config = ConfigDict(frozen=True)

    asset_id: str
    symbol: str
    score: str
    max_possible_score: str
    percentage: str
    breakdown: list[CriterionResult] = Field(default_factory=list)
