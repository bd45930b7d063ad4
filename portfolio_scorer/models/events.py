"""
Calculation events and their typed payloads.

Events are immutable once appended. Corrections are new events, never
updates. Every nightly calculation for one user produces, in order:

    CALC_STARTED → INPUTS_CAPTURED → SCORES_COMPUTED → CALC_COMPLETED

``INPUTS_CAPTURED`` holds the exact snapshot (criteria, prices, rates,
fundamentals, asset list) so the calculation can be replayed later.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from portfolio_scorer.models.scoring import (
    AssetFundamentals,
    AssetScoreResult,
    CriterionRule,
    PriceQuote,
    ScoringAsset,
)

VALID_COMPLETION_STATUSES = frozenset({"success", "partial", "failed"})
VALID_REFRESH_TYPES = frozenset({"prices", "exchange_rates", "fundamentals"})


class EventType(str, Enum):
    CALC_STARTED         = "CALC_STARTED"
    INPUTS_CAPTURED      = "INPUTS_CAPTURED"
    SCORES_COMPUTED      = "SCORES_COMPUTED"
    CALC_COMPLETED       = "CALC_COMPLETED"
    INVESTMENT_RECORDED  = "INVESTMENT_RECORDED"
    INVESTMENT_CONFIRMED = "INVESTMENT_CONFIRMED"
    DATA_REFRESHED       = "DATA_REFRESHED"


# ── Payloads ──────────────────────────────────────────────────────────────────


class CalcStartedPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    correlation_id: str
    user_id: str
    timestamp: datetime
    market: str = "batch"


class InputsCapturedPayload(BaseModel):
    """Everything the scoring engine read for one calculation."""

    model_config = ConfigDict(frozen=True)

    criteria_version_id: str
    criteria: list[CriterionRule]
    assets: list[ScoringAsset]
    prices: list[PriceQuote] = Field(default_factory=list)
    exchange_rates: dict[str, str] = Field(default_factory=dict)
    fundamentals: list[AssetFundamentals] = Field(default_factory=list)
    as_of: datetime

    @property
    def asset_ids(self) -> list[str]:
        return [a.asset_id for a in self.assets]


class ScoresComputedPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    results: list[AssetScoreResult]


class CalcCompletedPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    duration_ms: int
    asset_count: int
    status: str
    error_message: Optional[str] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in VALID_COMPLETION_STATUSES:
            raise ValueError(
                f"Unknown status '{v}'. Must be one of {sorted(VALID_COMPLETION_STATUSES)}."
            )
        return v


class InvestmentRecordedPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    investment_id: str
    asset_id: str
    symbol: str
    quantity: str
    price_per_unit: str
    currency: str
    total_amount: str


class InvestmentConfirmedPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    recommendation_id: Optional[str] = None
    investment_ids: list[str]
    total_amount: str


class DataRefreshedPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    data_type: str
    symbols: list[str] = Field(default_factory=list)
    source: str
    refreshed_at: datetime

    @field_validator("data_type")
    @classmethod
    def validate_data_type(cls, v: str) -> str:
        if v not in VALID_REFRESH_TYPES:
            raise ValueError(
                f"Unknown data_type '{v}'. Must be one of {sorted(VALID_REFRESH_TYPES)}."
            )
        return v


PAYLOAD_TYPES: dict[EventType, type[BaseModel]] = {
    EventType.CALC_STARTED:         CalcStartedPayload,
    EventType.INPUTS_CAPTURED:      InputsCapturedPayload,
    EventType.SCORES_COMPUTED:      ScoresComputedPayload,
    EventType.CALC_COMPLETED:       CalcCompletedPayload,
    EventType.INVESTMENT_RECORDED:  InvestmentRecordedPayload,
    EventType.INVESTMENT_CONFIRMED: InvestmentConfirmedPayload,
    EventType.DATA_REFRESHED:       DataRefreshedPayload,
}


# ── Event envelope ────────────────────────────────────────────────────────────


class CalculationEvent(BaseModel):
    """One immutable record in the calculation event log.

    Attributes:
        id: Auto-assigned DB PK; ``None`` before append.
        correlation_id: Ties together all events of one calculation.
        user_id: Owner of the calculation.
        event_type: Which payload variant ``payload`` holds.
        payload: JSON-compatible payload dict.
        created_at: Append time (UTC); ``None`` before append.
    """

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    correlation_id: str
    user_id: str
    event_type: EventType
    payload: dict[str, Any]
    created_at: Optional[datetime] = None

    @classmethod
    def build(
        cls,
        correlation_id: str,
        user_id: str,
        payload: BaseModel,
    ) -> "CalculationEvent":
        """Build an unsaved event from a typed payload model."""
        for event_type, payload_cls in PAYLOAD_TYPES.items():
            if isinstance(payload, payload_cls):
                return cls(
                    correlation_id=correlation_id,
                    user_id=user_id,
                    event_type=event_type,
                    payload=payload.model_dump(mode="json"),
                )
        raise TypeError(f"Unsupported payload type: {type(payload).__name__}")

    def typed_payload(self) -> BaseModel:
        """Parse ``payload`` into the model for ``event_type``."""
        return PAYLOAD_TYPES[self.event_type].model_validate(self.payload)
