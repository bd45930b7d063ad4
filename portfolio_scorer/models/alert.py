"""
Alert and alert preference models.

Only one non-dismissed alert may exist per (user, type, subject key). The
subject key is ``"{current_asset_id}:{better_asset_id}"`` for opportunity
alerts and the asset class id for drift alerts.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

VALID_ALERT_FREQUENCIES = frozenset({"realtime", "daily", "weekly"})

MIN_DRIFT_THRESHOLD = Decimal("0.01")
MAX_DRIFT_THRESHOLD = Decimal("50")


class AlertType(str, Enum):
    OPPORTUNITY      = "opportunity"
    ALLOCATION_DRIFT = "allocation_drift"
    SYSTEM           = "system"


class AlertSeverity(str, Enum):
    INFO     = "info"
    WARNING  = "warning"
    CRITICAL = "critical"


class Alert(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    user_id: str
    type: AlertType
    severity: AlertSeverity = AlertSeverity.INFO
    subject_key: str
    title: str
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    is_dismissed: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    dismissed_at: Optional[datetime] = None


class AlertPreferences(BaseModel):
    """Per-user alert switches. Defaults apply until the user changes them."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    opportunity_alerts_enabled: bool = True
    drift_alerts_enabled: bool = True
    drift_threshold: str = "5.00"
    alert_frequency: str = "daily"
    email_notifications: bool = False

    @field_validator("drift_threshold")
    @classmethod
    def validate_drift_threshold(cls, v: str) -> str:
        try:
            threshold = Decimal(v)
        except InvalidOperation as exc:
            raise ValueError(f"drift_threshold must be a decimal string, got '{v}'.") from exc
        if not MIN_DRIFT_THRESHOLD <= threshold <= MAX_DRIFT_THRESHOLD:
            raise ValueError(
                f"drift_threshold must be within {MIN_DRIFT_THRESHOLD}-{MAX_DRIFT_THRESHOLD}, got {v}."
            )
        return f"{threshold:.2f}"

    @field_validator("alert_frequency")
    @classmethod
    def validate_frequency(cls, v: str) -> str:
        if v not in VALID_ALERT_FREQUENCIES:
            raise ValueError(
                f"Unknown alert_frequency '{v}'. Must be one of {sorted(VALID_ALERT_FREQUENCIES)}."
            )
        return v
