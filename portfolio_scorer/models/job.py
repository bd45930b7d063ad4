"""
Job run audit records and step checkpoints.

``JobRun`` is NOT frozen: ``status``, counters, ``metrics`` and
``completed_at`` are updated as the overnight job progresses.
``JobCheckpoint`` rows are written once per committed step and never
modified; a resumed run skips every step that already has one.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

VALID_JOB_TYPES = frozenset({"scoring", "recommendations", "cache-warm"})
VALID_JOB_STATUSES = frozenset({"started", "completed", "partial", "failed"})

JOB_STEPS: tuple[str, ...] = (
    "setup",
    "fetch-exchange-rates",
    "get-active-users",
    "fetch-asset-prices",
    "score-portfolios",
    "detect-opportunity-alerts",
    "detect-drift-alerts",
    "generate-recommendations",
    "warm-cache",
    "finalize",
)


class JobRun(BaseModel):
    """Overnight job audit record.

    Attributes:
        id: Auto-assigned DB PK; ``None`` before insertion.
        job_type: One of ``VALID_JOB_TYPES``.
        correlation_id: Run-level correlation id (per-user ids derive from it).
        status: ``started`` until finalize/failure.
        users_processed: Users that went through scoring.
        users_failed: Users with any recorded failure.
        metrics: Per-step timing and counters.
        error_details: Itemized errors ``{user_id, stage, message}``.
    """

    # Not frozen: updated as the job progresses
    model_config = ConfigDict(frozen=False)

    id: Optional[int] = None
    job_type: str = "scoring"
    correlation_id: str
    status: str = "started"
    users_processed: int = 0
    users_failed: int = 0
    metrics: dict[str, Any] = Field(default_factory=dict)
    error_details: list[dict[str, Any]] = Field(default_factory=list)
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None

    @field_validator("job_type")
    @classmethod
    def validate_job_type(cls, v: str) -> str:
        if v not in VALID_JOB_TYPES:
            raise ValueError(
                f"Unknown job_type '{v}'. Must be one of {sorted(VALID_JOB_TYPES)}."
            )
        return v

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in VALID_JOB_STATUSES:
            raise ValueError(
                f"Unknown status '{v}'. Must be one of {sorted(VALID_JOB_STATUSES)}."
            )
        return v


class JobCheckpoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_run_id: int
    step_name: str
    result: Any = None
    committed_at: Optional[datetime] = None

    @field_validator("step_name")
    @classmethod
    def validate_step(cls, v: str) -> str:
        if v not in JOB_STEPS:
            raise ValueError(f"Unknown step '{v}'. Must be one of {list(JOB_STEPS)}.")
        return v
