"""
Replay and determinism verification.

``ReplayVerifier.replay(correlation_id)`` reloads one calculation's events,
re-runs the scoring engine on the captured inputs and compares the
result with what was recorded, asset by asset. Score, maximum and
percentage are compared as strings, so a replay only matches when it is
byte-identical.

Discrepancy records:
  - ``{"asset_id": "_length_mismatch", "original_count", "replay_count"}``
  - ``{"asset_id", "field", "original_score", "replay_score"}``, where
    ``replay_score`` is ``"_missing"`` if the replay produced no result
    for that asset.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Optional

from portfolio_scorer.events.store import EventStore
from portfolio_scorer.models.events import EventType, InputsCapturedPayload, ScoresComputedPayload
from portfolio_scorer.models.scoring import AssetScoreResult
from portfolio_scorer.scoring.engine import score_assets

logger = logging.getLogger(__name__)

LENGTH_MISMATCH = "_length_mismatch"
MISSING = "_missing"
_COMPARED_FIELDS = ("score", "max_possible_score", "percentage")


@dataclass
class ReplayResult:
    success:          bool
    correlation_id:   str
    original_results: list[AssetScoreResult] = field(default_factory=list)
    replay_results:   list[AssetScoreResult] = field(default_factory=list)
    matches:          bool = False
    discrepancies:    list[dict[str, Any]] = field(default_factory=list)
    error:            Optional[str] = None


def compare_results(
    original: list[AssetScoreResult],
    replayed: list[AssetScoreResult],
) -> list[dict[str, Any]]:
    """Per-asset string comparison of recorded vs. replayed results."""
    discrepancies: list[dict[str, Any]] = []
    if len(original) != len(replayed):
        discrepancies.append({
            "asset_id": LENGTH_MISMATCH,
            "original_count": len(original),
            "replay_count": len(replayed),
        })

    by_id = {r.asset_id: r for r in replayed}
    for orig in original:
        rep = by_id.get(orig.asset_id)
        if rep is None:
            discrepancies.append({
                "asset_id": orig.asset_id,
                "field": "score",
                "original_score": orig.score,
                "replay_score": MISSING,
            })
            continue
        for name in _COMPARED_FIELDS:
            a, b = getattr(orig, name), getattr(rep, name)
            if a != b:
                discrepancies.append({
                    "asset_id": orig.asset_id,
                    "field": name,
                    "original_score": a,
                    "replay_score": b,
                })
    return discrepancies


class ReplayVerifier:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.events = EventStore(conn)

    def replay(self, correlation_id: str) -> ReplayResult:
        """Recompute one calculation from its INPUTS_CAPTURED event."""
        events = self.events.get_by_correlation_id(correlation_id)
        if not events:
            return ReplayResult(
                success=False,
                correlation_id=correlation_id,
                error=f"No events found for correlation ID: {correlation_id}",
            )

        inputs_event = next((e for e in events if e.event_type is EventType.INPUTS_CAPTURED), None)
        if inputs_event is None:
            return ReplayResult(False, correlation_id, error="INPUTS_CAPTURED event not found")
        scores_event = next((e for e in events if e.event_type is EventType.SCORES_COMPUTED), None)
        if scores_event is None:
            return ReplayResult(False, correlation_id, error="SCORES_COMPUTED event not found")

        inputs = InputsCapturedPayload.model_validate(inputs_event.payload)
        original = ScoresComputedPayload.model_validate(scores_event.payload).results
        replayed = score_assets(
            inputs.assets,
            inputs.criteria,
            {f.symbol: f for f in inputs.fundamentals},
        )
        discrepancies = compare_results(original, replayed)
        if discrepancies:
            logger.warning(
                "Replay mismatch for %s: %d discrepancy(ies)", correlation_id, len(discrepancies)
            )
        return ReplayResult(
            success=True,
            correlation_id=correlation_id,
            original_results=original,
            replay_results=replayed,
            matches=not discrepancies,
            discrepancies=discrepancies,
        )

    def verify(self, correlation_id: str) -> dict[str, Any]:
        """``{"verified": bool, "discrepancies": [...]}`` for one calculation."""
        result = self.replay(correlation_id)
        if not result.success:
            return {
                "verified": False,
                "discrepancies": [{"asset_id": None, "error": result.error}],
            }
        return {"verified": result.matches, "discrepancies": result.discrepancies}

    def replay_batch(self, correlation_ids: list[str]) -> dict[str, Any]:
        results = [self.replay(cid) for cid in correlation_ids]
        return {
            "total": len(results),
            "successful": sum(1 for r in results if r.success),
            "matching": sum(1 for r in results if r.success and r.matches),
            "results": results,
        }

    def recent_correlation_ids(self, user_id: str, limit: int = 10) -> list[str]:
        return self.events.repo.get_recent_correlation_ids(user_id, limit)
