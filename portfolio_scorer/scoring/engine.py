"""
Deterministic scoring engine.

Formula
-------
For each asset, criteria are evaluated in stored order::

    awarded_i = points_i  if operator_i(actual_i, threshold_i) else 0
    score     = Σ awarded_i
    max       = Σ |points_i|          over criteria that were not skipped
    pct       = score / max × 100     ("0" when max == 0)

A criterion is skipped (zero points, excluded from ``max``) when one of
its required inputs is missing (``missing_fundamental``) or when it
demands fresh data and the fundamentals are stale (``data_stale``).

All arithmetic uses ``decimal.Decimal`` under ``DECIMAL_CONTEXT``, and
results are serialized with 4 decimal places, so two runs over the same
inputs produce byte-identical strings. The engine does no I/O.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from portfolio_scorer.models.scoring import (
    AssetFundamentals,
    AssetScoreResult,
    CriterionResult,
    CriterionRule,
    ScoringAsset,
)
from portfolio_scorer.utils.decimals import (
    DECIMAL_CONTEXT,
    HUNDRED,
    ZERO,
    add,
    divide,
    fmt_percent,
    fmt_score,
    multiply,
    to_decimal,
)

logger = logging.getLogger(__name__)

SKIP_MISSING = "missing_fundamental"
SKIP_STALE = "data_stale"


# ── Operators ─────────────────────────────────────────────────────────────────

def evaluate_operator(
    operator: str,
    actual: Optional[Decimal],
    value: Optional[str],
    value2: Optional[str] = None,
) -> bool:
    """Evaluate one comparison with exact decimal semantics.

    Unparseable thresholds never match.
    """
    if operator == "exists":
        return actual is not None
    if actual is None:
        return False

    threshold = to_decimal(value)
    if threshold is None:
        return False

    if operator == "gt":
        return DECIMAL_CONTEXT.compare(actual, threshold) > 0
    if operator == "gte":
        return DECIMAL_CONTEXT.compare(actual, threshold) >= 0
    if operator == "lt":
        return DECIMAL_CONTEXT.compare(actual, threshold) < 0
    if operator == "lte":
        return DECIMAL_CONTEXT.compare(actual, threshold) <= 0
    if operator in ("eq", "equals"):
        return DECIMAL_CONTEXT.compare(actual, threshold) == 0
    if operator == "between":
        upper = to_decimal(value2)
        if upper is None:
            return False
        return threshold <= actual <= upper
    return False


# ── Single criterion ──────────────────────────────────────────────────────────

def evaluate_criterion(
    rule: CriterionRule,
    fundamentals: Optional[AssetFundamentals],
) -> CriterionResult:
    metrics = fundamentals.metrics if fundamentals is not None else {}

    for required in rule.required_fundamentals:
        if to_decimal(metrics.get(required)) is None:
            return CriterionResult(
                criterion_id=rule.id,
                criterion_name=rule.name,
                matched=False,
                points_awarded=0,
                actual_value=None,
                skipped_reason=SKIP_MISSING,
            )

    actual = to_decimal(metrics.get(rule.metric))
    actual_str = metrics.get(rule.metric) if actual is not None else None

    if rule.requires_fresh_data and fundamentals is not None and fundamentals.is_stale:
        return CriterionResult(
            criterion_id=rule.id,
            criterion_name=rule.name,
            matched=False,
            points_awarded=0,
            actual_value=actual_str,
            skipped_reason=SKIP_STALE,
        )

    matched = evaluate_operator(rule.operator, actual, rule.value, rule.value2)
    return CriterionResult(
        criterion_id=rule.id,
        criterion_name=rule.name,
        matched=matched,
        points_awarded=rule.points if matched else 0,
        actual_value=actual_str,
        skipped_reason=None,
    )


# ── Asset scoring ─────────────────────────────────────────────────────────────

def score_asset(
    asset: ScoringAsset,
    criteria: list[CriterionRule],
    fundamentals: Optional[AssetFundamentals],
) -> AssetScoreResult:
    """Score one asset against the criteria that apply to its class."""
    breakdown: list[CriterionResult] = []
    score = ZERO
    max_possible = ZERO

    for rule in criteria:
        if not rule.applies_to(asset.asset_class_id):
            continue
        result = evaluate_criterion(rule, fundamentals)
        breakdown.append(result)
        if result.skipped_reason is not None:
            continue
        score = add(score, Decimal(result.points_awarded))
        max_possible = add(max_possible, abs(Decimal(rule.points)))

    if max_possible.is_zero():
        percentage = "0"
    else:
        percentage = fmt_percent(multiply(divide(score, max_possible), HUNDRED))

    return AssetScoreResult(
        asset_id=asset.asset_id,
        symbol=asset.symbol,
        score=fmt_score(score),
        max_possible_score=fmt_score(max_possible),
        percentage=percentage,
        breakdown=breakdown,
    )


def score_assets(
    assets: list[ScoringAsset],
    criteria: list[CriterionRule],
    fundamentals: dict[str, AssetFundamentals],
) -> list[AssetScoreResult]:
    """Score every asset, preserving input order.

    Args:
        assets: Assets to score.
        criteria: Criteria in stored order.
        fundamentals: Fundamentals keyed by symbol; absent symbols make
            every criterion that needs inputs skip as ``missing_fundamental``.

    Returns:
        One ``AssetScoreResult`` per asset.
    """
    results = [score_asset(a, criteria, fundamentals.get(a.symbol)) for a in assets]
    logger.debug("Scored %d assets against %d criteria", len(results), len(criteria))
    return results
