"""
Capital allocation across scored assets.

Pure functions only: no DB access, no clock. Given each asset's score and
its class's allocation context, distribute ``total_investable`` so that:

  - assets in over-allocated (or unclassified) classes get exactly "0.00";
  - remaining capital goes proportionally to positive priority, or is split
    equally when no asset has positive priority;
  - per-class minimum amounts are enforced by moving undersized amounts to
    the highest-priority asset that can take them;
  - amounts are rounded to cents and the rounding remainder lands on the
    first funded asset, so the amounts sum to the total exactly.

Priority policies
-----------------
    gap_x_score   allocation_gap × score / 100   (default)
    score         score
    gap           allocation_gap

Ordering is priority descending, then symbol ascending.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from portfolio_scorer.models.portfolio import AssetClass, Holding
from portfolio_scorer.models.recommendation import AllocationGap, RecommendationItem
from portfolio_scorer.models.scoring import PriceQuote
from portfolio_scorer.utils.decimals import (
    HUNDRED,
    MONEY_PLACES,
    ZERO,
    add,
    divide,
    fmt_money,
    fmt_percent,
    fmt_score,
    multiply,
    quantize,
    subtract,
    to_decimal,
)

logger = logging.getLogger(__name__)

DEFAULT_POLICY = "gap_x_score"
TOTAL_TOLERANCE = Decimal("0.0001")
UNCLASSIFIED = "Unclassified"


@dataclass(frozen=True)
class AssetContext:
    """One scored asset with the allocation state of its class.

    Attributes:
        asset_id:           Holding id.
        symbol:             Ticker; secondary sort key.
        score:              Latest score (points).
        class_id:           Asset class id, ``None`` when unclassified.
        class_name:         Display name of the class.
        current_allocation: Class share of portfolio value (%).
        target_allocation:  Class target midpoint (%).
        allocation_gap:     ``target_allocation - current_allocation``.
        is_over_allocated:  Class above its target maximum, or unclassified.
        min_allocation:     Smallest non-zero amount this asset may receive.
        target_max:         Class target maximum (%), for explanations.
    """

    asset_id:           str
    symbol:             str
    score:              Decimal
    class_id:           Optional[str]
    class_name:         Optional[str]
    current_allocation: Decimal
    target_allocation:  Decimal
    allocation_gap:     Decimal
    is_over_allocated:  bool
    min_allocation:     Decimal = ZERO
    target_max:         Decimal = HUNDRED


# ── Valuation & gaps ──────────────────────────────────────────────────────────

def convert_to_base(
    amount: Decimal,
    currency: str,
    base_currency: str,
    exchange_rates: dict[str, str],
) -> Decimal:
    """Convert ``amount`` from ``currency`` into ``base_currency``.

    ``exchange_rates`` is pair-keyed: ``"USD_EUR": "0.92"`` means one USD
    buys 0.92 EUR. The inverse pair is used when the direct one is absent.
    With no usable rate the amount is returned unconverted.
    """
    if currency == base_currency:
        return amount
    direct = to_decimal(exchange_rates.get(f"{base_currency}_{currency}"))
    if direct is not None and direct > 0:
        return divide(amount, direct)
    inverse = to_decimal(exchange_rates.get(f"{currency}_{base_currency}"))
    if inverse is not None and inverse > 0:
        return multiply(amount, inverse)
    logger.warning("No %s/%s rate; valuing %s unconverted", base_currency, currency, currency)
    return amount


def value_holdings_by_class(
    holdings: list[Holding],
    prices: dict[str, PriceQuote],
    exchange_rates: dict[str, str],
    base_currency: str,
) -> dict[Optional[str], Decimal]:
    """Market value per asset class id in ``base_currency``.

    Each holding is valued at the run's price for its symbol, falling back
    to its purchase price when no quote exists.
    """
    values: dict[Optional[str], Decimal] = {}
    for h in holdings:
        if h.is_ignored:
            continue
        quantity = to_decimal(h.quantity) or ZERO
        quote = prices.get(h.symbol)
        if quote is not None and to_decimal(quote.price) is not None:
            price, currency = to_decimal(quote.price), quote.currency
        else:
            price, currency = to_decimal(h.purchase_price) or ZERO, h.currency
        value = convert_to_base(multiply(quantity, price), currency, base_currency, exchange_rates)
        values[h.asset_class_id] = add(values.get(h.asset_class_id, ZERO), value)
    return values


def target_midpoint(target_min: Optional[str], target_max: Optional[str]) -> Decimal:
    """Midpoint of [min, max] clamped to [0, 100]; missing bounds are 0 and 100."""
    low = to_decimal(target_min)
    high = to_decimal(target_max)
    low = ZERO if low is None else low
    high = HUNDRED if high is None else high
    mid = divide(add(low, high), Decimal(2))
    return max(ZERO, min(HUNDRED, mid))


def compute_allocation_gaps(
    asset_classes: list[AssetClass],
    class_values: dict[Optional[str], Decimal],
) -> list[AllocationGap]:
    """One ``AllocationGap`` per asset class, ordered by class name."""
    total = ZERO
    for value in class_values.values():
        total = add(total, value)

    gaps: list[AllocationGap] = []
    for ac in sorted(asset_classes, key=lambda c: (c.name, c.id)):
        value = class_values.get(ac.id, ZERO)
        current = divide(multiply(value, HUNDRED), total) if total > 0 else ZERO
        mid = target_midpoint(ac.target_min, ac.target_max)
        high = to_decimal(ac.target_max)
        gaps.append(AllocationGap(
            class_id=ac.id,
            class_name=ac.name,
            current_value=fmt_money(value),
            current_allocation=fmt_percent(current),
            target_min=fmt_percent(to_decimal(ac.target_min) or ZERO),
            target_max=fmt_percent(HUNDRED if high is None else high),
            target_midpoint=fmt_percent(mid),
            gap=fmt_percent(subtract(mid, current)),
            is_over_allocated=high is not None and current > high,
        ))
    return gaps


# ── Priority ──────────────────────────────────────────────────────────────────

def calculate_priority(gap: Decimal, score: Decimal, policy: str = DEFAULT_POLICY) -> Decimal:
    """Priority weight of one asset under ``policy``.

    Raises:
        ValueError: Unknown policy name.
    """
    if policy == "gap_x_score":
        return multiply(gap, divide(score, HUNDRED))
    if policy == "score":
        return score
    if policy == "gap":
        return gap
    raise ValueError(f"Unknown priority policy '{policy}'.")


def sort_by_priority(
    assets: list[AssetContext],
    policy: str = DEFAULT_POLICY,
) -> list[tuple[AssetContext, Decimal]]:
    """Pair each asset with its priority (4 dp) and sort desc, symbol asc."""
    ranked = [
        (a, quantize(calculate_priority(a.allocation_gap, a.score, policy), 4))
        for a in assets
    ]
    ranked.sort(key=lambda pair: (-pair[1], pair[0].symbol, pair[0].asset_id))
    return ranked


# ── Distribution ──────────────────────────────────────────────────────────────

def distribute_capital(
    ranked: list[tuple[AssetContext, Decimal]],
    total_investable: Decimal,
) -> dict[str, tuple[Decimal, Decimal]]:
    """Split ``total_investable`` across ``ranked`` assets.

    Args:
        ranked:           Output of ``sort_by_priority``.
        total_investable: Capital to distribute.

    Returns:
        ``{asset_id: (amount, redistributed_in)}``. Amounts are at cent
        precision and sum to ``total_investable`` (rounded to cents)
        whenever at least one asset is eligible.
    """
    result = {a.asset_id: (ZERO, ZERO) for a, _ in ranked}
    total = quantize(total_investable, MONEY_PLACES)
    eligible = [(a, p) for a, p in ranked if not a.is_over_allocated]
    if total <= 0 or not eligible:
        return result

    positive_total = ZERO
    for _, p in eligible:
        if p > 0:
            positive_total = add(positive_total, p)

    amounts: dict[str, Decimal] = {}
    for a, p in eligible:
        if positive_total == 0:
            amounts[a.asset_id] = divide(total, Decimal(len(eligible)))
        elif p > 0:
            amounts[a.asset_id] = multiply(total, divide(p, positive_total))
        else:
            amounts[a.asset_id] = ZERO

    redistributed = {a.asset_id: ZERO for a, _ in eligible}
    pool = ZERO
    for _ in range(len(eligible) * 2):
        changed = False
        for a, _p in eligible:
            amount = amounts[a.asset_id]
            if amount > 0 and amount < a.min_allocation:
                pool = add(pool, amount)
                amounts[a.asset_id] = ZERO
                changed = True
        if pool > 0:
            recipient = next(
                (a for a, _p in eligible if amounts[a.asset_id] > 0 or pool >= a.min_allocation),
                eligible[0][0],
            )
            amounts[recipient.asset_id] = add(amounts[recipient.asset_id], pool)
            redistributed[recipient.asset_id] = add(redistributed[recipient.asset_id], pool)
            pool = ZERO
            changed = True
        if not changed:
            break

    rounded = {aid: quantize(v, MONEY_PLACES) for aid, v in amounts.items()}
    allocated = ZERO
    for v in rounded.values():
        allocated = add(allocated, v)
    remainder = subtract(total, allocated)
    if remainder != 0:
        first = next((a for a, _p in eligible if rounded[a.asset_id] > 0), eligible[0][0])
        rounded[first.asset_id] = add(rounded[first.asset_id], remainder)

    for a, _p in eligible:
        result[a.asset_id] = (rounded[a.asset_id], quantize(redistributed[a.asset_id], MONEY_PLACES))
    return result


def _pct(value: Decimal) -> str:
    return f"{quantize(value, 2):.2f}"


def explain(asset: AssetContext, priority: Decimal) -> str:
    """One-sentence reason for the amount an asset received."""
    name = asset.class_name or "This class"
    if asset.is_over_allocated:
        if asset.class_id is None:
            return f"{asset.symbol} has no asset class. No additional investment recommended."
        return (
            f"{name} is currently at {_pct(asset.current_allocation)}%, which exceeds "
            f"the target maximum of {_pct(asset.target_max)}%. "
            "No additional investment recommended."
        )
    return (
        f"{name} is at {_pct(asset.current_allocation)}% against a "
        f"{_pct(asset.target_allocation)}% target; score {_pct(asset.score)} "
        f"gives priority {fmt_percent(priority)}."
    )


def generate_recommendation_items(
    assets: list[AssetContext],
    total_investable: str,
    policy: str = DEFAULT_POLICY,
) -> list[RecommendationItem]:
    """Rank ``assets`` and attach a recommended amount to each.

    Args:
        assets:           Scored assets with class context.
        total_investable: Capital to distribute, as a decimal string.
        policy:           Priority policy name.

    Returns:
        Items in priority order with ``sort_order`` 0..n-1.
    """
    if not assets:
        return []
    total = to_decimal(total_investable) or ZERO
    ranked = sort_by_priority(assets, policy)
    amounts = distribute_capital(ranked, total)

    items: list[RecommendationItem] = []
    for index, (a, priority) in enumerate(ranked):
        amount, moved = amounts[a.asset_id]
        items.append(RecommendationItem(
            asset_id=a.asset_id,
            symbol=a.symbol,
            score=fmt_score(a.score),
            class_id=a.class_id,
            class_name=a.class_name,
            current_allocation=fmt_percent(a.current_allocation),
            target_allocation=fmt_percent(a.target_allocation),
            allocation_gap=fmt_percent(a.allocation_gap),
            priority=fmt_percent(priority),
            recommended_amount=fmt_money(ZERO if a.is_over_allocated else amount),
            redistributed_from=fmt_money(moved) if moved > 0 else None,
            is_over_allocated=a.is_over_allocated,
            explanation=explain(a, priority),
            sort_order=index,
        ))
    return items


def validate_total_equals(items: list[RecommendationItem], total_investable: str) -> bool:
    """True when the item amounts sum to ``total_investable`` within 0.0001."""
    total = ZERO
    for item in items:
        total = add(total, to_decimal(item.recommended_amount) or ZERO)
    expected = to_decimal(total_investable) or ZERO
    return abs(subtract(total, expected)) <= TOTAL_TOLERANCE


def verify_determinism(
    assets: list[AssetContext],
    total_investable: str,
    policy: str = DEFAULT_POLICY,
) -> bool:
    """Run the allocation twice and compare the serialized items."""
    first = generate_recommendation_items(assets, total_investable, policy)
    second = generate_recommendation_items(list(assets), total_investable, policy)
    return [i.model_dump_json() for i in first] == [i.model_dump_json() for i in second]
