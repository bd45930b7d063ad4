"""
Decimal arithmetic helpers.

Scores, percentages and money are never binary floats. Every calculation
runs under ``DECIMAL_CONTEXT`` (20 significant digits, ROUND_HALF_UP) and
is serialized with a fixed number of places so that two recomputations
over identical inputs produce byte-identical strings.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Context, Decimal, InvalidOperation
from typing import Any, Optional

DECIMAL_CONTEXT = Context(prec=20, rounding=ROUND_HALF_UP)

SCORE_PLACES = 4
PERCENT_PLACES = 4
MONEY_PLACES = 2

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def to_decimal(value: Any) -> Optional[Decimal]:
    """Parse ``value`` into a finite ``Decimal``, or ``None`` if it cannot be.

    Floats are routed through ``str()`` so ``0.1`` becomes ``Decimal("0.1")``
    rather than its binary expansion. Booleans are rejected.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return parsed if parsed.is_finite() else None


def quantize(value: Decimal, places: int) -> Decimal:
    """Round ``value`` to ``places`` decimal places (ROUND_HALF_UP)."""
    exp = Decimal(1).scaleb(-places)
    return value.quantize(exp, rounding=ROUND_HALF_UP, context=DECIMAL_CONTEXT)


def fmt(value: Decimal, places: int) -> str:
    """Format ``value`` as a fixed-point string with ``places`` decimals."""
    q = quantize(value, places)
    if q.is_zero():
        q = abs(q)  # never emit "-0.0000"
    return f"{q:.{places}f}"


def fmt_score(value: Decimal) -> str:
    return fmt(value, SCORE_PLACES)


def fmt_percent(value: Decimal) -> str:
    return fmt(value, PERCENT_PLACES)


def fmt_money(value: Decimal) -> str:
    return fmt(value, MONEY_PLACES)


def divide(numerator: Decimal, denominator: Decimal) -> Decimal:
    """Divide under the shared context. Caller guards zero denominators."""
    return DECIMAL_CONTEXT.divide(numerator, denominator)


def multiply(a: Decimal, b: Decimal) -> Decimal:
    return DECIMAL_CONTEXT.multiply(a, b)


def add(a: Decimal, b: Decimal) -> Decimal:
    return DECIMAL_CONTEXT.add(a, b)


def subtract(a: Decimal, b: Decimal) -> Decimal:
    return DECIMAL_CONTEXT.subtract(a, b)


def to_decimal_or(value: Any, default: Decimal) -> Decimal:
    """``to_decimal(value)``, falling back to ``default`` only when unparseable.

    ``Decimal("0")`` is falsy, so ``to_decimal(v) or default`` would turn a
    stored "0" into ``default``.
    """
    parsed = to_decimal(value)
    return default if parsed is None else parsed
