"""
Scoring engine: deterministic per-asset scores from criteria rules and
fundamentals. Pure functions over Decimal; see ``engine``.
"""
