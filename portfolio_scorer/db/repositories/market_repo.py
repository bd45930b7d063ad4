"""
Repository for the shared market snapshot: fundamentals, prices and
exchange rates.

The overnight job fetches these once per run and writes them here; the
scoring services read fundamentals back per batch.
"""

from __future__ import annotations

import logging

from portfolio_scorer.db.repositories.base import BaseRepository, _dumps, _loads
from portfolio_scorer.models.scoring import AssetFundamentals, ExchangeRates, PriceQuote
from portfolio_scorer.utils.time_utils import parse_iso, to_iso

logger = logging.getLogger(__name__)


class MarketDataRepository(BaseRepository):
    """Upsert and read market snapshot rows."""

    def upsert_fundamentals(self, records: list[AssetFundamentals]) -> int:
        self.executemany(
            """
            INSERT INTO asset_fundamentals (symbol, metrics, source, fetched_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(symbol) DO UPDATE SET
                metrics    = excluded.metrics,
                source     = excluded.source,
                fetched_at = excluded.fetched_at;
            """,
            [(f.symbol, _dumps(f.metrics), f.source, to_iso(f.fetched_at)) for f in records],
        )
        return len(records)

    def get_fundamentals(self, symbols: list[str]) -> dict[str, AssetFundamentals]:
        """Fundamentals keyed by symbol. Symbols without a row are absent."""
        if not symbols:
            return {}
        rows = self.fetchall(
            f"""
            SELECT * FROM asset_fundamentals
            WHERE symbol IN ({self.placeholders(len(symbols))})
            ORDER BY symbol;
            """,
            tuple(symbols),
        )
        return {
            r["symbol"]: AssetFundamentals(
                symbol=r["symbol"],
                metrics=_loads(r["metrics"], {}),
                source=r["source"],
                fetched_at=parse_iso(r["fetched_at"]),
            )
            for r in rows
        }

    def upsert_prices(self, quotes: list[PriceQuote]) -> int:
        self.executemany(
            """
            INSERT INTO asset_prices (symbol, price, currency, source, fetched_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(symbol) DO UPDATE SET
                price      = excluded.price,
                currency   = excluded.currency,
                source     = excluded.source,
                fetched_at = excluded.fetched_at;
            """,
            [(q.symbol, q.price, q.currency, q.source, to_iso(q.fetched_at)) for q in quotes],
        )
        return len(quotes)

    def upsert_rates(self, rates: ExchangeRates) -> int:
        self.executemany(
            """
            INSERT INTO exchange_rates (base, target, rate, source, fetched_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(base, target) DO UPDATE SET
                rate       = excluded.rate,
                source     = excluded.source,
                fetched_at = excluded.fetched_at;
            """,
            [
                (rates.base, target, rate, rates.source, to_iso(rates.fetched_at))
                for target, rate in sorted(rates.rates.items())
            ],
        )
        return len(rates.rates)
