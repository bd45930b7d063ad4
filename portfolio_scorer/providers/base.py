"""
Market data provider interfaces.

The nightly job calls each provider once per run. Implementations must
return decimal strings for every price, rate and metric, and must bound
every network call with a timeout.
"""

from __future__ import annotations

from typing import Protocol

from portfolio_scorer.models.scoring import AssetFundamentals, ExchangeRates, PriceQuote


class PriceProvider(Protocol):
    def get_prices(self, symbols: list[str]) -> list[PriceQuote]: ...


class ExchangeRateProvider(Protocol):
    def get_rates(self, base: str, targets: list[str]) -> ExchangeRates: ...


class FundamentalsProvider(Protocol):
    def get_fundamentals(self, symbols: list[str]) -> list[AssetFundamentals]: ...
