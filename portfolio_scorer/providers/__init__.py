"""
Market data providers and the factory that wires them from config.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from portfolio_scorer.config import ProvidersConfig
from portfolio_scorer.errors import ProviderNotConfiguredError
from portfolio_scorer.providers.base import (
    ExchangeRateProvider,
    FundamentalsProvider,
    PriceProvider,
)
from portfolio_scorer.providers.http_client import (
    fundamentals_provider_from_config,
    price_provider_from_config,
    rate_provider_from_config,
)


@dataclass
class Providers:
    prices:       Optional[PriceProvider] = None
    rates:        Optional[ExchangeRateProvider] = None
    fundamentals: Optional[FundamentalsProvider] = None


def build_providers(config: ProvidersConfig) -> Providers:
    """Build HTTP providers for every configured URL.

    Raises:
        ProviderNotConfiguredError: In production, when the rate or price
            provider is missing.
    """
    providers = Providers(
        prices=price_provider_from_config(config),
        rates=rate_provider_from_config(config),
        fundamentals=fundamentals_provider_from_config(config),
    )
    if config.is_production:
        validate_providers(providers)
    return providers


def validate_providers(providers: Providers) -> None:
    if providers.rates is None:
        raise ProviderNotConfiguredError(
            "Exchange rate provider not configured. Set providers.rates_api_url "
            "before running in production."
        )
    if providers.prices is None:
        raise ProviderNotConfiguredError(
            "Price provider not configured. Set providers.price_api_url "
            "before running in production."
        )
