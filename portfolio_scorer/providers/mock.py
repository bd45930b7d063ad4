"""
Development stand-ins used when no real provider is configured.
"""

from __future__ import annotations

import logging

from portfolio_scorer.models.scoring import ExchangeRates
from portfolio_scorer.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


class MockExchangeRateProvider:
    """Every target currency at a rate of exactly "1.0"."""

    SOURCE = "mock"

    def get_rates(self, base: str, targets: list[str]) -> ExchangeRates:
        logger.warning("Using mock exchange rates (1.0) for %d currencies", len(targets))
        return ExchangeRates(
            base=base,
            rates={cur: "1.0" for cur in sorted(set(targets)) if cur != base},
            fetched_at=utcnow(),
            source=self.SOURCE,
        )
