"""
HTTP market data clients.

Wire formats (JSON, all numbers may be sent as strings or numbers; they
are normalized to decimal strings on the way in):

  Prices        GET {price_api_url}/quotes?symbols=AAPL,VOO
                → {"quotes": [{"symbol", "price", "currency", "timestamp"}]}
  Rates         GET {rates_api_url}/latest?base=USD&symbols=EUR,BRL
                → {"base": "USD", "rates": {"EUR": "0.92"}, "timestamp"}
  Fundamentals  GET {fundamentals_api_url}/fundamentals?symbols=AAPL
                → {"data": [{"symbol", "metrics": {...}, "as_of"}]}

Symbols are requested in chunks of ``CHUNK_SIZE``. Transport and status
errors surface as ``ProviderFailure``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, ClassVar, Optional

from portfolio_scorer.config import ProvidersConfig
from portfolio_scorer.errors import ProviderFailure
from portfolio_scorer.models.scoring import AssetFundamentals, ExchangeRates, PriceQuote
from portfolio_scorer.utils.decimals import to_decimal
from portfolio_scorer.utils.time_utils import parse_iso, utcnow

logger = logging.getLogger(__name__)

CHUNK_SIZE = 50


def _decimal_str(value: Any) -> Optional[str]:
    parsed = to_decimal(value)
    return str(parsed) if parsed is not None else None


def _timestamp(value: Any) -> datetime:
    if isinstance(value, str) and value:
        try:
            return parse_iso(value)
        except ValueError:
            logger.debug("Unparseable timestamp %r; using now", value)
    return utcnow()


def _chunks(items: list[str], size: int = CHUNK_SIZE) -> list[list[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class _HttpProvider:
    """Shared GET helper. ``transport`` is for tests (``httpx.MockTransport``)."""

    SOURCE: ClassVar[str] = "http"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_s: float = 30.0,
        transport: Optional[Any] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = timeout_s
        self.transport = transport

    def _get(self, path: str, params: dict[str, str]) -> dict[str, Any]:
        import httpx

        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            with httpx.Client(timeout=self.timeout_s, transport=self.transport) as client:
                resp = client.get(f"{self.base_url}{path}", params=params, headers=headers)
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPError as exc:
            raise ProviderFailure(f"{self.SOURCE} request to {path} failed: {exc}") from exc
        except ValueError as exc:
            raise ProviderFailure(f"{self.SOURCE} returned invalid JSON from {path}") from exc


class HttpPriceProvider(_HttpProvider):
    SOURCE: ClassVar[str] = "price_api"

    def get_prices(self, symbols: list[str]) -> list[PriceQuote]:
        quotes: list[PriceQuote] = []
        for chunk in _chunks(sorted(set(symbols))):
            body = self._get("/quotes", {"symbols": ",".join(chunk)})
            for row in body.get("quotes", []):
                price = _decimal_str(row.get("price"))
                if not row.get("symbol") or price is None:
                    logger.warning("Skipping malformed quote: %r", row)
                    continue
                quotes.append(PriceQuote(
                    symbol=row["symbol"],
                    price=price,
                    currency=row.get("currency") or "USD",
                    fetched_at=_timestamp(row.get("timestamp")),
                    source=self.SOURCE,
                ))
        logger.info("Fetched %d/%d prices", len(quotes), len(set(symbols)))
        return quotes


class HttpExchangeRateProvider(_HttpProvider):
    SOURCE: ClassVar[str] = "rates_api"

    def get_rates(self, base: str, targets: list[str]) -> ExchangeRates:
        wanted = sorted(set(targets) - {base})
        body = self._get("/latest", {"base": base, "symbols": ",".join(wanted)})
        rates: dict[str, str] = {}
        for currency, raw in (body.get("rates") or {}).items():
            value = _decimal_str(raw)
            if value is not None:
                rates[currency] = value
        missing = set(wanted) - set(rates)
        if missing:
            logger.warning("Rates missing for %s", sorted(missing))
        return ExchangeRates(
            base=body.get("base") or base,
            rates=rates,
            fetched_at=_timestamp(body.get("timestamp")),
            source=self.SOURCE,
        )


class HttpFundamentalsProvider(_HttpProvider):
    SOURCE: ClassVar[str] = "fundamentals_api"

    def get_fundamentals(self, symbols: list[str]) -> list[AssetFundamentals]:
        records: list[AssetFundamentals] = []
        for chunk in _chunks(sorted(set(symbols))):
            body = self._get("/fundamentals", {"symbols": ",".join(chunk)})
            for row in body.get("data", []):
                if not row.get("symbol"):
                    continue
                records.append(AssetFundamentals(
                    symbol=row["symbol"],
                    metrics={k: _decimal_str(v) for k, v in (row.get("metrics") or {}).items()},
                    source=self.SOURCE,
                    fetched_at=_timestamp(row.get("as_of")),
                ))
        logger.info("Fetched fundamentals for %d/%d symbols", len(records), len(set(symbols)))
        return records


def price_provider_from_config(config: ProvidersConfig) -> Optional[HttpPriceProvider]:
    if not config.price_api_url:
        return None
    return HttpPriceProvider(config.price_api_url, config.api_key, config.timeout_s)


def rate_provider_from_config(config: ProvidersConfig) -> Optional[HttpExchangeRateProvider]:
    if not config.rates_api_url:
        return None
    return HttpExchangeRateProvider(config.rates_api_url, config.api_key, config.timeout_s)


def fundamentals_provider_from_config(config: ProvidersConfig) -> Optional[HttpFundamentalsProvider]:
    if not config.fundamentals_api_url:
        return None
    return HttpFundamentalsProvider(config.fundamentals_api_url, config.api_key, config.timeout_s)
