"""
Recording confirmed investments.

A confirmation may cover several assets. All of it is written in one
SAVEPOINT: each investment row, the matching holding quantity update, one
INVESTMENT_RECORDED event per asset and a closing INVESTMENT_CONFIRMED
event. Either everything lands or nothing does.

Once committed, opportunity alerts that pointed at any of the bought
assets are dismissed: the user now holds the "better" asset.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Optional
from uuid import uuid4

from portfolio_scorer.alerts.detector import AlertDetector
from portfolio_scorer.config import AppConfig
from portfolio_scorer.db.connection import atomic
from portfolio_scorer.db.repositories.portfolio_repo import PortfolioRepository
from portfolio_scorer.errors import PreconditionFailure
from portfolio_scorer.events.store import EventStore
from portfolio_scorer.models.events import (
    CalculationEvent,
    InvestmentConfirmedPayload,
    InvestmentRecordedPayload,
)
from portfolio_scorer.models.portfolio import Investment
from portfolio_scorer.utils.decimals import ZERO, add, fmt_money, multiply, to_decimal
from portfolio_scorer.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InvestmentRequest:
    asset_id:       str
    quantity:       str
    price_per_unit: str


@dataclass
class RecordedInvestments:
    correlation_id:   str
    investment_ids:   list[str] = field(default_factory=list)
    total_amount:     str = "0.00"
    new_quantities:   dict[str, str] = field(default_factory=dict)
    alerts_dismissed: int = 0


class InvestmentRecorder:
    def __init__(self, conn: sqlite3.Connection, config: Optional[AppConfig] = None) -> None:
        self.conn = conn
        self.config = config or AppConfig()
        self.portfolios = PortfolioRepository(conn)
        self.events = EventStore(conn)

    def record(
        self,
        user_id: str,
        portfolio_id: str,
        requests: list[InvestmentRequest],
        recommendation_id: Optional[str] = None,
    ) -> RecordedInvestments:
        """Record ``requests`` as one confirmed investment.

        Raises:
            PreconditionFailure: Empty request list or unknown holding.
            ValueError: Invalid quantity or price.
        """
        if not requests:
            raise PreconditionFailure("No investments to record")
        holdings = {h.id: h for h in self.portfolios.get_holdings(portfolio_id, include_ignored=True)}
        correlation_id = str(uuid4())
        recorded = RecordedInvestments(correlation_id=correlation_id)
        total = ZERO
        invested_at = utcnow()

        with atomic(self.conn):
            for req in requests:
                holding = holdings.get(req.asset_id)
                if holding is None:
                    raise PreconditionFailure(
                        f"Holding {req.asset_id} not found in portfolio {portfolio_id}"
                    )
                price = to_decimal(req.price_per_unit)
                quantity = to_decimal(req.quantity)
                if price is None or price < 0 or quantity is None:
                    raise ValueError(
                        f"Invalid price or quantity for {holding.symbol}: "
                        f"{req.quantity!r} @ {req.price_per_unit!r}"
                    )
                amount = multiply(quantity, price)
                investment = Investment(
                    id=str(uuid4()),
                    user_id=user_id,
                    portfolio_id=portfolio_id,
                    asset_id=holding.id,
                    symbol=holding.symbol,
                    quantity=str(quantity),
                    price_per_unit=str(price),
                    currency=holding.currency,
                    total_amount=fmt_money(amount),
                    recommendation_id=recommendation_id,
                    invested_at=invested_at,
                )
                new_quantity = self.portfolios.record_investment(investment)
                self._emit(user_id, correlation_id, InvestmentRecordedPayload(
                    investment_id=investment.id,
                    asset_id=investment.asset_id,
                    symbol=investment.symbol,
                    quantity=investment.quantity,
                    price_per_unit=investment.price_per_unit,
                    currency=investment.currency,
                    total_amount=investment.total_amount,
                ))
                recorded.investment_ids.append(investment.id)
                recorded.new_quantities[holding.id] = str(new_quantity)
                total = add(total, amount)

            recorded.total_amount = fmt_money(total)
            self._emit(user_id, correlation_id, InvestmentConfirmedPayload(
                recommendation_id=recommendation_id,
                investment_ids=recorded.investment_ids,
                total_amount=recorded.total_amount,
            ))

        detector = AlertDetector(self.conn, self.config)
        for symbol in sorted({holdings[r.asset_id].symbol for r in requests}):
            recorded.alerts_dismissed += detector.auto_dismiss_for_added_asset(user_id, symbol)

        logger.info(
            "Recorded %d investment(s) for user %s | total=%s | correlation_id=%s",
            len(recorded.investment_ids), user_id, recorded.total_amount, correlation_id,
        )
        return recorded

    def _emit(self, user_id: str, correlation_id: str, payload) -> int:
        return self.events.append(
            user_id, CalculationEvent.build(correlation_id, user_id, payload)
        )


def parse_requests(items: list[str]) -> list[InvestmentRequest]:
    """Parse ``ASSET_ID:QUANTITY@PRICE`` strings (CLI input).

    Raises:
        ValueError: Malformed item.
    """
    requests: list[InvestmentRequest] = []
    for raw in items:
        try:
            asset_id, rest = raw.split(":", 1)
            quantity, price = rest.split("@", 1)
        except ValueError as exc:
            raise ValueError(f"Expected ASSET_ID:QUANTITY@PRICE, got '{raw}'") from exc
        if to_decimal(quantity) is None or to_decimal(price) is None:
            raise ValueError(f"Quantity and price must be decimals in '{raw}'")
        requests.append(InvestmentRequest(asset_id.strip(), quantity.strip(), price.strip()))
    return requests
