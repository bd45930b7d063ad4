"""
Shared pytest fixtures for the portfolio scorer test suite.

Provides:
  - ``in_memory_db``: A fresh in-memory SQLite connection with the full
    schema and migrations applied. Created anew for each test.
  - ``seeded_db``: ``in_memory_db`` plus one user with a primary
    portfolio, two asset classes, three holdings, an active criteria
    version and fundamentals.
  - ``snapshot`` and ``app_config`` for pipeline services.
  - ``FakeCache``: an in-memory stand-in for the Redis cache.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import Any, Generator, Optional

import pytest

from portfolio_scorer.config import AppConfig
from portfolio_scorer.db.migrations import run_migrations
from portfolio_scorer.db.repositories.market_repo import MarketDataRepository
from portfolio_scorer.db.repositories.portfolio_repo import PortfolioRepository
from portfolio_scorer.db.schema import apply_schema
from portfolio_scorer.errors import CacheFailure
from portfolio_scorer.models.portfolio import AssetClass, CriteriaVersion, Holding, Portfolio, User
from portfolio_scorer.models.scoring import AssetFundamentals, CriterionRule, PriceQuote
from portfolio_scorer.pipeline.batch_scoring import MarketSnapshot

AS_OF = datetime(2026, 10, 19, 4, 0, 0, tzinfo=timezone.utc)

USER_ID = "user-0001-aaaa"
PORTFOLIO_ID = "pf-1"
EQUITIES = "ac-eq"
BONDS = "ac-bd"


# ── Database fixtures ─────────────────────────────────────────────────────────

@pytest.fixture
def in_memory_db() -> Generator[sqlite3.Connection, None, None]:
    """Yield a fresh in-memory SQLite connection with the full schema applied.

    Foreign key enforcement is ON. Connection is closed after the test.
    """
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    apply_schema(conn)
    run_migrations(conn)
    yield conn
    conn.close()


def _seed_user(
    conn: sqlite3.Connection,
    user_id: str = USER_ID,
    portfolio_id: str = PORTFOLIO_ID,
    default_contribution: str = "1000",
    with_criteria: bool = True,
    class_suffix: str = "",
) -> None:
    """Insert a user whose primary portfolio holds AAPL and BND and watches VOO.

    Valued at purchase price: AAPL 10 × 100 = 1000 (Equities),
    BND 10 × 50 = 500 (Bonds), VOO quantity 0.
    """
    repo = PortfolioRepository(conn)
    repo.upsert_user(User(id=user_id, email=f"{user_id}@example.com",
                          default_contribution=default_contribution))
    repo.insert_portfolio(Portfolio(id=portfolio_id, user_id=user_id, name="Main"))
    eq, bd = EQUITIES + class_suffix, BONDS + class_suffix
    repo.upsert_asset_class(AssetClass(id=eq, user_id=user_id, name="Equities",
                                       target_min="40", target_max="60"))
    repo.upsert_asset_class(AssetClass(id=bd, user_id=user_id, name="Bonds",
                                       target_min="20", target_max="40"))
    for h in (
        Holding(id=f"{portfolio_id}-aapl", portfolio_id=portfolio_id, symbol="AAPL",
                quantity="10", purchase_price="100", asset_class_id=eq),
        Holding(id=f"{portfolio_id}-voo", portfolio_id=portfolio_id, symbol="VOO",
                quantity="0", purchase_price="400", asset_class_id=eq),
        Holding(id=f"{portfolio_id}-bnd", portfolio_id=portfolio_id, symbol="BND",
                quantity="10", purchase_price="50", asset_class_id=bd),
    ):
        repo.upsert_holding(h)
    if with_criteria:
        repo.insert_criteria_version(CriteriaVersion(
            id=f"cv-{user_id}",
            user_id=user_id,
            criteria=[
                CriterionRule(id="pe", name="P/E below 20", metric="pe_ratio",
                              operator="lt", value="20", points=10),
                CriterionRule(id="div", name="Dividend yield above 2", metric="dividend_yield",
                              operator="gt", value="2", points=5),
            ],
        ))


def _seed_fundamentals(conn: sqlite3.Connection, fetched_at: datetime = AS_OF) -> None:
    MarketDataRepository(conn).upsert_fundamentals([
        AssetFundamentals(symbol="AAPL", metrics={"pe_ratio": "25", "dividend_yield": "0.5"},
                          source="test", fetched_at=fetched_at),
        AssetFundamentals(symbol="VOO", metrics={"pe_ratio": "15", "dividend_yield": "2.5"},
                          source="test", fetched_at=fetched_at),
        AssetFundamentals(symbol="BND", metrics={"pe_ratio": "12", "dividend_yield": "3.1"},
                          source="test", fetched_at=fetched_at),
    ])


@pytest.fixture
def seeded_db(in_memory_db: sqlite3.Connection) -> sqlite3.Connection:
    _seed_user(in_memory_db)
    _seed_fundamentals(in_memory_db)
    in_memory_db.commit()
    return in_memory_db


# ── Config and market snapshot ────────────────────────────────────────────────

@pytest.fixture
def app_config() -> AppConfig:
    """Defaults, with logging kept off disk."""
    return AppConfig.model_validate({"logging": {"log_file": ""}})


@pytest.fixture
def snapshot() -> MarketSnapshot:
    return MarketSnapshot(
        exchange_rates={"USD_EUR": "0.92"},
        prices={
            "AAPL": PriceQuote(symbol="AAPL", price="100", currency="USD",
                               fetched_at=AS_OF, source="test"),
            "BND": PriceQuote(symbol="BND", price="50", currency="USD",
                              fetched_at=AS_OF, source="test"),
        },
        as_of=AS_OF,
        rates_as_of=AS_OF,
        prices_as_of=AS_OF,
    )


# ── Fakes ─────────────────────────────────────────────────────────────────────

class FakeCache:
    """Dict-backed cache; ``fail_for`` user ids raise ``CacheFailure`` on set."""

    def __init__(self, fail_for: Optional[set[str]] = None) -> None:
        self.store: dict[str, dict[str, Any]] = {}
        self.fail_for = fail_for or set()

    def set(self, user_id: str, payload: dict[str, Any]) -> None:
        if user_id in self.fail_for:
            raise CacheFailure(f"boom for {user_id}")
        self.store[user_id] = payload

    def get(self, user_id: str) -> Optional[dict[str, Any]]:
        return self.store.get(user_id)

    def delete(self, user_id: str) -> bool:
        return self.store.pop(user_id, None) is not None


@pytest.fixture
def fake_cache() -> FakeCache:
    return FakeCache()


@pytest.fixture
def seed_user():
    """Factory fixture: ``seed_user(conn, user_id=..., portfolio_id=..., ...)``."""
    return _seed_user


@pytest.fixture
def seed_fundamentals():
    return _seed_fundamentals


@pytest.fixture
def as_of() -> datetime:
    return AS_OF


@pytest.fixture
def make_cache():
    """Factory fixture: ``make_cache(fail_for={"user-id"})``."""
    return FakeCache
