"""
SQLite schema DDL: all CREATE TABLE and CREATE INDEX statements.

All statements use ``IF NOT EXISTS`` so ``apply_schema()`` is idempotent:
safe to call on an already-initialized database (after restart, in tests).

Table creation order respects foreign key dependencies:
  1. users               (no FKs)
  2. portfolios          (→ users)
  3. asset_classes       (→ users)
  4. portfolio_assets    (→ portfolios, asset_classes)
  5. criteria_versions   (→ users)
  6. asset_fundamentals, asset_prices, exchange_rates  (market snapshot, no FKs)
  7. calculation_events  (append-only log, no FKs)
  8. asset_scores, score_history  (→ users)
  9. recommendations     (→ users, portfolios)
  10. recommendation_items (→ recommendations)
  11. alerts, alert_preferences (→ users)
  12. investments        (→ users, portfolios, portfolio_assets)
  13. job_runs           (no FKs)
  14. job_checkpoints    (→ job_runs)

Decimal quantities are stored as TEXT so no value ever passes through a
binary float.
"""

from __future__ import annotations

import logging
import sqlite3

logger = logging.getLogger(__name__)

# ── DDL statements ─────────────────────────────────────────────────────────────

_DDL_USERS = """
CREATE TABLE IF NOT EXISTS users (
    id                   TEXT    PRIMARY KEY,
    email                TEXT,
    base_currency        TEXT    NOT NULL DEFAULT 'USD',
    default_contribution TEXT    NOT NULL DEFAULT '0',
    is_active            INTEGER NOT NULL DEFAULT 1,
    deleted_at           TEXT,
    created_at           TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
"""

_DDL_PORTFOLIOS = """
CREATE TABLE IF NOT EXISTS portfolios (
    id          TEXT    PRIMARY KEY,
    user_id     TEXT    NOT NULL REFERENCES users(id),
    name        TEXT    NOT NULL DEFAULT 'Portfolio',
    created_at  TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_portfolios_user ON portfolios(user_id);
"""

_DDL_ASSET_CLASSES = """
CREATE TABLE IF NOT EXISTS asset_classes (
    id                   TEXT    PRIMARY KEY,
    user_id              TEXT    NOT NULL REFERENCES users(id),
    name                 TEXT    NOT NULL,
    target_min           TEXT,
    target_max           TEXT,
    min_allocation_value TEXT,
    created_at           TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_asset_classes_user ON asset_classes(user_id);
"""

_DDL_PORTFOLIO_ASSETS = """
CREATE TABLE IF NOT EXISTS portfolio_assets (
    id              TEXT    PRIMARY KEY,
    portfolio_id    TEXT    NOT NULL REFERENCES portfolios(id),
    symbol          TEXT    NOT NULL,
    name            TEXT,
    quantity        TEXT    NOT NULL DEFAULT '0',
    purchase_price  TEXT    NOT NULL DEFAULT '0',
    currency        TEXT    NOT NULL DEFAULT 'USD',
    asset_class_id  TEXT    REFERENCES asset_classes(id),
    is_ignored      INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at      TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    UNIQUE (portfolio_id, symbol)
);

CREATE INDEX IF NOT EXISTS idx_portfolio_assets_class ON portfolio_assets(asset_class_id);
"""

_DDL_CRITERIA_VERSIONS = """
CREATE TABLE IF NOT EXISTS criteria_versions (
    id          TEXT    PRIMARY KEY,
    user_id     TEXT    NOT NULL REFERENCES users(id),
    name        TEXT    NOT NULL DEFAULT 'Default',
    version     INTEGER NOT NULL DEFAULT 1,
    criteria    TEXT    NOT NULL,
    is_active   INTEGER NOT NULL DEFAULT 1,
    created_at  TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_criteria_user_active
    ON criteria_versions(user_id, is_active, version DESC);
"""

_DDL_MARKET_SNAPSHOT = """
CREATE TABLE IF NOT EXISTS asset_fundamentals (
    symbol      TEXT    PRIMARY KEY,
    metrics     TEXT    NOT NULL,
    source      TEXT    NOT NULL,
    fetched_at  TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS asset_prices (
    symbol      TEXT    PRIMARY KEY,
    price       TEXT    NOT NULL,
    currency    TEXT    NOT NULL,
    source      TEXT    NOT NULL,
    fetched_at  TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS exchange_rates (
    base        TEXT    NOT NULL,
    target      TEXT    NOT NULL,
    rate        TEXT    NOT NULL,
    source      TEXT    NOT NULL,
    fetched_at  TEXT    NOT NULL,
    PRIMARY KEY (base, target)
);
"""

_DDL_CALCULATION_EVENTS = """
CREATE TABLE IF NOT EXISTS calculation_events (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    correlation_id  TEXT    NOT NULL,
    user_id         TEXT    NOT NULL,
    event_type      TEXT    NOT NULL,
    payload         TEXT    NOT NULL,
    created_at      TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_correlation
    ON calculation_events(correlation_id, created_at, id);

CREATE INDEX IF NOT EXISTS idx_events_user_time
    ON calculation_events(user_id, created_at DESC);

CREATE INDEX IF NOT EXISTS idx_events_user_type
    ON calculation_events(user_id, event_type, created_at DESC);
"""

_DDL_SCORES = """
CREATE TABLE IF NOT EXISTS asset_scores (
    user_id             TEXT    NOT NULL REFERENCES users(id),
    asset_id            TEXT    NOT NULL,
    symbol              TEXT    NOT NULL,
    score               TEXT    NOT NULL,
    max_possible_score  TEXT    NOT NULL,
    percentage          TEXT    NOT NULL,
    breakdown           TEXT    NOT NULL,
    criteria_version_id TEXT    NOT NULL,
    correlation_id      TEXT    NOT NULL,
    calculated_at       TEXT    NOT NULL,
    PRIMARY KEY (user_id, asset_id)
);

CREATE TABLE IF NOT EXISTS score_history (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id             TEXT    NOT NULL REFERENCES users(id),
    asset_id            TEXT    NOT NULL,
    symbol              TEXT    NOT NULL,
    score               TEXT    NOT NULL,
    percentage          TEXT    NOT NULL,
    criteria_version_id TEXT    NOT NULL,
    correlation_id      TEXT    NOT NULL,
    calculated_at       TEXT    NOT NULL
);
"""

_DDL_RECOMMENDATIONS = """
CREATE TABLE IF NOT EXISTS recommendations (
    id               TEXT    PRIMARY KEY,
    user_id          TEXT    NOT NULL REFERENCES users(id),
    portfolio_id     TEXT    NOT NULL REFERENCES portfolios(id),
    correlation_id   TEXT    NOT NULL,
    generated_at     TEXT    NOT NULL,
    total_investable TEXT    NOT NULL,
    base_currency    TEXT    NOT NULL,
    allocation_gaps  TEXT    NOT NULL,
    audit_trail      TEXT    NOT NULL,
    created_at       TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_recommendations_user_time
    ON recommendations(user_id, generated_at DESC);

CREATE TABLE IF NOT EXISTS recommendation_items (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    recommendation_id  TEXT    NOT NULL REFERENCES recommendations(id),
    asset_id           TEXT    NOT NULL,
    symbol             TEXT    NOT NULL,
    score              TEXT    NOT NULL,
    recommended_amount TEXT    NOT NULL,
    is_over_allocated  INTEGER NOT NULL DEFAULT 0,
    sort_order         INTEGER NOT NULL,
    details            TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_rec_items_rec
    ON recommendation_items(recommendation_id, sort_order);
"""

_DDL_ALERTS = """
CREATE TABLE IF NOT EXISTS alerts (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id       TEXT    NOT NULL REFERENCES users(id),
    type          TEXT    NOT NULL,
    severity      TEXT    NOT NULL DEFAULT 'info',
    subject_key   TEXT    NOT NULL,
    title         TEXT    NOT NULL,
    message       TEXT    NOT NULL,
    metadata      TEXT    NOT NULL DEFAULT '{}',
    is_read       INTEGER NOT NULL DEFAULT 0,
    is_dismissed  INTEGER NOT NULL DEFAULT 0,
    created_at    TEXT    NOT NULL,
    updated_at    TEXT    NOT NULL,
    dismissed_at  TEXT
);

CREATE INDEX IF NOT EXISTS idx_alerts_user_time
    ON alerts(user_id, is_dismissed, created_at DESC);

CREATE TABLE IF NOT EXISTS alert_preferences (
    user_id                    TEXT    PRIMARY KEY REFERENCES users(id),
    opportunity_alerts_enabled INTEGER NOT NULL DEFAULT 1,
    drift_alerts_enabled       INTEGER NOT NULL DEFAULT 1,
    drift_threshold            TEXT    NOT NULL DEFAULT '5.00',
    alert_frequency            TEXT    NOT NULL DEFAULT 'daily',
    email_notifications        INTEGER NOT NULL DEFAULT 0,
    updated_at                 TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
"""

_DDL_INVESTMENTS = """
CREATE TABLE IF NOT EXISTS investments (
    id                TEXT    PRIMARY KEY,
    user_id           TEXT    NOT NULL REFERENCES users(id),
    portfolio_id      TEXT    NOT NULL REFERENCES portfolios(id),
    asset_id          TEXT    NOT NULL REFERENCES portfolio_assets(id),
    symbol            TEXT    NOT NULL,
    quantity          TEXT    NOT NULL,
    price_per_unit    TEXT    NOT NULL,
    currency          TEXT    NOT NULL,
    total_amount      TEXT    NOT NULL,
    recommendation_id TEXT,
    invested_at       TEXT    NOT NULL
);
"""

_DDL_JOBS = """
CREATE TABLE IF NOT EXISTS job_runs (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    job_type         TEXT    NOT NULL,
    correlation_id   TEXT    NOT NULL,
    status           TEXT    NOT NULL DEFAULT 'started',
    users_processed  INTEGER NOT NULL DEFAULT 0,
    users_failed     INTEGER NOT NULL DEFAULT 0,
    metrics          TEXT    NOT NULL DEFAULT '{}',
    error_details    TEXT    NOT NULL DEFAULT '[]',
    error_message    TEXT,
    started_at       TEXT    NOT NULL,
    completed_at     TEXT
);

CREATE INDEX IF NOT EXISTS idx_job_runs_started ON job_runs(started_at DESC);

CREATE TABLE IF NOT EXISTS job_checkpoints (
    job_run_id    INTEGER NOT NULL REFERENCES job_runs(id),
    step_name     TEXT    NOT NULL,
    result        TEXT    NOT NULL,
    committed_at  TEXT    NOT NULL,
    PRIMARY KEY (job_run_id, step_name)
);
"""

_ALL_DDL: list[str] = [
    _DDL_USERS,
    _DDL_PORTFOLIOS,
    _DDL_ASSET_CLASSES,
    _DDL_PORTFOLIO_ASSETS,
    _DDL_CRITERIA_VERSIONS,
    _DDL_MARKET_SNAPSHOT,
    _DDL_CALCULATION_EVENTS,
    _DDL_SCORES,
    _DDL_RECOMMENDATIONS,
    _DDL_ALERTS,
    _DDL_INVESTMENTS,
    _DDL_JOBS,
]

ALL_TABLE_NAMES: list[str] = [
    "users",
    "portfolios",
    "asset_classes",
    "portfolio_assets",
    "criteria_versions",
    "asset_fundamentals",
    "asset_prices",
    "exchange_rates",
    "calculation_events",
    "asset_scores",
    "score_history",
    "recommendations",
    "recommendation_items",
    "alerts",
    "alert_preferences",
    "investments",
    "job_runs",
    "job_checkpoints",
]


def apply_schema(conn: sqlite3.Connection) -> None:
    """Apply all DDL statements to ``conn``.

    Idempotent; every statement uses ``IF NOT EXISTS`` guards.

    Args:
        conn: An open ``sqlite3.Connection`` (FK enforcement should be ON).
    """
    logger.debug("Applying schema to database...")

    for ddl in _ALL_DDL:
        for statement in _split_ddl(ddl):
            conn.execute(statement)

    conn.commit()
    logger.info("Schema applied: %d tables, indexes created/verified.", len(ALL_TABLE_NAMES))


def _split_ddl(ddl: str) -> list[str]:
    """Split a multi-statement DDL block on semicolons."""
    return [s.strip() for s in ddl.split(";") if s.strip()]


def get_existing_tables(conn: sqlite3.Connection) -> list[str]:
    """Return the table names present in the database, sorted."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name;"
    ).fetchall()
    return [row["name"] for row in rows]
