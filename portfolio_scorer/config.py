"""
Application configuration management.

Load order (each layer overrides the previous):
  1. ``config/default.toml``      committed static defaults
  2. ``config/local.toml``        optional local overrides (gitignored)
  3. ``.env``                     local secrets and env overrides (gitignored)
  4. Environment variables        ``PORTFOLIO_SCORER_*`` prefix plus a few
                                  well-known names (``REDIS_URL``,
                                  ``OVERNIGHT_JOB_CRON``, ...)

Entry point: ``load_config(config_path=None) -> AppConfig``

The job orchestrator, batch services and CLI commands receive an
``AppConfig`` instance, never raw dicts or scattered env var lookups.
"""

from __future__ import annotations

import os
import tomllib
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, field_validator

VALID_ENVIRONMENTS = frozenset({"development", "test", "production"})
VALID_PRIORITY_POLICIES = frozenset({"gap_x_score", "score", "gap"})

# ── Sub-config models ─────────────────────────────────────────────────────────


class DatabaseConfig(BaseModel):
    """SQLite database connection settings."""

    model_config = ConfigDict(frozen=True)

    db_path: str = "data/db/portfolio_scorer.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000


class LoggingConfig(BaseModel):
    """Logging output settings."""

    model_config = ConfigDict(frozen=True)

    level: str = "INFO"
    log_file: str = "data/logs/portfolio_scorer.log"
    json_format: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"Log level must be one of {sorted(valid)}, got '{v}'.")
        return v.upper()


class ScoringConfig(BaseModel):
    """Batch scoring parameters."""

    model_config = ConfigDict(frozen=True)

    user_batch_size: int = 50
    stale_after_days: int = 7

    @field_validator("user_batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"user_batch_size must be >= 1, got {v}.")
        return v


class RecommendationConfig(BaseModel):
    """Capital distribution policy."""

    model_config = ConfigDict(frozen=True)

    priority_policy: str = "gap_x_score"

    @field_validator("priority_policy")
    @classmethod
    def validate_policy(cls, v: str) -> str:
        if v not in VALID_PRIORITY_POLICIES:
            raise ValueError(
                f"priority_policy must be one of {sorted(VALID_PRIORITY_POLICIES)}, got '{v}'."
            )
        return v


class AlertConfig(BaseModel):
    """Alert detection thresholds (points / percentage points)."""

    model_config = ConfigDict(frozen=True)

    opportunity_score_threshold: Decimal = Decimal("10")
    score_update_threshold: Decimal = Decimal("5")
    drift_update_threshold: Decimal = Decimal("2")
    default_drift_threshold: Decimal = Decimal("5.00")


class CacheConfig(BaseModel):
    """Redis recommendation cache settings.

    An empty ``redis_url`` disables cache warming (the step records zero
    users cached and the job carries on).
    """

    model_config = ConfigDict(frozen=True)

    redis_url: str = ""
    key_prefix: str = "recs:"
    ttl_seconds: int = 86400
    batch_size: int = 50
    max_workers: int = 10
    socket_timeout_s: float = 5.0

    @field_validator("ttl_seconds")
    @classmethod
    def validate_ttl(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {v}.")
        return v


class ProvidersConfig(BaseModel):
    """Market data provider endpoints.

    In ``production`` a missing rates or price endpoint is a fatal
    startup error. Elsewhere the job falls back to mock rates of 1.0 and
    empty prices.
    """

    model_config = ConfigDict(frozen=True)

    environment: str = "development"
    base_currency: str = "USD"
    price_api_url: str = ""
    rates_api_url: str = ""
    fundamentals_api_url: str = ""
    api_key: str = ""
    timeout_s: float = 30.0

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        v = v.lower()
        if v not in VALID_ENVIRONMENTS:
            raise ValueError(
                f"environment must be one of {sorted(VALID_ENVIRONMENTS)}, got '{v}'."
            )
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


class SchedulerConfig(BaseModel):
    """Cron trigger and retry settings for the overnight job."""

    model_config = ConfigDict(frozen=True)

    cron: str = "0 4 * * *"
    max_retries: int = 3

    @field_validator("cron")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        if len(v.split()) != 5:
            raise ValueError(f"cron must have 5 fields, got '{v}'.")
        return v


class AppConfig(BaseModel):
    """Complete application configuration, the single source of truth.

    Constructed by ``load_config()`` which merges TOML + .env + env vars.
    """

    model_config = ConfigDict(frozen=True)

    database: DatabaseConfig = DatabaseConfig()
    logging: LoggingConfig = LoggingConfig()
    scoring: ScoringConfig = ScoringConfig()
    recommendations: RecommendationConfig = RecommendationConfig()
    alerts: AlertConfig = AlertConfig()
    cache: CacheConfig = CacheConfig()
    providers: ProvidersConfig = ProvidersConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    debug: bool = False


# ── Loader ────────────────────────────────────────────────────────────────────

_PROJECT_ROOT = Path(__file__).parent.parent


def _find_project_root() -> Path:
    """Walk up from this file to find the project root (contains pyproject.toml)."""
    candidate = Path(__file__).parent
    for _ in range(5):
        if (candidate / "pyproject.toml").exists():
            return candidate
        candidate = candidate.parent
    return _PROJECT_ROOT


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Load and merge application configuration.

    Args:
        config_path: Explicit path to a TOML config file. Defaults to
            ``<project_root>/config/default.toml``.

    Returns:
        Fully validated ``AppConfig`` instance.

    Raises:
        FileNotFoundError: If the specified ``config_path`` does not exist.
        pydantic.ValidationError: If merged config values fail validation.
    """
    root = _find_project_root()

    load_dotenv(dotenv_path=root / ".env", override=False)

    if config_path is None:
        config_path = root / "config" / "default.toml"

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}\n"
            "Create config/default.toml or pass --config."
        )

    with open(config_path, "rb") as f:
        raw: dict[str, Any] = tomllib.load(f)

    local_config_path = config_path.parent / "local.toml"
    if local_config_path.exists():
        with open(local_config_path, "rb") as f:
            local_raw: dict[str, Any] = tomllib.load(f)
        raw = _deep_merge(raw, local_raw)

    raw = _apply_env_overrides(raw)

    return _build_app_config(raw)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into ``base``."""
    result = dict(base)
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


# env var → (section, key)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "PORTFOLIO_SCORER_DB_PATH":   ("database", "db_path"),
    "PORTFOLIO_SCORER_LOG_LEVEL": ("logging", "level"),
    "PORTFOLIO_SCORER_ENV":       ("providers", "environment"),
    "PRICE_API_KEY":              ("providers", "api_key"),
    "REDIS_URL":                  ("cache", "redis_url"),
    "CACHE_TTL_SECONDS":          ("cache", "ttl_seconds"),
    "OVERNIGHT_JOB_CRON":         ("scheduler", "cron"),
}


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides to the raw config dict.

    See ``_ENV_OVERRIDES`` for the supported names.
    ``PORTFOLIO_SCORER_DEBUG`` maps to the top-level ``debug`` flag.
    """
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        if value := os.environ.get(env_name):
            raw.setdefault(section, {})[key] = value

    if debug := os.environ.get("PORTFOLIO_SCORER_DEBUG"):
        raw["debug"] = debug.lower() in ("1", "true", "yes")

    return raw


def _build_app_config(raw: dict[str, Any]) -> AppConfig:
    """Map raw TOML dict to ``AppConfig`` model structure."""
    project = raw.pop("project", {})

    return AppConfig(
        database=DatabaseConfig(**raw.get("database", {})),
        logging=LoggingConfig(**raw.get("logging", {})),
        scoring=ScoringConfig(**raw.get("scoring", {})),
        recommendations=RecommendationConfig(**raw.get("recommendations", {})),
        alerts=AlertConfig(**raw.get("alerts", {})),
        cache=CacheConfig(**raw.get("cache", {})),
        providers=ProvidersConfig(**raw.get("providers", {})),
        scheduler=SchedulerConfig(**raw.get("scheduler", {})),
        debug=raw.get("debug", project.get("debug", False)),
    )
