"""
Portfolio Scorer: CLI entry point.

All commands follow this pattern:
  1. Load ``AppConfig`` via ``load_config()``.
  2. Configure logging.
  3. Validate inputs.
  4. Execute action (DB init, overnight job, replay check, etc.).
  5. Report result to stdout.

Install and run::

    pip install -e .
    portfolio-scorer --help
    portfolio-scorer init-db
    portfolio-scorer validate-config
    portfolio-scorer run-overnight-job
    portfolio-scorer run-overnight-job --resume 12
    portfolio-scorer verify-replay <correlation-id>
    portfolio-scorer start-scheduler
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer

app = typer.Typer(
    name="portfolio-scorer",
    help="Nightly portfolio scoring, alerting and recommendation pipeline.",
    add_completion=False,
)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _load_config_or_exit(config_path: Optional[str] = None):
    """Load AppConfig, printing a friendly error and exiting on failure."""
    from portfolio_scorer.config import load_config

    try:
        cfg_path = Path(config_path) if config_path else None
        return load_config(cfg_path)
    except FileNotFoundError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    except Exception as exc:
        typer.echo(f"[ERROR] Config validation failed: {exc}", err=True)
        raise typer.Exit(code=1)


def _configure_logging(config):
    """Set up logging from config."""
    from portfolio_scorer.utils.logging import configure_logging
    configure_logging(config.logging)


def _connect(config, db_path: Optional[str] = None):
    from portfolio_scorer.db.connection import get_connection

    return get_connection(
        db_path or config.database.db_path,
        wal_mode=config.database.wal_mode,
        busy_timeout_ms=config.database.busy_timeout_ms,
    )


def _build_cache(config):
    """Redis cache when ``cache.redis_url`` is set, otherwise ``None``."""
    from portfolio_scorer.cache.client import RecommendationCache

    return RecommendationCache(config.cache) if config.cache.redis_url else None


# ── Commands ──────────────────────────────────────────────────────────────────

@app.command("init-db")
def init_db(
    db_path: Optional[str] = typer.Option(
        None,
        "--db-path",
        help="Override DB path from config (e.g. data/db/test.db).",
    ),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file.",
    ),
) -> None:
    """Initialize the SQLite database and apply the full schema.

    Safe to run multiple times. All DDL uses IF NOT EXISTS and pending
    migrations are applied once.
    """
    from portfolio_scorer.db.migrations import run_migrations
    from portfolio_scorer.db.schema import ALL_TABLE_NAMES, apply_schema

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    target_path = db_path or config.database.db_path
    typer.echo(f"Initializing database at: {target_path}")

    with _connect(config, target_path) as conn:
        apply_schema(conn)
        migrations_applied = run_migrations(conn)

    typer.echo(f"  Tables: {len(ALL_TABLE_NAMES)} created/verified.")
    typer.echo(f"  Migrations applied: {migrations_applied}")
    typer.echo("[OK] Database ready.")


@app.command("validate-config")
def validate_config(
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file (default: config/default.toml).",
    ),
    show_full: bool = typer.Option(
        False,
        "--full",
        help="Print full config including all fields.",
    ),
) -> None:
    """Validate the configuration file and print parsed values.

    Exits with code 1 if the config fails validation, or if the
    production environment lacks a rate or price provider.
    """
    from portfolio_scorer.errors import ProviderNotConfiguredError
    from portfolio_scorer.providers import build_providers

    config = _load_config_or_exit(config_path)

    typer.echo("Configuration validated successfully.")
    typer.echo("")
    typer.echo(f"  Database path:    {config.database.db_path}")
    typer.echo(f"  Environment:      {config.providers.environment}")
    typer.echo(f"  Base currency:    {config.providers.base_currency}")
    typer.echo(f"  Priority policy:  {config.recommendations.priority_policy}")
    typer.echo(f"  User batch size:  {config.scoring.user_batch_size}")
    typer.echo(f"  Cache:            {'enabled' if config.cache.redis_url else 'disabled'}")
    typer.echo(f"  Schedule (cron):  {config.scheduler.cron}")
    typer.echo(f"  Log level:        {config.logging.level}")
    typer.echo(f"  Debug mode:       {config.debug}")

    try:
        build_providers(config.providers)
    except ProviderNotConfiguredError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)

    if show_full:
        typer.echo("")
        typer.echo("Full config (JSON):")
        typer.echo(json.dumps(config.model_dump(), indent=2, default=str))

    typer.echo("")
    typer.echo("[OK] Config is valid.")


@app.command("run-overnight-job")
def run_overnight_job(
    resume: Optional[int] = typer.Option(
        None,
        "--resume",
        help="Resume this job run id from its last committed step.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Print what would run without executing.",
    ),
    db_path: Optional[str] = typer.Option(
        None,
        "--db-path",
        help="Override DB path from config.",
    ),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file.",
    ),
) -> None:
    """Run the nightly job: rates, prices, scoring, alerts, recommendations, cache.

    \b
    Steps:
      setup → fetch-exchange-rates → get-active-users → fetch-asset-prices
      → score-portfolios → detect-opportunity-alerts → detect-drift-alerts
      → generate-recommendations → warm-cache → finalize

    Each step is checkpointed; ``--resume`` skips the committed ones.
    Exit code is 1 when the run ends ``failed``.
    """
    from portfolio_scorer.db.migrations import run_migrations
    from portfolio_scorer.db.schema import apply_schema
    from portfolio_scorer.errors import ProviderNotConfiguredError
    from portfolio_scorer.pipeline.orchestrator import OvernightJobOrchestrator

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    target_db = db_path or config.database.db_path
    typer.echo(f"run-overnight-job | env={config.providers.environment} | db={target_db}")

    cache = _build_cache(config)
    try:
        with _connect(config, target_db) as conn:
            apply_schema(conn)
            run_migrations(conn)
            orchestrator = OvernightJobOrchestrator(conn, config, cache=cache)

            if dry_run:
                plan = orchestrator.plan()
                typer.echo("[DRY RUN] Would run:")
                for step in plan["steps"]:
                    typer.echo(f"  {step}")
                typer.echo(f"  active users: {plan['active_users']}")
                typer.echo(f"  currencies:   {', '.join(plan['currencies']) or '-'}")
                typer.echo(f"  cache:        {'enabled' if plan['cache_enabled'] else 'disabled'}")
                for warning in plan["provider_warnings"]:
                    typer.echo(f"  WARNING: {warning}")
                return

            result = orchestrator.run(resume_job_run_id=resume)
    except ProviderNotConfiguredError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    except ValueError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    finally:
        if cache is not None:
            cache.close()

    typer.echo(f"  job_run_id:      {result.job_run_id}")
    typer.echo(f"  correlation_id:  {result.correlation_id}")
    typer.echo(f"  steps run:       {len(result.steps_run)} (skipped {len(result.steps_skipped)})")
    typer.echo(f"  users:           {result.users_processed}/{result.users_total} processed, "
               f"{result.users_failed} failed")
    for detail in result.error_details[:10]:
        typer.echo(f"    - {detail.get('user_id')}: {detail.get('message')}")

    if result.status == "failed":
        typer.echo(f"[ERROR] Job failed: {result.error}", err=True)
        typer.echo(f"        Resume with: portfolio-scorer run-overnight-job --resume {result.job_run_id}")
        raise typer.Exit(code=1)
    typer.echo(f"[OK] Overnight job {result.status}.")


@app.command("verify-replay")
def verify_replay(
    correlation_id: str = typer.Argument(..., help="Correlation id of a calculation."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="Override DB path from config."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Recompute a stored calculation from its events and compare the results."""
    from portfolio_scorer.events.replay import ReplayVerifier

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    with _connect(config, db_path) as conn:
        outcome = ReplayVerifier(conn).verify(correlation_id)

    if outcome["verified"]:
        typer.echo(f"[OK] Replay of {correlation_id} matches the stored scores.")
        return
    typer.echo(f"[ERROR] Replay of {correlation_id} does not match:", err=True)
    for line in outcome["discrepancies"]:
        typer.echo(f"  - {line}", err=True)
    raise typer.Exit(code=1)


@app.command("replay-batch")
def replay_batch(
    user_id: str = typer.Option(..., "--user", help="User whose recent calculations to check."),
    limit: int = typer.Option(10, "--limit", help="How many recent calculations."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="Override DB path from config."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Replay a user's most recent calculations and report any mismatch."""
    from portfolio_scorer.events.replay import ReplayVerifier

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    with _connect(config, db_path) as conn:
        verifier = ReplayVerifier(conn)
        cids = verifier.recent_correlation_ids(user_id, limit)
        summary = verifier.replay_batch(cids)

    typer.echo(
        f"  total={summary['total']} | successful={summary['successful']} | "
        f"matching={summary['matching']}"
    )
    for item in summary["results"]:
        if not item.matches:
            reason = item.error or f"{len(item.discrepancies)} discrepancy(ies)"
            typer.echo(f"  - {item.correlation_id}: {reason}")
    if summary["matching"] != summary["total"]:
        raise typer.Exit(code=1)
    typer.echo("[OK] All replays match.")


@app.command("list-alerts")
def list_alerts(
    user_id: str = typer.Argument(..., help="User id."),
    unread_only: bool = typer.Option(False, "--unread", help="Only unread alerts."),
    limit: int = typer.Option(20, "--limit", help="Page size (max 100)."),
    offset: int = typer.Option(0, "--offset", help="Page offset."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="Override DB path from config."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Print a user's active alerts, newest first."""
    from portfolio_scorer.alerts.service import AlertService

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    with _connect(config, db_path) as conn:
        service = AlertService(conn, config.alerts)
        page = service.get_alerts(user_id, limit=limit, offset=offset, unread_only=unread_only)
        unread = service.get_unread_count(user_id)

    typer.echo(f"{page.total} alert(s), {unread} unread (showing {len(page.alerts)})")
    for alert in page.alerts:
        marker = " " if alert.is_read else "*"
        typer.echo(f" {marker} [{alert.id}] {alert.severity.value:<8} {alert.title}")
        typer.echo(f"      {alert.message}")


@app.command("record-investment")
def record_investment(
    user_id: str = typer.Argument(..., help="User id."),
    portfolio_id: str = typer.Argument(..., help="Portfolio id."),
    items: list[str] = typer.Argument(..., help="One or more ASSET_ID:QUANTITY@PRICE."),
    recommendation_id: Optional[str] = typer.Option(
        None, "--recommendation-id", help="Recommendation these investments follow."
    ),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="Override DB path from config."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Record confirmed investments and dismiss alerts they resolve."""
    from portfolio_scorer.errors import PreconditionFailure
    from portfolio_scorer.investments import InvestmentRecorder, parse_requests

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    try:
        requests = parse_requests(items)
        with _connect(config, db_path) as conn:
            recorded = InvestmentRecorder(conn, config).record(
                user_id, portfolio_id, requests, recommendation_id=recommendation_id
            )
    except (PreconditionFailure, ValueError) as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)

    for asset_id, quantity in recorded.new_quantities.items():
        typer.echo(f"  {asset_id}: quantity now {quantity}")
    typer.echo(f"  alerts dismissed: {recorded.alerts_dismissed}")
    typer.echo(
        f"[OK] Recorded {len(recorded.investment_ids)} investment(s), "
        f"total {recorded.total_amount} | correlation_id={recorded.correlation_id}"
    )


@app.command("start-scheduler")
def start_scheduler(
    run_now: bool = typer.Option(
        False,
        "--run-now",
        help="Run the job once immediately before waiting for the cron slot.",
    ),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Run the overnight job daily at ``scheduler.cron`` (blocks until Ctrl-C)."""
    from portfolio_scorer.scheduler import SchedulerDaemon

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    try:
        daemon = SchedulerDaemon(config, run_immediately=run_now)
    except ValueError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    daemon.start()


if __name__ == "__main__":
    app()
