"""
Overnight job orchestration.

``OvernightJobOrchestrator`` runs the nightly job as a persisted state
machine over ten named steps:

  setup → fetch-exchange-rates → get-active-users → fetch-asset-prices
  → score-portfolios → detect-opportunity-alerts → detect-drift-alerts
  → generate-recommendations → warm-cache → finalize

Each step returns a JSON-compatible result which is written to
``job_checkpoints`` and committed before the next step starts. Running
with ``resume_job_run_id`` reloads the committed results and continues at
the first step without a checkpoint.

Failure handling
----------------
- Per-user failures inside a step are recorded in that step's result and
  never stop the job; ``finalize`` then marks the run ``partial``.
- A step that raises is retried up to ``scheduler.max_retries`` times
  (``ProviderNotConfiguredError`` is never retried).
- A step that still fails marks the JobRun ``failed``. Checkpoints of
  earlier steps stay in place so the run can be inspected or resumed.

Market data
-----------
Rates and prices are fetched once per run and every later step reads
them from the checkpointed results, so all users see the same snapshot.
Without a configured rate provider the development environment falls
back to mock rates of "1.0"; without a price provider it proceeds with no
prices. Production refuses to start without both.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from uuid import uuid4

from portfolio_scorer.alerts.detector import AlertDetector
from portfolio_scorer.cache.client import RecommendationCacheProtocol
from portfolio_scorer.cache.warmer import CacheWarmer
from portfolio_scorer.config import AppConfig
from portfolio_scorer.db.repositories.job_repo import JobRunRepository
from portfolio_scorer.db.repositories.market_repo import MarketDataRepository
from portfolio_scorer.db.repositories.portfolio_repo import PortfolioRepository
from portfolio_scorer.errors import ProviderNotConfiguredError
from portfolio_scorer.events.store import EventStore
from portfolio_scorer.models.events import CalculationEvent, DataRefreshedPayload
from portfolio_scorer.models.job import JOB_STEPS, JobRun
from portfolio_scorer.models.scoring import PriceQuote
from portfolio_scorer.pipeline.batch_scoring import BatchScoringService, MarketSnapshot
from portfolio_scorer.providers import Providers, build_providers, validate_providers
from portfolio_scorer.providers.mock import MockExchangeRateProvider
from portfolio_scorer.recommendations.generator import RecommendationGenerator
from portfolio_scorer.utils.logging import correlation_scope
from portfolio_scorer.utils.time_utils import elapsed_ms, parse_iso, to_iso, utcnow

logger = logging.getLogger(__name__)

SYSTEM_USER = "system"


# ── Result type ───────────────────────────────────────────────────────────────

@dataclass
class JobResult:
    """Outcome of one ``run()`` call.

    Attributes:
        job_run_id:      DB id of the JobRun.
        correlation_id:  Run-level correlation id.
        status:          completed | partial | failed.
        users_total:     Active users found by get-active-users.
        users_processed: Users that went through scoring.
        users_failed:    Users with any recorded failure.
        metrics:         Flat metric dict written by finalize.
        error_details:   Itemized per-user failures.
        steps_run:       Steps executed by this call.
        steps_skipped:   Steps restored from checkpoints.
        error:           Message of the failure that stopped the run.
    """

    job_run_id:      Optional[int]
    correlation_id:  str
    status:          str
    users_total:     int = 0
    users_processed: int = 0
    users_failed:    int = 0
    metrics:         dict[str, Any] = field(default_factory=dict)
    error_details:   list[dict[str, Any]] = field(default_factory=list)
    steps_run:       list[str] = field(default_factory=list)
    steps_skipped:   list[str] = field(default_factory=list)
    error:           Optional[str] = None


# ── Orchestrator ──────────────────────────────────────────────────────────────

class OvernightJobOrchestrator:
    """Runs (or resumes) the nightly scoring job.

    Args:
        conn:      Open SQLite connection; committed after every step.
        config:    Application config.
        providers: Market data providers; built from config if omitted.
        cache:     Recommendation cache; warm-cache is skipped if ``None``.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: AppConfig,
        providers: Optional[Providers] = None,
        cache: Optional[RecommendationCacheProtocol] = None,
    ) -> None:
        self.conn = conn
        self.config = config
        self.providers = providers if providers is not None else build_providers(config.providers)
        self.cache = cache
        self.jobs = JobRunRepository(conn)
        self.portfolios = PortfolioRepository(conn)
        self.market = MarketDataRepository(conn)
        self.state: dict[str, Any] = {}
        self.job: Optional[JobRun] = None

    # ── Public API ────────────────────────────────────────────────────────────

    def run(self, resume_job_run_id: Optional[int] = None) -> JobResult:
        """Execute every uncommitted step in order.

        Args:
            resume_job_run_id: Continue this JobRun instead of starting a new one.

        Returns:
            ``JobResult``. A failed step yields ``status="failed"`` rather
            than an exception.

        Raises:
            ValueError: ``resume_job_run_id`` does not exist.
        """
        job = self._start_or_resume(resume_job_run_id)
        self.job = job
        with correlation_scope(job.correlation_id):
            return self._run_steps(job)

    def _run_steps(self, job: JobRun) -> JobResult:
        result = JobResult(job_run_id=job.id, correlation_id=job.correlation_id, status=job.status)

        checkpoints = self.jobs.get_checkpoints(job.id)
        self.state = {name: cp.result for name, cp in checkpoints.items()}

        if job.status in ("completed", "partial"):
            logger.info("Job run %d already finished (%s); nothing to resume", job.id, job.status)
            result.steps_skipped = list(JOB_STEPS)
            return self._fill_result(result)

        step_fns = self._step_functions()
        current = None
        try:
            for index, step in enumerate(JOB_STEPS, start=1):
                current = step
                if step in checkpoints:
                    result.steps_skipped.append(step)
                    logger.info("[%d/%d] %s: committed earlier, skipped", index, len(JOB_STEPS), step)
                    continue
                logger.info("[%d/%d] %s ...", index, len(JOB_STEPS), step)
                step_result = self._execute_step(step, step_fns[step])
                self.jobs.commit_checkpoint(job.id, step, step_result)
                self.conn.commit()
                self.state[step] = step_result
                result.steps_run.append(step)

        except Exception as exc:
            self.conn.rollback()
            job.status = "failed"
            job.error_message = f"{current}: {exc}"
            job.completed_at = utcnow()
            self.jobs.update_run(job)
            self.conn.commit()
            logger.error("Job run %d FAILED at %s: %s", job.id, current, exc)
            result.status = "failed"
            result.error = job.error_message
            return self._fill_result(result)

        return self._fill_result(result)

    def plan(self) -> dict[str, Any]:
        """What a run would do, without writing anything (used by ``--dry-run``)."""
        missing: list[str] = []
        try:
            validate_providers(self.providers)
        except ProviderNotConfiguredError as exc:
            missing.append(str(exc))
        return {
            "environment": self.config.providers.environment,
            "steps": list(JOB_STEPS),
            "active_users": len(self.portfolios.get_active_user_ids()),
            "currencies": self.portfolios.get_currencies(),
            "provider_warnings": missing,
            "cache_enabled": self.cache is not None,
        }

    # ── Step machinery ────────────────────────────────────────────────────────

    def _step_functions(self) -> dict[str, Callable[[], dict[str, Any]]]:
        return {
            "setup":                     self._run_setup,
            "fetch-exchange-rates":      self._run_fetch_exchange_rates,
            "get-active-users":          self._run_get_active_users,
            "fetch-asset-prices":        self._run_fetch_asset_prices,
            "score-portfolios":          self._run_score_portfolios,
            "detect-opportunity-alerts": self._run_detect_opportunity_alerts,
            "detect-drift-alerts":       self._run_detect_drift_alerts,
            "generate-recommendations":  self._run_generate_recommendations,
            "warm-cache":                self._run_warm_cache,
            "finalize":                  self._run_finalize,
        }

    def _execute_step(self, step: str, fn: Callable[[], dict[str, Any]]) -> dict[str, Any]:
        attempts = max(1, self.config.scheduler.max_retries)
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except ProviderNotConfiguredError:
                raise
            except Exception as exc:
                self.conn.rollback()
                if attempt == attempts:
                    raise
                logger.warning(
                    "Step %s failed (attempt %d/%d): %s; retrying", step, attempt, attempts, exc
                )
        raise RuntimeError(f"Step {step} made no attempt.")  # pragma: no cover

    def _start_or_resume(self, resume_job_run_id: Optional[int]) -> JobRun:
        if resume_job_run_id is not None:
            job = self.jobs.get_run(resume_job_run_id)
            if job is None:
                raise ValueError(f"Job run {resume_job_run_id} not found.")
            if job.status == "failed":
                job.status = "started"
                job.error_message = None
                job.completed_at = None
                self.jobs.update_run(job)
                self.conn.commit()
            logger.info("Resuming job run %d | correlation_id=%s", job.id, job.correlation_id)
            return job

        job = JobRun(correlation_id=str(uuid4()), started_at=utcnow())
        job.id = self.jobs.insert_run(job)
        self.conn.commit()
        logger.info("Started job run %d | correlation_id=%s", job.id, job.correlation_id)
        return job

    def _snapshot(self) -> MarketSnapshot:
        rates = self.state.get("fetch-exchange-rates") or {}
        prices = self.state.get("fetch-asset-prices") or {}
        setup = self.state.get("setup") or {}
        return MarketSnapshot(
            exchange_rates=dict(rates.get("pairs", {})),
            prices={
                q["symbol"]: PriceQuote.model_validate(q) for q in prices.get("quotes", [])
            },
            as_of=parse_iso(setup.get("as_of")) or self.job.started_at,
            rates_as_of=parse_iso(rates.get("fetched_at")),
            prices_as_of=parse_iso(prices.get("fetched_at")),
        )

    def _scored_user_ids(self) -> list[str]:
        return list((self.state.get("score-portfolios") or {}).get("successful_user_ids", []))

    def _record_refresh(self, data_type: str, symbols: list[str], source: str) -> None:
        payload = DataRefreshedPayload(
            data_type=data_type, symbols=symbols, source=source, refreshed_at=utcnow()
        )
        EventStore(self.conn).append(
            SYSTEM_USER, CalculationEvent.build(self.job.correlation_id, SYSTEM_USER, payload)
        )

    # ── Steps ─────────────────────────────────────────────────────────────────

    def _run_setup(self) -> dict[str, Any]:
        if self.config.providers.is_production:
            validate_providers(self.providers)
        return {
            "correlation_id": self.job.correlation_id,
            "as_of": to_iso(self.job.started_at),
            "environment": self.config.providers.environment,
            "base_currency": self.config.providers.base_currency,
        }

    def _run_fetch_exchange_rates(self) -> dict[str, Any]:
        started = time.perf_counter()
        base = self.config.providers.base_currency
        provider = self.providers.rates
        if provider is None:
            if self.config.providers.is_production:
                raise ProviderNotConfiguredError(
                    "Exchange rate provider not configured. Set providers.rates_api_url."
                )
            provider = MockExchangeRateProvider()

        rates = provider.get_rates(base, self.portfolios.get_currencies())
        self.market.upsert_rates(rates)
        self._record_refresh("exchange_rates", sorted(rates.rates), rates.source)
        logger.info("Fetched %d exchange rates from %s", len(rates.rates), rates.source)
        return {
            "base": rates.base,
            "pairs": rates.as_pairs(),
            "fetched_at": to_iso(rates.fetched_at),
            "source": rates.source,
            "duration_ms": elapsed_ms(started),
        }

    def _run_get_active_users(self) -> dict[str, Any]:
        user_ids = self.portfolios.get_active_user_ids()
        logger.info("%d active users", len(user_ids))
        return {"user_ids": user_ids, "count": len(user_ids)}

    def _run_fetch_asset_prices(self) -> dict[str, Any]:
        started = time.perf_counter()
        user_ids = self.state["get-active-users"]["user_ids"]
        symbols = self.portfolios.get_symbols_for_users(user_ids)

        quotes: list[PriceQuote] = []
        if self.providers.prices is not None:
            quotes = self.providers.prices.get_prices(symbols)
            self.market.upsert_prices(quotes)
            self._record_refresh("prices", sorted(q.symbol for q in quotes), "price_api")
        elif self.config.providers.is_production:
            raise ProviderNotConfiguredError(
                "Price provider not configured. Set providers.price_api_url."
            )
        else:
            logger.warning("No price provider configured; continuing with empty prices")

        fundamentals_count = 0
        if self.providers.fundamentals is not None and symbols:
            records = self.providers.fundamentals.get_fundamentals(symbols)
            fundamentals_count = self.market.upsert_fundamentals(records)
            self._record_refresh("fundamentals", sorted(r.symbol for r in records), "fundamentals_api")

        fetched_at = max((q.fetched_at for q in quotes), default=None)
        return {
            "symbols": len(symbols),
            "quotes": [q.model_dump(mode="json") for q in sorted(quotes, key=lambda q: q.symbol)],
            "fetched_at": to_iso(fetched_at),
            "fundamentals_refreshed": fundamentals_count,
            "duration_ms": elapsed_ms(started),
        }

    def _run_score_portfolios(self) -> dict[str, Any]:
        user_ids = self.state["get-active-users"]["user_ids"]
        service = BatchScoringService(self.conn, self.config)
        batch = service.process_users(user_ids, self._snapshot())
        failures = [
            {
                "user_id": r.user_id,
                "stage": r.stage,
                "message": r.error,
                "kind": r.failure_kind.value if r.failure_kind else None,
            }
            for r in batch.results if not r.success
        ]
        return {
            "users_processed": batch.users_processed,
            "users_success": batch.users_success,
            "users_failed": batch.users_failed,
            "assets_scored": batch.total_assets_scored,
            "successful_user_ids": [r.user_id for r in batch.results if r.success],
            "failures": failures,
            "duration_ms": batch.total_duration_ms,
        }

    def _run_detect_opportunity_alerts(self) -> dict[str, Any]:
        detector = AlertDetector(self.conn, self.config, self._snapshot())
        summary = detector.run_opportunity(self._scored_user_ids())
        return {
            "users_processed": summary.users_processed,
            "users_failed": summary.users_failed,
            "alerts_created": summary.alerts_created,
            "alerts_updated": summary.alerts_updated,
            "alerts_skipped": summary.alerts_skipped,
            "duration_ms": summary.duration_ms,
        }

    def _run_detect_drift_alerts(self) -> dict[str, Any]:
        detector = AlertDetector(self.conn, self.config, self._snapshot())
        summary = detector.run_drift(self._scored_user_ids())
        return {
            "users_processed": summary.users_processed,
            "users_failed": summary.users_failed,
            "alerts_created": summary.alerts_created,
            "alerts_updated": summary.alerts_updated,
            "alerts_dismissed": summary.alerts_dismissed,
            "duration_ms": summary.duration_ms,
        }

    def _run_generate_recommendations(self) -> dict[str, Any]:
        generator = RecommendationGenerator(self.conn, self.config, self._snapshot())
        batch = generator.generate_batch(self._scored_user_ids(), self.job.correlation_id)
        return {
            "users_processed": batch.users_processed,
            "recommendations_generated": batch.recommendations_generated,
            "user_ids": [r.user_id for r in batch.results if r.success],
            "failures": [
                {"user_id": r.user_id, "stage": "generate-recommendations", "message": r.error}
                for r in batch.results if not r.success
            ],
            "duration_ms": batch.duration_ms,
        }

    def _run_warm_cache(self) -> dict[str, Any]:
        user_ids = (self.state.get("generate-recommendations") or {}).get("user_ids", [])
        if self.cache is None:
            logger.info("No cache configured; warm-cache skipped")
            return {"skipped": True, "users_cached": 0, "cache_failures": 0, "duration_ms": 0}
        warm = CacheWarmer(self.cache, self.config.cache).warm_users(self.conn, user_ids)
        return {
            "skipped": False,
            "users_processed": warm.users_processed,
            "users_cached": warm.users_cached,
            "cache_failures": warm.cache_failures,
            "errors": warm.errors,
            "metrics": warm.metrics,
            "duration_ms": warm.duration_ms,
        }

    def _run_finalize(self) -> dict[str, Any]:
        job = self.job
        scoring = self.state.get("score-portfolios") or {}
        opportunity = self.state.get("detect-opportunity-alerts") or {}
        drift = self.state.get("detect-drift-alerts") or {}
        recs = self.state.get("generate-recommendations") or {}
        cache = self.state.get("warm-cache") or {}
        rates = self.state.get("fetch-exchange-rates") or {}

        error_details = list(scoring.get("failures", [])) + list(recs.get("failures", []))
        failed_users = {d["user_id"] for d in error_details}
        if opportunity.get("users_failed") or drift.get("users_failed"):
            error_details.append({
                "user_id": None,
                "stage": "alert-detection",
                "message": (
                    f"{opportunity.get('users_failed', 0)} opportunity / "
                    f"{drift.get('users_failed', 0)} drift detection failure(s)"
                ),
            })

        completed_at = utcnow()
        metrics = {
            "fetch_rates_ms":             rates.get("duration_ms", 0),
            "process_users_ms":           scoring.get("duration_ms", 0),
            "total_duration_ms":          int((completed_at - job.started_at).total_seconds() * 1000),
            "assets_scored":              scoring.get("assets_scored", 0),
            "users_total":                (self.state.get("get-active-users") or {}).get("count", 0),
            "recommendations_generated":  recs.get("recommendations_generated", 0),
            "users_with_recommendations": len(recs.get("user_ids", [])),
            "recommendation_duration_ms": recs.get("duration_ms", 0),
            "users_cached":               cache.get("users_cached", 0),
            "cache_failures":             cache.get("cache_failures", 0),
            "cache_warm_ms":              cache.get("duration_ms", 0),
            "alerts_created":             opportunity.get("alerts_created", 0),
            "alerts_updated":             opportunity.get("alerts_updated", 0),
            "alert_detection_ms":         opportunity.get("duration_ms", 0),
            "drift_alerts_created":       drift.get("alerts_created", 0),
            "drift_alerts_updated":       drift.get("alerts_updated", 0),
            "drift_alerts_dismissed":     drift.get("alerts_dismissed", 0),
            "drift_alert_detection_ms":   drift.get("duration_ms", 0),
        }
        has_failures = bool(error_details)

        job.status = "partial" if has_failures else "completed"
        job.users_processed = scoring.get("users_processed", 0)
        job.users_failed = len(failed_users)
        job.metrics = metrics
        job.error_details = error_details
        job.completed_at = completed_at
        self.jobs.update_run(job)
        logger.info(
            "Job run %d %s | users=%d | failed=%d | assets=%d | recs=%d | %dms",
            job.id, job.status, job.users_processed, job.users_failed,
            metrics["assets_scored"], metrics["recommendations_generated"],
            metrics["total_duration_ms"],
        )
        return {"status": job.status, "metrics": metrics}

    def _fill_result(self, result: JobResult) -> JobResult:
        job = self.jobs.get_run(result.job_run_id) or self.job
        result.status = job.status
        result.users_total = (self.state.get("get-active-users") or {}).get("count", 0)
        result.users_processed = job.users_processed
        result.users_failed = job.users_failed
        result.metrics = dict(job.metrics)
        result.error_details = list(job.error_details)
        return result
