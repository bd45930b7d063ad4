"""
Cache warming after recommendations are generated.

Payloads are checked for completeness before anything is written; an
incomplete payload counts as a failure and is never cached. Users are
processed in batches; inside a batch the writes run concurrently on a
thread pool and each write fails on its own. Warming never raises: the
database copy of each recommendation stays authoritative.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Optional

from portfolio_scorer.cache.client import RecommendationCacheProtocol
from portfolio_scorer.config import CacheConfig
from portfolio_scorer.db.repositories.recommendation_repo import RecommendationRepository
from portfolio_scorer.models.recommendation import GeneratedRecommendation
from portfolio_scorer.utils.time_utils import elapsed_ms

logger = logging.getLogger(__name__)

# (payload key, error message) in the order they are checked.
_REQUIRED_FIELDS: tuple[tuple[str, str], ...] = (
    ("user_id",         "Missing userId"),
    ("generated_at",    "Missing generatedAt timestamp"),
    ("items",           "Missing recommendation items"),
    ("allocation_gaps", "Missing allocation gaps"),
    ("audit_trail",     "Missing audit trail"),
    ("base_currency",   "Missing base currency"),
)


@dataclass
class CacheWarmResult:
    success:         bool = True
    users_processed: int = 0
    users_cached:    int = 0
    cache_failures:  int = 0
    duration_ms:     int = 0
    metrics:         dict[str, Any] = field(default_factory=dict)
    errors:          list[dict[str, str]] = field(default_factory=list)


def validate_payload(payload: dict[str, Any]) -> Optional[str]:
    """Return the first completeness error for ``payload``, or ``None``."""
    for key, message in _REQUIRED_FIELDS:
        value = payload.get(key)
        if value is None or value == "":
            return message
    return None


def to_payload(rec: GeneratedRecommendation) -> dict[str, Any]:
    return rec.model_dump(mode="json")


class CacheWarmer:
    """Push recommendation payloads into the cache.

    Args:
        cache:  Cache backend (``RecommendationCache`` or a test fake).
        config: Batch size and worker count.
    """

    def __init__(self, cache: RecommendationCacheProtocol, config: CacheConfig) -> None:
        self.cache = cache
        self.config = config

    def warm(self, payloads: list[dict[str, Any]]) -> CacheWarmResult:
        """Write every payload; failures are counted, never raised."""
        started = time.perf_counter()
        result = CacheWarmResult()
        size = self.config.batch_size
        batch_times: list[int] = []

        for offset in range(0, len(payloads), size):
            batch_started = time.perf_counter()
            batch = payloads[offset:offset + size]
            workers = max(1, min(self.config.max_workers, len(batch)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cache-warm") as pool:
                outcomes = list(pool.map(self._write_one, batch))
            for payload, error in zip(batch, outcomes):
                result.users_processed += 1
                if error is None:
                    result.users_cached += 1
                else:
                    result.cache_failures += 1
                    result.errors.append({
                        "user_id": str(payload.get("user_id") or "unknown"),
                        "message": error,
                    })
            batch_times.append(elapsed_ms(batch_started))

        result.duration_ms = elapsed_ms(started)
        result.success = result.cache_failures == 0
        result.metrics = {
            "batches_processed": len(batch_times),
            "average_batch_duration_ms": (
                sum(batch_times) // len(batch_times) if batch_times else 0
            ),
        }
        log = logger.info if result.success else logger.warning
        log(
            "Cache warm | users=%d | cached=%d | failures=%d | %dms",
            result.users_processed, result.users_cached, result.cache_failures, result.duration_ms,
        )
        return result

    def warm_users(self, conn: sqlite3.Connection, user_ids: list[str]) -> CacheWarmResult:
        """Load each user's latest recommendation and warm the cache with it.

        Users with no stored recommendation are skipped, not counted as failures.
        """
        repo = RecommendationRepository(conn)
        payloads: list[dict[str, Any]] = []
        for user_id in user_ids:
            rec = repo.get_latest(user_id)
            if rec is not None:
                payloads.append(to_payload(rec))
        return self.warm(payloads)

    def _write_one(self, payload: dict[str, Any]) -> Optional[str]:
        problem = validate_payload(payload)
        if problem is not None:
            logger.warning("Refusing to cache incomplete payload for %s: %s",
                           payload.get("user_id"), problem)
            return problem
        try:
            self.cache.set(payload["user_id"], payload)
        except Exception as exc:
            logger.warning("Cache write failed for user %s: %s", payload["user_id"], exc)
            return str(exc)
        return None
