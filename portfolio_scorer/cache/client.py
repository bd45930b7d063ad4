"""
Redis-backed recommendation cache.

One JSON document per user under ``{key_prefix}{user_id}`` (default
``recs:{user_id}``), written with ``SETEX`` so every entry expires after
``ttl_seconds`` (24h by default). The primary store stays authoritative;
this cache only speeds up reads.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Protocol

import redis

from portfolio_scorer.config import CacheConfig
from portfolio_scorer.errors import CacheFailure

logger = logging.getLogger(__name__)


class RecommendationCacheProtocol(Protocol):
    """What the cache warmer needs from a cache backend."""

    def set(self, user_id: str, payload: dict[str, Any]) -> None: ...

    def get(self, user_id: str) -> Optional[dict[str, Any]]: ...

    def delete(self, user_id: str) -> bool: ...


class RecommendationCache:
    """Sync Redis client for per-user recommendation payloads.

    The connection is created lazily on first use. ``set`` raises
    ``CacheFailure`` so callers can count failures; ``get`` treats any
    Redis error as a miss.
    """

    def __init__(self, config: CacheConfig) -> None:
        if not config.redis_url:
            raise CacheFailure("cache.redis_url is not configured.")
        self.config = config
        self._client: Optional[redis.Redis] = None

    def key(self, user_id: str) -> str:
        return f"{self.config.key_prefix}{user_id}"

    def get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self.config.redis_url,
                decode_responses=True,
                socket_timeout=self.config.socket_timeout_s,
                socket_connect_timeout=self.config.socket_timeout_s,
            )
        return self._client

    def set(self, user_id: str, payload: dict[str, Any]) -> None:
        try:
            self.get_client().setex(
                self.key(user_id),
                self.config.ttl_seconds,
                json.dumps(payload, sort_keys=True, default=str),
            )
        except redis.RedisError as exc:
            raise CacheFailure(f"Redis set failed for {self.key(user_id)}: {exc}") from exc

    def get(self, user_id: str) -> Optional[dict[str, Any]]:
        try:
            data = self.get_client().get(self.key(user_id))
        except redis.RedisError as exc:
            logger.warning("Redis get failed for %s: %s", self.key(user_id), exc)
            return None
        return json.loads(data) if data is not None else None

    def delete(self, user_id: str) -> bool:
        try:
            return bool(self.get_client().delete(self.key(user_id)))
        except redis.RedisError as exc:
            logger.warning("Redis delete failed for %s: %s", self.key(user_id), exc)
            return False

    def ping(self) -> bool:
        try:
            return bool(self.get_client().ping())
        except redis.RedisError as exc:
            logger.warning("Redis ping failed: %s", exc)
            return False

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
