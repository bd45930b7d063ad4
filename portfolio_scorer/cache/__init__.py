"""
Recommendation cache.

Submodules:
  client: Redis-backed per-user recommendation store with TTL
  warmer: payload validation and parallel cache writes after generation
"""
