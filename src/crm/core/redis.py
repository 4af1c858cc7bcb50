"""Redis connection pool singleton.

All webhook keys live under the ``crm:`` prefix so the service can share a
Redis database with other applications.
"""

from __future__ import annotations

import redis.asyncio as aioredis

from src.crm.config import get_settings

KEY_PREFIX = "crm"

# ── Module-level Redis pool (lazy init) ─────────────────────────────────────

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Get or create the Redis connection pool singleton."""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


def redis_key(*parts: object) -> str:
    """Build a namespaced key: ``crm:{part}:{part}...``."""
    return ":".join([KEY_PREFIX, *(str(p) for p in parts)])
