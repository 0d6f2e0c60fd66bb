"""Shared Redis client for the quota counters and the session ledger.

Components receive the client by injection; nothing holds quota or session
data at module level. Routes resolve the client through ``get_redis`` so
tests can override it with fakeredis.
"""

import redis.asyncio as redis
import structlog

from agentrelay.core.config import get_settings

logger = structlog.get_logger(__name__)

_redis: redis.Redis | None = None


async def init_redis(url: str | None = None, client: redis.Redis | None = None) -> redis.Redis:
    """Create (or adopt) the shared client and verify connectivity.

    Args:
        url: Override for settings.redis_url
        client: Pre-built client to install instead of connecting (tests, embedding)

    Returns:
        The shared client
    """
    global _redis

    if _redis is not None:
        return _redis

    if client is None:
        client = redis.from_url(
            url or get_settings().redis_url,
            encoding="utf-8",
            decode_responses=True,
        )

    await client.ping()
    _redis = client
    logger.info("redis_connected")
    return _redis


async def close_redis() -> None:
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis() -> redis.Redis:
    """Return the shared client. Raises RuntimeError before init_redis()."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


async def redis_healthy() -> bool:
    """Ping the shared client; False when uninitialized or unreachable."""
    try:
        return bool(await get_redis().ping())
    except Exception as exc:
        logger.warning("redis_ping_failed", error=str(exc), error_type=type(exc).__name__)
        return False
