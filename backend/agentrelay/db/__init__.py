"""Storage package: the shared Redis client behind quotas and the session ledger."""

from agentrelay.db.redis import close_redis, get_redis, init_redis, redis_healthy

__all__ = [
    "close_redis",
    "get_redis",
    "init_redis",
    "redis_healthy",
]
