"""Shared quota tracking: daily usage buckets and the active-session set.

Layout in Redis:
  relay:quota:day:{YYYY-MM-DD}   hash  total_tokens, cost_micro, api_calls, session_count
  relay:quota:active             set   session ids holding a concurrency slot
  relay:quota:lease:{session_id} str   TTL lease; a slot whose lease is gone is stale

Cost is accumulated as integer microdollars so every update is a plain
HINCRBY and concurrent sessions never race on a read-modify-write.
"""

from collections.abc import Collection
from datetime import UTC, date, datetime, timedelta

import structlog
from redis.asyncio import Redis
from redis.exceptions import WatchError

from agentrelay.quota.schemas import (
    REASON_CONCURRENCY,
    REASON_COST,
    REASON_TOKENS,
    DailyUsage,
    QuotaConfig,
    QuotaStatus,
    UsageRecord,
    UsageStats,
)

logger = structlog.get_logger(__name__)

DAY_KEY_PREFIX = "relay:quota:day:"
ACTIVE_KEY = "relay:quota:active"
LEASE_KEY_PREFIX = "relay:quota:lease:"

_MICRO = 1_000_000


def _day_key(day: str) -> str:
    return f"{DAY_KEY_PREFIX}{day}"


def _lease_key(session_id: str) -> str:
    return f"{LEASE_KEY_PREFIX}{session_id}"


class QuotaTracker:
    """Admission control and usage accounting shared by every session."""

    def __init__(
        self,
        redis: Redis,
        config: QuotaConfig | None = None,
        retention_days: int = 7,
        lease_ttl: int = 30 * 60,
    ):
        self.redis = redis
        self.config = config or QuotaConfig()
        self.retention_days = retention_days
        self.lease_ttl = lease_ttl  # seconds a slot survives without a heartbeat
        self._last_pruned: str | None = None

    # ──────────────────────────────────────────────────────────────────────────
    # Admission
    # ──────────────────────────────────────────────────────────────────────────

    async def check(
        self,
        config: QuotaConfig | None = None,
        session_id: str | None = None,
        now: datetime | None = None,
    ) -> QuotaStatus:
        """Decide whether a new turn may run.

        Limits are evaluated tokens, then cost, then concurrency; the first
        violated one is the reason. A session that already holds a slot is
        not counted against the concurrency limit again.

        Args:
            config: Limits to apply (defaults to the tracker's config)
            session_id: Session asking for admission, if it already exists
            now: Current time (for deterministic testing)

        Returns:
            QuotaStatus. Read-only: a denial changes no counters.
        """
        config = config or self.config
        usage = await self.get_today_usage(now)
        active = await self.redis.scard(ACTIVE_KEY)

        remaining_tokens = max(0, config.max_daily_tokens - usage.total_tokens)
        remaining_cost = max(0.0, config.max_daily_cost - usage.total_cost)

        reason = None
        if usage.total_tokens >= config.max_daily_tokens:
            reason = REASON_TOKENS
        elif usage.total_cost >= config.max_daily_cost:
            reason = REASON_COST
        elif active >= config.max_concurrent_sessions:
            holds_slot = session_id is not None and await self.redis.sismember(ACTIVE_KEY, session_id)
            if not holds_slot:
                reason = REASON_CONCURRENCY

        return QuotaStatus(
            allowed=reason is None,
            reason=reason,
            remaining_tokens=remaining_tokens,
            remaining_cost=round(remaining_cost, 6),
            active_sessions=active,
            max_concurrent_sessions=config.max_concurrent_sessions,
        )

    # ──────────────────────────────────────────────────────────────────────────
    # Active sessions
    # ──────────────────────────────────────────────────────────────────────────

    async def start_session(
        self,
        session_id: str,
        config: QuotaConfig | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Claim a concurrency slot for a session.

        Re-claiming a slot the session already holds only refreshes its lease.
        Capacity is re-checked under WATCH so two sessions racing for the last
        slot cannot both win.

        Returns:
            True if the session holds a slot afterwards, False at capacity.
        """
        config = config or self.config
        now = now or datetime.now(UTC)
        day_key = _day_key(now.date().isoformat())

        while True:
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(ACTIVE_KEY)
                    if await pipe.sismember(ACTIVE_KEY, session_id):
                        pipe.multi()
                        pipe.setex(_lease_key(session_id), self.lease_ttl, "1")
                        await pipe.execute()
                        return True

                    if await pipe.scard(ACTIVE_KEY) >= config.max_concurrent_sessions:
                        await pipe.unwatch()
                        return False

                    pipe.multi()
                    pipe.sadd(ACTIVE_KEY, session_id)
                    pipe.setex(_lease_key(session_id), self.lease_ttl, "1")
                    pipe.hincrby(day_key, "session_count", 1)
                    pipe.expireat(day_key, self._day_expiry(now))
                    await pipe.execute()
                except WatchError:
                    continue

            logger.info("quota_slot_acquired", session_id=session_id)
            return True

    async def end_session(self, session_id: str) -> None:
        """Release a session's slot. Safe to call for unknown sessions."""
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.srem(ACTIVE_KEY, session_id)
            pipe.delete(_lease_key(session_id))
            removed, _ = await pipe.execute()
        if removed:
            logger.info("quota_slot_released", session_id=session_id)

    async def heartbeat(self, session_id: str) -> None:
        """Extend a slot's lease. Called after each turn and periodically while one runs."""
        await self.redis.expire(_lease_key(session_id), self.lease_ttl)

    async def active_sessions(self) -> set[str]:
        return set(await self.redis.smembers(ACTIVE_KEY))

    async def reap_stale(self, keep: Collection[str] = ()) -> int:
        """Remove slots whose lease key has expired. Slots in ``keep`` are left alone.

        Returns: Number of slots reclaimed.
        """
        reaped = 0
        for session_id in await self.redis.smembers(ACTIVE_KEY):
            if session_id in keep:
                continue
            if not await self.redis.exists(_lease_key(session_id)):
                await self.redis.srem(ACTIVE_KEY, session_id)
                logger.info("quota_slot_reaped", session_id=session_id)
                reaped += 1
        return reaped

    # ──────────────────────────────────────────────────────────────────────────
    # Usage
    # ──────────────────────────────────────────────────────────────────────────

    async def record_usage(self, record: UsageRecord, now: datetime | None = None) -> DailyUsage:
        """Add one turn's usage to today's bucket.

        All four counters move in a single MULTI so readers never see a
        half-applied record. Negative inputs are clamped to zero.
        """
        now = now or datetime.now(UTC)
        today = now.date().isoformat()
        key = _day_key(today)

        tokens = max(0, int(record.tokens_used))
        cost_micro = max(0, round(record.cost_estimate * _MICRO))
        api_calls = max(0, int(record.api_calls))

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hincrby(key, "total_tokens", tokens)
            pipe.hincrby(key, "cost_micro", cost_micro)
            pipe.hincrby(key, "api_calls", api_calls)
            pipe.expireat(key, self._day_expiry(now))
            total_tokens, total_cost_micro, total_calls, _ = await pipe.execute()

        logger.info(
            "quota_usage_recorded",
            session_id=record.session_id,
            tokens=tokens,
            cost_usd=cost_micro / _MICRO,
            day_total_tokens=total_tokens,
        )

        if self._last_pruned != today:
            await self.prune_old_days(now)

        sessions = await self.redis.hget(key, "session_count")
        return DailyUsage(
            date=today,
            total_tokens=total_tokens,
            total_cost=total_cost_micro / _MICRO,
            api_calls=total_calls,
            session_count=int(sessions or 0),
        )

    async def get_today_usage(self, now: datetime | None = None) -> DailyUsage:
        now = now or datetime.now(UTC)
        today = now.date().isoformat()
        raw = await self.redis.hgetall(_day_key(today))
        return DailyUsage(
            date=today,
            total_tokens=int(raw.get("total_tokens", 0)),
            total_cost=int(raw.get("cost_micro", 0)) / _MICRO,
            api_calls=int(raw.get("api_calls", 0)),
            session_count=int(raw.get("session_count", 0)),
        )

    async def usage_stats(self, now: datetime | None = None) -> UsageStats:
        """Today's bucket, active session count and current admission status."""
        today = await self.get_today_usage(now)
        status = await self.check(now=now)
        return UsageStats(
            today=today,
            active_sessions=status.active_sessions,
            quota_status=status,
        )

    async def prune_old_days(self, now: datetime | None = None) -> int:
        """Delete day buckets older than the retention window.

        Buckets also carry an expiry, so this only catches keys written before
        an expiry existed or with a longer retention.
        """
        now = now or datetime.now(UTC)
        cutoff = now.date() - timedelta(days=self.retention_days)
        pruned = 0

        async for key in self.redis.scan_iter(match=f"{DAY_KEY_PREFIX}*"):
            try:
                day = date.fromisoformat(key.removeprefix(DAY_KEY_PREFIX))
            except ValueError:
                continue
            if day < cutoff:
                await self.redis.delete(key)
                pruned += 1

        self._last_pruned = now.date().isoformat()
        if pruned:
            logger.info("quota_days_pruned", pruned=pruned)
        return pruned

    def _day_expiry(self, now: datetime) -> int:
        """Unix time at which a bucket written now falls out of retention."""
        last_day = now.date() + timedelta(days=self.retention_days + 1)
        return int(datetime.combine(last_day, datetime.min.time(), tzinfo=UTC).timestamp())
