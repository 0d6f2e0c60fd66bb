"""Shared usage quota: daily buckets, concurrency slots, cost estimation."""

from agentrelay.quota.schemas import DailyUsage, QuotaConfig, QuotaStatus, UsageRecord, UsageStats
from agentrelay.quota.tracker import QuotaTracker

__all__ = [
    "DailyUsage",
    "QuotaConfig",
    "QuotaStatus",
    "QuotaTracker",
    "UsageRecord",
    "UsageStats",
]
