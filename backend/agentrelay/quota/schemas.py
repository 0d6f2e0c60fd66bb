"""Quota schemas and default limits."""

from pydantic import Field

from agentrelay.core.schemas import CamelModel

# Default daily limits shared by every interactive session
DEFAULT_MAX_DAILY_TOKENS = 1_000_000
DEFAULT_MAX_DAILY_COST = 50.0  # USD
DEFAULT_MAX_CONCURRENT_SESSIONS = 5

# Denial reasons, in evaluation order
REASON_TOKENS = "Daily token limit exceeded"
REASON_COST = "Daily cost limit exceeded"
REASON_CONCURRENCY = "Maximum concurrent sessions reached"


class QuotaConfig(CamelModel):
    max_daily_tokens: int = DEFAULT_MAX_DAILY_TOKENS
    max_daily_cost: float = DEFAULT_MAX_DAILY_COST
    max_concurrent_sessions: int = DEFAULT_MAX_CONCURRENT_SESSIONS


class QuotaStatus(CamelModel):
    """Result of an admission check."""

    allowed: bool
    reason: str | None = None
    remaining_tokens: int
    remaining_cost: float
    active_sessions: int
    max_concurrent_sessions: int


class DailyUsage(CamelModel):
    """Aggregate usage for one UTC day."""

    date: str  # YYYY-MM-DD
    total_tokens: int = 0
    total_cost: float = 0.0
    api_calls: int = 0
    session_count: int = 0


class UsageRecord(CamelModel):
    """Usage attributed to one completed agent turn."""

    session_id: str
    timestamp: int  # epoch milliseconds
    api_calls: int = Field(default=1, ge=0)
    tokens_used: int = Field(default=0, ge=0)
    cost_estimate: float = Field(default=0.0, ge=0.0)
    repository: str | None = None


class UsageStats(CamelModel):
    """Snapshot returned by GET /interactive/usage."""

    today: DailyUsage
    active_sessions: int
    quota_status: QuotaStatus
