from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # App
    app_name: str = "Agent Relay"
    debug: bool = False

    # API
    frontend_url: str = "http://localhost:3000"

    # Redis (quota counters + session ledger)
    redis_url: str = "redis://localhost:6379"

    # Agent credentials
    anthropic_api_key: str = ""
    anthropic_base_url: str = ""

    # Agent backend: "cli" runs the external coding agent, "api" calls the Messages API directly
    agent_backend: str = "cli"
    agent_cli_path: str = "claude"
    agent_permission_mode: str = "acceptEdits"
    agent_internal_max_turns: int = 10
    agent_timeout_seconds: float = 3000.0  # overall bound on one agent invocation
    agent_api_model: str = "claude-sonnet-4-20250514"
    agent_api_max_tokens: int = 4096
    # "minimal" sends only the new message; "transcript" replays recent history into the prompt
    prompt_strategy: str = "minimal"
    transcript_max_messages: int = 20

    # GitHub: either a static token or a GitHub App installation
    github_token: str = ""
    github_app_id: str = ""
    github_private_key: str = ""
    github_installation_id: str = ""

    # Quota (per UTC day, shared across all sessions)
    quota_max_daily_tokens: int = 1_000_000
    quota_max_daily_cost: float = 50.0
    quota_max_concurrent_sessions: int = 5
    usage_retention_days: int = 7

    # Session lifecycle
    session_idle_timeout_seconds: int = 30 * 60
    completed_session_retention_seconds: int = 24 * 60 * 60
    janitor_interval_seconds: int = 5 * 60
    default_max_turns: int = 10
    # Upper bound on one request end to end (workspace prep, agent, persist)
    session_turn_timeout_seconds: float = 3600.0
    # Keeps lastActivityAt and the quota lease fresh while a turn is in flight
    session_heartbeat_seconds: float = 60.0
    stream_flush_grace_seconds: float = 0.1

    # Question classifier. When enabled, a turn that ends with a question is
    # answered with the synthetic reply instead of stopping the loop.
    auto_continue_on_question: bool = False
    synthetic_question_reply: str = "Please proceed with your best judgement."

    # Git workspace
    workspace_root: str = "/tmp/workspace"
    git_committer_name: str = "Claude Code Bot"
    git_committer_email: str = "claude-code@anthropic.com"
    git_timeout_seconds: float = 300.0
    pr_summary_filename: str = ".claude-pr-summary.md"


@lru_cache
def get_settings() -> Settings:
    return Settings()
