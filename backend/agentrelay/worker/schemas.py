"""Worker-side schemas: agent invocation contract and dispatch payloads."""

from pydantic import BaseModel, ConfigDict, Field

from agentrelay.core.schemas import CamelModel
from agentrelay.sessions.schemas import (
    ConversationMessage,
    RepositoryBinding,
    SessionOptions,
)


class PromptConfig(BaseModel):
    """Everything an agent backend needs to run one turn."""

    prompt: str
    cwd: str | None = None
    permission_mode: str = "acceptEdits"
    max_turns: int = 10
    timeout_seconds: float = 3000.0
    api_key: str = ""
    base_url: str = ""


class AgentResult(BaseModel):
    """Structured result of one agent invocation.

    Mirrors the single JSON object the agent CLI prints with
    ``--output-format json``. Unknown fields are preserved so text extraction
    can fall back to message/content shapes.
    """

    model_config = ConfigDict(extra="allow")

    type: str = "result"
    subtype: str = ""
    duration_ms: int = 0
    duration_api_ms: int = 0
    is_error: bool = False
    num_turns: int = 0
    result: str | None = None
    session_id: str = ""
    total_cost_usd: float = 0.0
    usage: dict | None = None
    model: str | None = None


class SessionSnapshot(CamelModel):
    """Caller-supplied session state for a continuation.

    The edge router sends only the repository binding, turn count and
    options. ``messages`` is accepted from clients that hold a transcript.
    """

    repository: RepositoryBinding | None = None
    current_turn: int = 0
    messages: list[ConversationMessage] = Field(default_factory=list)
    options: SessionOptions | None = None


class TurnRequest(BaseModel):
    """Payload dispatched from the edge router to a session's worker."""

    session_id: str
    prompt: str
    repository: RepositoryBinding | None = None
    options: SessionOptions = Field(default_factory=SessionOptions)
    agent_key: str = ""
    agent_base_url: str = ""
    repo_token: str | None = None
    is_continuation: bool = False
    session: SessionSnapshot | None = None
