"""Session record, status machine, and the shapes shared with workers."""

from enum import StrEnum
from typing import Literal

from pydantic import Field

from agentrelay.core.schemas import CamelModel


class SessionStatus(StrEnum):
    STARTING = "starting"
    PROCESSING = "processing"
    WAITING_INPUT = "waiting_input"
    COMPLETED = "completed"
    ERROR = "error"


# Valid status transitions. A continuation moves a finished turn back to
# PROCESSING; COMPLETED is terminal once the session has been ended.
TRANSITIONS: dict[SessionStatus, list[SessionStatus]] = {
    SessionStatus.STARTING: [SessionStatus.PROCESSING, SessionStatus.ERROR, SessionStatus.COMPLETED],
    SessionStatus.PROCESSING: [
        SessionStatus.WAITING_INPUT,
        SessionStatus.COMPLETED,
        SessionStatus.ERROR,
        SessionStatus.PROCESSING,
    ],
    SessionStatus.WAITING_INPUT: [SessionStatus.PROCESSING, SessionStatus.COMPLETED, SessionStatus.ERROR],
    SessionStatus.COMPLETED: [SessionStatus.PROCESSING],
    SessionStatus.ERROR: [SessionStatus.PROCESSING, SessionStatus.COMPLETED],
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target == current or target in TRANSITIONS.get(current, [])


class RepositoryBinding(CamelModel):
    url: str
    name: str
    branch: str | None = None


class ConversationMessage(CamelModel):
    role: Literal["user", "assistant", "system"]
    content: str
    timestamp: int  # epoch milliseconds


class SessionOptions(CamelModel):
    max_turns: int = Field(default=10, ge=1)
    permission_mode: str = "acceptEdits"
    create_pr: bool = Field(default=False, alias="createPR")


class SessionRecord(CamelModel):
    """Durable per-session record.

    ``model_dump(by_alias=True)`` produces the persisted layout:
    ``{id, status, repository?, currentTurn, createdAt, lastActivityAt,
    messages, options?, completedAt?, errorMessage?}``.
    """

    id: str
    status: SessionStatus
    repository: RepositoryBinding | None = None
    current_turn: int = 0
    messages: list[ConversationMessage] = Field(default_factory=list)
    created_at: int
    last_activity_at: int
    completed_at: int | None = None
    error_message: str | None = None
    options: SessionOptions | None = None
