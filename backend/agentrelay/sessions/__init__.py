"""Session records and the ledger that persists them."""

from agentrelay.sessions.ledger import SessionLedger
from agentrelay.sessions.schemas import (
    ConversationMessage,
    RepositoryBinding,
    SessionOptions,
    SessionRecord,
    SessionStatus,
)

__all__ = [
    "ConversationMessage",
    "RepositoryBinding",
    "SessionLedger",
    "SessionOptions",
    "SessionRecord",
    "SessionStatus",
]
