"""Heuristic detection of an agent reply that is asking the user something.

A reply classified as a question moves the session to ``waiting_input`` and
emits ``input_request``. With auto-continue enabled the worker instead
answers with a fixed synthetic reply and runs another turn.
"""

from typing import Protocol, runtime_checkable

# Matched case-insensitively against the tail of the reply.
_QUESTION_PATTERNS: tuple[str, ...] = (
    "would you like",
    "do you want",
    "should i",
    "shall i",
    "can you confirm",
    "please confirm",
    "could you clarify",
    "could you provide",
    "which option",
    "what would you prefer",
)

# Only the last part of a long reply is inspected; questions asked early and
# then answered by the agent itself don't count.
_TAIL_CHARS = 400


@runtime_checkable
class QuestionClassifier(Protocol):
    def is_question(self, text: str) -> bool: ...


class KeywordQuestionClassifier:
    """Keyword and trailing-question-mark heuristic."""

    def __init__(self, patterns: tuple[str, ...] = _QUESTION_PATTERNS):
        self.patterns = patterns

    def is_question(self, text: str) -> bool:
        if not text:
            return False
        tail = text.strip()[-_TAIL_CHARS:].lower()
        if tail.endswith("?"):
            return True
        return any(pattern in tail for pattern in self.patterns)

