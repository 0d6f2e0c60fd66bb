"""Credential scrubbing for anything that may reach logs or clients.

Git and the agent CLI echo remote URLs and environment details in their
stderr. Authenticated clone URLs carry the repository token inline, so every
string that leaves a worker (exception messages, log fields, SSE payloads)
passes through ``redact_secrets`` first.
"""

import re

# Checked in order. key=value patterns keep the key name; standalone patterns
# are replaced entirely.
_SECRET_PATTERNS = [
    # Token embedded in an https remote: https://x-access-token:<token>@github.com/...
    re.compile(r"(?i)(https?://)[^/\s:@]+:[^/\s@]+@"),
    re.compile(r"(?i)(api[_-]?key|secret|token|password|passwd|auth)\s*[=:]\s*\S{8,}"),
    # Anthropic / OpenAI style keys
    re.compile(r"(?i)sk-[a-zA-Z0-9_-]{20,}"),
    # GitHub tokens (classic, fine-grained, installation, user-to-server)
    re.compile(r"gh[pousr]_[A-Za-z0-9]{20,}"),
    re.compile(r"github_pat_[A-Za-z0-9_]{20,}"),
    re.compile(r"(?i)redis://[^\s'\"]+"),
]


def _replace(m: re.Match) -> str:
    matched = m.group(0)
    if matched.lower().startswith(("http://", "https://")):
        return f"{m.group(1)}[REDACTED]@"
    sep_match = re.search(r"[=:]\s*", matched)
    if sep_match:
        return matched[: sep_match.end()] + "[REDACTED]"
    return "[REDACTED]"


def redact_secrets(text: str) -> str:
    """Apply all secret patterns to text, replacing matches with [REDACTED]."""
    if not text:
        return text
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(_replace, text)
    return text
