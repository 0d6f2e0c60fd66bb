"""Relay error hierarchy.

Every error carries a ``public_message`` that is safe to show a client. Only
request validation and admission errors expose a precise reason; everything
else is generic on the wire and detailed in server logs.
"""


class RelayError(Exception):
    """Base exception for the relay."""

    status_code = 500
    public_message = "Internal server error"

    def __init__(self, message: str = "", *, public_message: str | None = None):
        super().__init__(message or self.public_message)
        if public_message is not None:
            self.public_message = public_message


class InvalidRequestError(RelayError):
    """A required request field is missing or malformed."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message, public_message=message)


class CredentialsMissingError(RelayError):
    """Agent or repository credentials are not configured."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message, public_message=message)


class AdmissionDeniedError(RelayError):
    """Quota or concurrency limit reached; retry later."""

    status_code = 429

    def __init__(self, quota_status):
        self.quota_status = quota_status
        reason = quota_status.reason or "Quota exceeded"
        super().__init__(reason, public_message=reason)


class SessionBusyError(RelayError):
    """The session's worker is already running a turn."""

    status_code = 409
    public_message = "Session is busy processing another message"


class SessionNotFoundError(RelayError):
    status_code = 404
    public_message = "Session not found"


class WorkspaceError(RelayError):
    """Clone, fetch or pull failed. The workspace is discarded, never reused."""

    public_message = "Failed to sync the repository workspace"


class AgentInvocationError(RelayError):
    """Agent exited non-zero, produced unparsable output, or timed out."""

    public_message = "The coding agent failed to complete this turn"


class GitPersistError(RelayError):
    """Commit or push failed after the agent changed files."""

    public_message = "Failed to save the changes made in this turn"


class PullRequestError(RelayError):
    """The pull-request API rejected a request."""

    public_message = "Failed to open a pull request for the changes"


class TurnTimeoutError(RelayError):
    """A request ran past the overall turn timeout."""

    public_message = "The session timed out before this turn finished"
