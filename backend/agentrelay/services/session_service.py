"""Edge routing for interactive sessions.

Stateless apart from the injected quota tracker, session ledger and worker
registry. Everything that can reject a request (validation, credentials,
admission) runs before any resource is allocated.
"""

import uuid

import structlog

from agentrelay.core.config import Settings
from agentrelay.core.exceptions import (
    AdmissionDeniedError,
    InvalidRequestError,
    SessionNotFoundError,
)
from agentrelay.integrations.credentials import CredentialStore
from agentrelay.quota.schemas import REASON_CONCURRENCY
from agentrelay.quota.tracker import QuotaTracker
from agentrelay.sessions.ledger import SessionLedger
from agentrelay.sessions.schemas import (
    RepositoryBinding,
    SessionOptions,
    SessionRecord,
    SessionStatus,
)
from agentrelay.sse.streamer import SSEStreamer
from agentrelay.worker.registry import WorkerRegistry
from agentrelay.worker.schemas import SessionSnapshot, TurnRequest

logger = structlog.get_logger(__name__)


def new_session_id() -> str:
    return f"sess_{uuid.uuid4().hex}"


class InteractiveSessionService:
    def __init__(
        self,
        quota: QuotaTracker,
        ledger: SessionLedger,
        registry: WorkerRegistry,
        credentials: CredentialStore,
        settings: Settings,
    ):
        self.quota = quota
        self.ledger = ledger
        self.registry = registry
        self.credentials = credentials
        self.settings = settings

    def _default_options(self) -> SessionOptions:
        return SessionOptions(
            max_turns=self.settings.default_max_turns,
            permission_mode=self.settings.agent_permission_mode,
        )

    async def _admit(self, session_id: str, existing: bool) -> None:
        """Admission check plus slot claim.

        Raises:
            AdmissionDeniedError: a limit is reached; no counters were changed
        """
        status = await self.quota.check(session_id=session_id if existing else None)
        if not status.allowed:
            logger.info("session_admission_denied", session_id=session_id, reason=status.reason)
            raise AdmissionDeniedError(status)

        if not await self.quota.start_session(session_id):
            # Lost the race for the last slot
            denied = status.model_copy(update={"allowed": False, "reason": REASON_CONCURRENCY})
            logger.info("session_admission_denied", session_id=session_id, reason=denied.reason)
            raise AdmissionDeniedError(denied)

    async def start_session(
        self,
        prompt: str | None,
        repository: RepositoryBinding | None = None,
        options: SessionOptions | None = None,
    ) -> tuple[str, SSEStreamer]:
        """Admit a new session and start its first turn.

        Returns:
            (session_id, event stream)
        """
        if not prompt or not prompt.strip():
            raise InvalidRequestError("prompt is required")

        session_id = new_session_id()
        options = options or self._default_options()
        log = logger.bind(session_id=session_id)

        credentials = await self.credentials.resolve(needs_repository=repository is not None)
        await self._admit(session_id, existing=False)

        await self.ledger.create(session_id, SessionStatus.STARTING, repository=repository, options=options)
        log.info("session_started", has_repository=repository is not None, create_pr=options.create_pr)

        streamer = await self.registry.dispatch(
            TurnRequest(
                session_id=session_id,
                prompt=prompt,
                repository=repository,
                options=options,
                agent_key=credentials.agent_key,
                agent_base_url=credentials.agent_base_url,
                repo_token=credentials.repo_token,
            )
        )
        return session_id, streamer

    async def get_status(self, session_id: str) -> SessionRecord:
        record = await self.ledger.get(session_id)
        if record is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return record

    async def end_session(self, session_id: str) -> None:
        """End a session. Succeeds for unknown and already-ended ids."""
        await self.ledger.end(session_id)
        await self.quota.end_session(session_id)
        self.registry.shutdown(session_id)
        logger.info("session_end_requested", session_id=session_id)

    async def send_message(
        self,
        session_id: str | None,
        message: str | None,
        snapshot: SessionSnapshot | None = None,
    ) -> SSEStreamer:
        """Run a follow-up turn on an existing (or restorable) session.

        A caller-supplied snapshot takes precedence over the ledger record.
        Only the repository binding, turn count and options are forwarded;
        a transcript is passed through only when the caller sent one.
        """
        if not message or not message.strip():
            raise InvalidRequestError("message is required")
        if not session_id:
            raise InvalidRequestError("sessionId is required")

        record = await self.ledger.get(session_id)
        if record is not None and record.completed_at is not None:
            raise InvalidRequestError("Session has ended")

        repository = (snapshot.repository if snapshot else None) or (record.repository if record else None)
        options = (
            (snapshot.options if snapshot else None)
            or (record.options if record else None)
            or self._default_options()
        )
        current_turn = snapshot.current_turn if snapshot else (record.current_turn if record else 0)

        credentials = await self.credentials.resolve(needs_repository=repository is not None)
        await self._admit(session_id, existing=True)

        if record is None:
            await self.ledger.create(session_id, SessionStatus.STARTING, repository=repository, options=options)
            logger.info("session_recreated", session_id=session_id)

        return await self.registry.dispatch(
            TurnRequest(
                session_id=session_id,
                prompt=message,
                repository=repository,
                options=options,
                agent_key=credentials.agent_key,
                agent_base_url=credentials.agent_base_url,
                repo_token=credentials.repo_token,
                is_continuation=True,
                session=SessionSnapshot(
                    repository=repository,
                    current_turn=current_turn,
                    messages=snapshot.messages if snapshot else [],
                    options=options,
                ),
            )
        )
