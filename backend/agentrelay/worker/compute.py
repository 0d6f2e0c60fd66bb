"""Compute worker: the per-session turn loop.

One ComputeWorker exists per session id (named ``interactive-{session_id}``)
and is never shared. It owns the session's git workspace and runs at most
one turn at a time; the edge router gets a busy error otherwise.

A turn, in event order:
  status        clone / reconnect / reuse / general-chat
  status        "Starting agent..."
  claude_start  prompt preview
  claude_delta  extracted reply text
  claude_end
  status        agent hit its internal turn cap (informational)
  file_change   workspace is dirty
  status        pull request URL, when createPR is set
  input_request reply classified as a question
  complete | error

The loop breaks after a single agent invocation. Multi-turn conversations
happen through repeated /message calls; the only in-loop continuation is the
optional auto-reply to a question.
"""

import asyncio
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from agentrelay.core.config import Settings
from agentrelay.core.exceptions import RelayError, SessionBusyError, TurnTimeoutError, WorkspaceError
from agentrelay.integrations.github import GitHubPullRequestClient
from agentrelay.quota.pricing import usage_record_from_cli_result
from agentrelay.quota.tracker import QuotaTracker
from agentrelay.sessions.ledger import SessionLedger
from agentrelay.sessions.schemas import (
    ConversationMessage,
    RepositoryBinding,
    SessionOptions,
    SessionStatus,
)
from agentrelay.sse.streamer import SSEEventType, SSEStreamer, now_ms
from agentrelay.worker.agent import MAX_TURNS_SUBTYPE, AgentBackend, extract_message_text
from agentrelay.worker.classifier import QuestionClassifier
from agentrelay.worker.git_workspace import GitWorkspaceManager
from agentrelay.worker.schemas import AgentResult, PromptConfig, TurnRequest

logger = structlog.get_logger(__name__)

PROMPT_PREVIEW_CHARS = 200

PullRequestClientFactory = Callable[[str, str], Any]


def worker_name(session_id: str) -> str:
    return f"interactive-{session_id}"


def prompt_preview(prompt: str) -> str:
    if len(prompt) > PROMPT_PREVIEW_CHARS:
        return prompt[:PROMPT_PREVIEW_CHARS] + "..."
    return prompt


def build_outbound_prompt(
    history: list[ConversationMessage],
    prompt: str,
    strategy: str = "minimal",
    max_messages: int = 20,
) -> str:
    """Prompt sent to the agent for this turn.

    "minimal" sends the message alone; the agent's working tree carries the
    context and long transcripts burn through its internal turn budget.
    "transcript" prefixes the most recent history.
    """
    if strategy != "transcript" or not history:
        return prompt

    lines = ["Previous conversation:"]
    for message in history[-max_messages:]:
        lines.append(f"{message.role.capitalize()}: {message.content}")
    lines.append(f"User: {prompt}")
    return "\n\n".join(lines)


def access_failure_message(repository: RepositoryBinding) -> str:
    return (
        f'Failed to access repository "{repository.name}". '
        "Please verify the repository exists and you have access to it."
    )


class ComputeWorker:
    """Exactly-one-session execution sandbox."""

    def __init__(
        self,
        session_id: str,
        *,
        agent: AgentBackend,
        workspaces: GitWorkspaceManager,
        ledger: SessionLedger,
        quota: QuotaTracker,
        classifier: QuestionClassifier,
        settings: Settings,
        pr_client_factory: PullRequestClientFactory = GitHubPullRequestClient.for_repository,
    ):
        self.session_id = session_id
        self.name = worker_name(session_id)
        self.agent = agent
        self.workspaces = workspaces
        self.ledger = ledger
        self.quota = quota
        self.classifier = classifier
        self.settings = settings
        self.pr_client_factory = pr_client_factory

        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self.last_used = time.monotonic()

        # Session state held between turns; replaced by a caller snapshot when one is sent
        self.status = SessionStatus.STARTING
        self.repository: RepositoryBinding | None = None
        self.options = SessionOptions(max_turns=settings.default_max_turns)
        self.current_turn = 0
        self.history: list[ConversationMessage] = []
        self.workspace: Path | None = None
        self._has_state = False

        self._log = logger.bind(session_id=session_id, worker=self.name)

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def dispatch(self, request: TurnRequest) -> SSEStreamer:
        """Start a turn in the background and return its event stream.

        The turn is not tied to the HTTP request: a client disconnect stops
        emission but the in-flight turn runs to completion.

        Raises:
            SessionBusyError: a turn is already running for this session
        """
        if self._lock.locked():
            raise SessionBusyError(f"Worker {self.name} is busy")
        await self._lock.acquire()

        streamer = SSEStreamer(session_id=self.session_id)
        self._task = asyncio.create_task(self._run_locked(request, streamer), name=self.name)
        return streamer

    async def wait_idle(self) -> None:
        """Wait for the in-flight turn, if any."""
        if self._task is not None and not self._task.done():
            await asyncio.gather(self._task, return_exceptions=True)

    async def teardown(self) -> None:
        """Destroy the workspace once any in-flight turn finishes."""
        await self.wait_idle()
        if self.workspace is not None:
            await self.workspaces.teardown(self.workspace)
            self._log.info("worker_workspace_destroyed", workspace=str(self.workspace))
            self.workspace = None

    async def _run_locked(self, request: TurnRequest, streamer: SSEStreamer) -> None:
        try:
            await self.handle(request, streamer)
        finally:
            self.last_used = time.monotonic()
            self._lock.release()

    async def handle(self, request: TurnRequest, streamer: SSEStreamer) -> None:
        """Run one request end to end. Always ends the stream with a terminal event then ``end``.

        The whole request is bounded by ``session_turn_timeout_seconds``; the
        agent and each git command carry their own tighter timeouts.
        """
        heartbeat = asyncio.create_task(self._heartbeat(), name=f"{self.name}-heartbeat")
        try:
            await asyncio.wait_for(
                self._run_request(request, streamer),
                timeout=self.settings.session_turn_timeout_seconds,
            )
        except TimeoutError:
            await self._fail(
                TurnTimeoutError(f"Turn exceeded {self.settings.session_turn_timeout_seconds}s"),
                streamer,
            )
        except Exception as exc:
            await self._fail(exc, streamer)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            # Short grace so the terminal frame flushes before ``end``
            await asyncio.sleep(self.settings.stream_flush_grace_seconds)
            streamer.close()

    async def _run_request(self, request: TurnRequest, streamer: SSEStreamer) -> None:
        is_continuation = self._restore_state(request)
        if is_continuation and self.repository:
            streamer.send(
                SSEEventType.STATUS,
                {"message": "Continuing conversation...", "repository": self.repository.name},
            )

        await self._set_status(SessionStatus.PROCESSING)
        try:
            await self._prepare_workspace(request, streamer, is_continuation)
        except WorkspaceError as exc:
            raise WorkspaceError(str(exc), public_message=access_failure_message(self.repository)) from exc

        streamer.send(SSEEventType.STATUS, {"message": "Starting agent..."})

        if self.current_turn >= self.options.max_turns:
            streamer.send(
                SSEEventType.STATUS,
                {"message": "Turn limit reached", "turns": self.current_turn, "maxTurns": self.options.max_turns},
            )
            waiting = False
        else:
            waiting = await self._run_turns(request, streamer)

        await self._set_status(SessionStatus.WAITING_INPUT if waiting else SessionStatus.COMPLETED)
        streamer.send(SSEEventType.COMPLETE, self._completion_payload())
        self._log.info("session_turn_completed", turns=self.current_turn, waiting_input=waiting)

    async def _heartbeat(self) -> None:
        """Refresh lastActivityAt and the quota lease until the turn ends."""
        while True:
            await asyncio.sleep(self.settings.session_heartbeat_seconds)
            try:
                await self.ledger.touch(self.session_id)
                await self.quota.heartbeat(self.session_id)
            except Exception as exc:
                self._log.warning("session_heartbeat_failed", error=str(exc), error_type=type(exc).__name__)

    def _restore_state(self, request: TurnRequest) -> bool:
        """Load session state for this request. Returns True for a continuation."""
        snapshot = request.session
        is_continuation = request.is_continuation and (snapshot is not None or self._has_state)

        if is_continuation and snapshot is not None:
            # A caller-supplied snapshot wins over whatever this worker remembers
            repository = snapshot.repository or request.repository
            if self.repository is not None and repository is not None and repository.url != self.repository.url:
                self.workspace = None
            self.repository = repository
            self.current_turn = max(snapshot.current_turn, 0)
            # The router forwards no transcript; keep ours unless the caller sent one
            self.history = list(snapshot.messages) or self.history
            self.options = snapshot.options or request.options
            self._log.info(
                "session_restored_from_snapshot",
                previous_turns=self.current_turn,
                history_length=len(self.history),
            )
        elif is_continuation:
            self._log.info("session_continuing_in_memory", previous_turns=self.current_turn)
        else:
            self.repository = request.repository
            self.current_turn = 0
            self.history = []
            self.options = request.options
            self._log.info("session_starting", has_repository=self.repository is not None)

        self._has_state = True
        return is_continuation

    async def _prepare_workspace(self, request: TurnRequest, streamer: SSEStreamer, is_continuation: bool) -> None:
        if self.repository is None:
            streamer.send(SSEEventType.STATUS, {"message": "Starting general chat mode (no repository selected)"})
            return

        if self.workspace is not None and self.workspace.exists():
            streamer.send(
                SSEEventType.STATUS,
                {"message": "Using existing workspace", "repository": self.repository.name},
            )
            return

        self.workspace = None
        action = "Reconnecting to repository" if is_continuation else "Cloning repository"
        streamer.send(SSEEventType.STATUS, {"message": f"{action}: {self.repository.name}..."})

        self.workspace = await self.workspaces.setup_workspace(
            self.repository.url,
            self.session_id,
            token=request.repo_token,
            branch=self.repository.branch,
        )
        streamer.send(
            SSEEventType.STATUS,
            {
                "message": "Repository reconnected" if is_continuation else "Repository cloned successfully",
                "repository": self.repository.name,
            },
        )

    async def _run_turns(self, request: TurnRequest, streamer: SSEStreamer) -> bool:
        """Run the agent. Returns True if the reply is waiting on the user."""
        prompt = request.prompt
        pr_client = self._pr_client(request)

        while self.current_turn < self.options.max_turns and streamer.is_alive:
            self.current_turn += 1
            turn = self.current_turn
            user_message = ConversationMessage(role="user", content=prompt, timestamp=now_ms())

            streamer.send(SSEEventType.CLAUDE_START, {"turn": turn, "prompt": prompt_preview(prompt)})
            self._log.info("turn_started", turn=turn, prompt_length=len(prompt))

            outbound = build_outbound_prompt(
                self.history,
                prompt,
                strategy=self.settings.prompt_strategy,
                max_messages=self.settings.transcript_max_messages,
            )
            result = await self.agent.invoke(
                PromptConfig(
                    prompt=outbound,
                    cwd=str(self.workspace) if self.workspace else None,
                    permission_mode=self.settings.agent_permission_mode,
                    max_turns=self.settings.agent_internal_max_turns,
                    timeout_seconds=self.settings.agent_timeout_seconds,
                    api_key=request.agent_key,
                    base_url=request.agent_base_url,
                )
            )
            text = extract_message_text(result)

            streamer.send(
                SSEEventType.CLAUDE_DELTA,
                {"turn": turn, "content": text, "type": result.type, "subtype": result.subtype},
            )
            assistant_message = ConversationMessage(role="assistant", content=text, timestamp=now_ms())
            self.history += [user_message, assistant_message]
            streamer.send(SSEEventType.CLAUDE_END, {"turn": turn})

            if result.subtype == MAX_TURNS_SUBTYPE:
                streamer.send(
                    SSEEventType.STATUS,
                    {"message": "Reached maximum turns without completion", "turns": result.num_turns},
                )

            await self._record_turn(result, user_message, assistant_message)

            if self.workspace is not None:
                await self._persist_changes(streamer, pr_client)

            if not self.classifier.is_question(text):
                return False

            can_continue = self.current_turn < self.options.max_turns and streamer.is_alive
            if self.settings.auto_continue_on_question and can_continue:
                self._log.info("turn_auto_continue", turn=turn)
                streamer.send(SSEEventType.STATUS, {"message": "Agent asked a question; continuing automatically"})
                prompt = self.settings.synthetic_question_reply
                continue

            streamer.send(SSEEventType.INPUT_REQUEST, {"turn": turn, "message": text})
            return True

        return False

    async def _record_turn(
        self,
        result: AgentResult,
        user_message: ConversationMessage,
        assistant_message: ConversationMessage,
    ) -> None:
        """Charge usage and persist the turn. Bookkeeping failures are logged, not fatal."""
        repository = self.repository.name if self.repository else None
        try:
            await self.quota.record_usage(usage_record_from_cli_result(result, self.session_id, repository))
            await self.quota.heartbeat(self.session_id)
        except Exception as exc:
            self._log.warning("turn_usage_record_failed", error=str(exc), error_type=type(exc).__name__)

        try:
            await self.ledger.append_message(self.session_id, user_message)
            await self.ledger.append_message(self.session_id, assistant_message)
            await self.ledger.update(self.session_id, current_turn=self.current_turn)
        except Exception as exc:
            self._log.warning("turn_ledger_update_failed", error=str(exc), error_type=type(exc).__name__)

    async def _persist_changes(self, streamer: SSEStreamer, pr_client: Any) -> None:
        """Report, and optionally ship, whatever the agent changed in the workspace."""
        path = self.workspace
        if not await self.workspaces.detect_git_changes(path):
            return

        streamer.send(SSEEventType.FILE_CHANGE, {"message": "File changes detected"})

        if self.options.create_pr and pr_client is not None:
            stamp = datetime.now(UTC).strftime("%Y-%m-%d-%H-%M-%S")
            branch = f"claude-interactive-{self.session_id}-{stamp}"
            await self.workspaces.create_feature_branch_commit_and_push(
                path, branch, f"Changes from interactive session {self.session_id}"
            )

            summary = await self.workspaces.read_pr_summary(path)
            repo_info = await pr_client.get_repository()
            pull_request = await pr_client.create_pull_request(
                (summary.split("\n")[0].strip() if summary else "") or f"Interactive session {self.session_id}",
                summary or "Changes from an interactive coding-agent session.",
                branch,
                repo_info.get("default_branch", "main"),
            )
            pr_url = pull_request["html_url"]
            streamer.send(SSEEventType.STATUS, {"message": f"Pull request created: {pr_url}", "prUrl": pr_url})
            self._log.info("pull_request_opened", pr_url=pr_url, branch=branch)
        elif self.options.create_pr:
            self._log.warning("pull_request_skipped", reason="no repository token")

        # Back to a synced tracking state for the next turn
        await self.workspaces.initialize_git_workspace(path)

    def _pr_client(self, request: TurnRequest) -> Any:
        if not self.options.create_pr or self.repository is None or not request.repo_token:
            return None
        return self.pr_client_factory(request.repo_token, self.repository.name)

    async def _set_status(self, status: SessionStatus, error_message: str | None = None) -> None:
        self.status = status
        try:
            await self.ledger.update(self.session_id, status=status, error_message=error_message)
        except Exception as exc:
            self._log.warning("session_status_update_failed", status=status.value, error=str(exc))

    async def _fail(self, exc: Exception, streamer: SSEStreamer) -> None:
        debug_id = str(uuid.uuid4())
        if isinstance(exc, WorkspaceError):
            self.workspace = None
        if isinstance(exc, RelayError):
            message = exc.public_message
        else:
            message = "The session failed unexpectedly"

        self._log.error(
            "turn_failed",
            debug_id=debug_id,
            error=str(exc),
            error_type=type(exc).__name__,
            turn=self.current_turn,
            exc_info=not isinstance(exc, RelayError),
        )
        await self._set_status(SessionStatus.ERROR, error_message=message)
        streamer.send(SSEEventType.ERROR, {"message": message, "debugId": debug_id})

    def _completion_payload(self) -> dict:
        payload: dict = {"sessionId": self.session_id, "turns": self.current_turn}
        last_user = next((m for m in reversed(self.history) if m.role == "user"), None)
        last = self.history[-1] if self.history else None
        if last_user is not None:
            payload["lastUserMessage"] = {"content": last_user.content, "timestamp": last_user.timestamp}
        if last is not None and last.role == "assistant":
            payload["lastAssistantMessage"] = {"content": last.content, "timestamp": last.timestamp}
        return payload
