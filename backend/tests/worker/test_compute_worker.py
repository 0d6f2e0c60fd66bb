"""Turn-loop tests for ComputeWorker with a scripted agent and fakeredis."""

import asyncio
from pathlib import Path

import pytest

from agentrelay.core.exceptions import SessionBusyError, WorkspaceError
from agentrelay.quota.schemas import QuotaConfig
from agentrelay.quota.tracker import QuotaTracker
from agentrelay.sessions.ledger import SessionLedger
from agentrelay.sessions.schemas import (
    ConversationMessage,
    RepositoryBinding,
    SessionOptions,
    SessionStatus,
)
from agentrelay.worker.classifier import KeywordQuestionClassifier
from agentrelay.worker.compute import (
    ComputeWorker,
    access_failure_message,
    build_outbound_prompt,
    prompt_preview,
    worker_name,
)
from agentrelay.worker.git_workspace import GitWorkspaceManager
from agentrelay.worker.schemas import AgentResult, SessionSnapshot, TurnRequest

pytestmark = pytest.mark.unit


@pytest.fixture
def ledger(redis):
    return SessionLedger(redis)


@pytest.fixture
def quota(redis):
    return QuotaTracker(redis, QuotaConfig(max_daily_tokens=100_000, max_daily_cost=10.0, max_concurrent_sessions=5))


@pytest.fixture
def make_worker(settings, ledger, quota, pr_clients):
    workspaces = GitWorkspaceManager(settings.workspace_root, committer_name="Relay Bot", committer_email="bot@example.com")

    def make(agent, session_id="sess_a", worker_settings=None):
        return ComputeWorker(
            session_id,
            agent=agent,
            workspaces=workspaces,
            ledger=ledger,
            quota=quota,
            classifier=KeywordQuestionClassifier(),
            settings=worker_settings or settings,
            pr_client_factory=pr_clients,
        )

    return make


async def _run(worker, collect, **request) -> list[tuple[str, dict]]:
    request.setdefault("session_id", worker.session_id)
    streamer = await worker.dispatch(TurnRequest(**request))
    events = await collect(streamer)
    await worker.wait_idle()
    return events


def _names(events):
    return [name for name, _ in events]


def _statuses(events):
    return [data["message"] for name, data in events if name == "status"]


async def test_general_chat_single_turn(make_worker, fake_agent, ledger, quota, collect):
    await ledger.create("sess_a")
    worker = make_worker(fake_agent)

    events = await _run(worker, collect, prompt="List the files")

    assert _names(events) == [
        "connected",
        "status",
        "status",
        "claude_start",
        "claude_delta",
        "claude_end",
        "complete",
        "end",
    ]
    assert _statuses(events) == ["Starting general chat mode (no repository selected)", "Starting agent..."]
    complete = dict(events)["complete"]
    assert complete["sessionId"] == "sess_a"
    assert complete["turns"] == 1
    assert complete["lastUserMessage"]["content"] == "List the files"
    assert complete["lastAssistantMessage"]["content"] == "Here are the files: README.md"

    record = await ledger.get("sess_a")
    assert record.status == SessionStatus.COMPLETED
    assert record.current_turn == 1
    assert [m.role for m in record.messages] == ["user", "assistant"]
    assert (await quota.get_today_usage()).total_tokens == 150
    assert fake_agent.calls[0].cwd is None


async def test_claude_delta_carries_extracted_text(make_worker, agent_factory, ledger, collect):
    await ledger.create("sess_a")
    agent = agent_factory(AgentResult(subtype="success", num_turns=1, content=[{"type": "text", "text": "From blocks"}]))

    events = await _run(make_worker(agent), collect, prompt="hi")

    delta = dict(events)["claude_delta"]
    assert delta == {"turn": 1, "content": "From blocks", "type": "result", "subtype": "success", "timestamp": delta["timestamp"]}


async def test_agent_failure_emits_single_error(make_worker, failing_agent, ledger, collect):
    await ledger.create("sess_a")

    events = await _run(make_worker(failing_agent), collect, prompt="hi")

    assert _names(events)[-2:] == ["error", "end"]
    assert "complete" not in _names(events)
    error = dict(events)["error"]
    assert error["message"] == "The coding agent failed to complete this turn"
    assert error["debugId"]

    record = await ledger.get("sess_a")
    assert record.status == SessionStatus.ERROR
    assert record.error_message == error["message"]


async def test_missing_repository_reports_access_failure(make_worker, fake_agent, ledger, collect, tmp_path):
    repo = RepositoryBinding(url=str(tmp_path / "missing.git"), name="acme/missing")
    await ledger.create("sess_a", repository=repo)
    worker = make_worker(fake_agent)

    events = await _run(worker, collect, prompt="hi", repository=repo, repo_token="ghs_testtoken")

    assert _statuses(events) == ["Cloning repository: acme/missing..."]
    assert dict(events)["error"]["message"] == access_failure_message(repo)
    assert fake_agent.calls == []
    assert (await ledger.get("sess_a")).status == SessionStatus.ERROR
    assert worker.workspace is None


class SyncFailingWorkspaces:
    """Workspace manager whose post-turn sync fails after changes were detected."""

    async def detect_git_changes(self, path):
        return True

    async def initialize_git_workspace(self, path):
        raise WorkspaceError("Failed to initialize git workspace: fatal: unable to access remote")

    async def teardown(self, path):
        pass


async def test_sync_failure_after_turn_is_not_an_access_failure(settings, ledger, quota, fake_agent, collect, tmp_path):
    repo = RepositoryBinding(url="https://github.com/acme/app.git", name="acme/app")
    await ledger.create("sess_a", repository=repo)
    worker = ComputeWorker(
        "sess_a",
        agent=fake_agent,
        workspaces=SyncFailingWorkspaces(),
        ledger=ledger,
        quota=quota,
        classifier=KeywordQuestionClassifier(),
        settings=settings,
    )
    worker.workspace = tmp_path

    events = await _run(worker, collect, prompt="Edit the README", repository=repo)

    assert "Using existing workspace" in _statuses(events)
    assert "file_change" in _names(events)
    error = dict(events)["error"]
    assert error["message"] == "Failed to sync the repository workspace"
    assert error["message"] != access_failure_message(repo)
    assert worker.workspace is None


async def test_turn_timeout_ends_with_error(make_worker, blocking_agent, ledger, settings, collect):
    await ledger.create("sess_a")
    worker = make_worker(blocking_agent, worker_settings=settings.model_copy(update={"session_turn_timeout_seconds": 0.1}))

    events = await _run(worker, collect, prompt="long job")

    assert _names(events)[-2:] == ["error", "end"]
    assert "complete" not in _names(events)
    assert dict(events)["error"]["message"] == "The session timed out before this turn finished"
    assert (await ledger.get("sess_a")).status == SessionStatus.ERROR
    assert not worker.busy


async def test_heartbeat_refreshes_activity_and_lease_mid_turn(make_worker, blocking_agent, ledger, quota, redis, settings, collect):
    await ledger.create("sess_a")
    await quota.start_session("sess_a")
    worker = make_worker(blocking_agent, worker_settings=settings.model_copy(update={"session_heartbeat_seconds": 0.01}))

    streamer = await worker.dispatch(TurnRequest(session_id="sess_a", prompt="long job"))
    await blocking_agent.started.wait()
    await redis.hset("relay:session:sess_a", "last_activity_at", "0")
    await redis.persist("relay:quota:lease:sess_a")
    await asyncio.sleep(0.1)

    assert int(await redis.hget("relay:session:sess_a", "last_activity_at")) > 0
    assert await redis.ttl("relay:quota:lease:sess_a") > 0

    blocking_agent.release.set()
    events = await collect(streamer)
    assert events[-2][0] == "complete"


@pytest.mark.integration
async def test_create_pr_ships_changes(make_worker, agent_factory, ledger, collect, origin_repo, git, pr_clients):
    def write_changes(config):
        Path(config.cwd, "notes.txt").write_text("hello\n")
        Path(config.cwd, ".claude-pr-summary.md").write_text("Add notes\n\nAdds a notes file.\n")

    repo = RepositoryBinding(url=origin_repo, name="acme/app")
    options = SessionOptions(create_pr=True)
    await ledger.create("sess_a", repository=repo, options=options)
    worker = make_worker(agent_factory("Added notes.txt", on_invoke=write_changes))

    events = await _run(worker, collect, prompt="Add a notes file", repository=repo, options=options, repo_token="ghs_testtoken")

    names = _names(events)
    assert names.index("claude_end") < names.index("file_change") < names.index("complete")
    assert _statuses(events)[:3] == ["Cloning repository: acme/app...", "Repository cloned successfully", "Starting agent..."]
    pr_status = [data for name, data in events if name == "status" and "prUrl" in data]
    assert pr_status[0]["prUrl"] == "https://github.com/acme/app/pull/1"

    created = pr_clients.built[0].created[0]
    assert created["title"] == "Add notes"
    assert created["base"] == "main"
    assert created["head"].startswith("claude-interactive-sess_a-")
    assert git("rev-parse", f"refs/heads/{created['head']}", cwd=origin_repo)
    assert await worker.workspaces.detect_git_changes(worker.workspace) is False


@pytest.mark.integration
async def test_changes_without_create_pr_are_only_reported(make_worker, agent_factory, ledger, collect, origin_repo, pr_clients):
    repo = RepositoryBinding(url=origin_repo, name="acme/app")
    await ledger.create("sess_a", repository=repo)
    worker = make_worker(agent_factory("Done.", on_invoke=lambda c: Path(c.cwd, "x.txt").write_text("x")))

    events = await _run(worker, collect, prompt="write x", repository=repo, repo_token="ghs_testtoken")

    assert "file_change" in _names(events)
    assert pr_clients.built == []
    assert await worker.workspaces.detect_git_changes(worker.workspace) is True


@pytest.mark.integration
async def test_continuation_reuses_workspace(make_worker, fake_agent, ledger, collect, origin_repo):
    repo = RepositoryBinding(url=origin_repo, name="acme/app")
    await ledger.create("sess_a", repository=repo)
    worker = make_worker(fake_agent)
    await _run(worker, collect, prompt="first", repository=repo, repo_token="ghs_testtoken")

    events = await _run(
        worker,
        collect,
        prompt="second",
        repository=repo,
        repo_token="ghs_testtoken",
        is_continuation=True,
        session=SessionSnapshot(repository=repo, current_turn=1),
    )

    assert _statuses(events)[:2] == ["Continuing conversation...", "Using existing workspace"]
    assert dict(events)["complete"]["turns"] == 2
    assert fake_agent.calls[1].cwd == str(worker.workspace)


async def test_question_moves_session_to_waiting_input(make_worker, agent_factory, ledger, collect):
    await ledger.create("sess_a")
    agent = agent_factory("I can refactor this module. Would you like me to proceed?")

    events = await _run(make_worker(agent), collect, prompt="Look at utils.py")

    names = _names(events)
    assert names.index("input_request") < names.index("complete")
    assert dict(events)["input_request"]["turn"] == 1
    assert (await ledger.get("sess_a")).status == SessionStatus.WAITING_INPUT


async def test_auto_continue_answers_question(make_worker, agent_factory, settings, ledger, collect):
    await ledger.create("sess_a")
    agent = agent_factory("Shall I continue?", "All done.")
    worker = make_worker(agent, worker_settings=settings.model_copy(update={"auto_continue_on_question": True}))

    events = await _run(worker, collect, prompt="Fix the build")

    assert len(agent.calls) == 2
    assert agent.calls[1].prompt == settings.synthetic_question_reply
    assert "input_request" not in _names(events)
    assert dict(events)["complete"]["turns"] == 2
    assert (await ledger.get("sess_a")).current_turn == 2


async def test_turn_limit_completes_without_invoking(make_worker, fake_agent, ledger, collect):
    await ledger.create("sess_a")
    worker = make_worker(fake_agent)
    await _run(worker, collect, prompt="one", options=SessionOptions(max_turns=1))

    events = await _run(worker, collect, prompt="two", options=SessionOptions(max_turns=1), is_continuation=True)

    assert "Turn limit reached" in _statuses(events)
    assert "claude_start" not in _names(events)
    assert dict(events)["complete"]["turns"] == 1
    assert len(fake_agent.calls) == 1


async def test_snapshot_restores_turn_count(make_worker, fake_agent, ledger, collect):
    await ledger.create("sess_a")
    snapshot = SessionSnapshot(
        current_turn=3,
        messages=[ConversationMessage(role="user", content="earlier", timestamp=1)],
        options=SessionOptions(max_turns=10),
    )

    events = await _run(make_worker(fake_agent), collect, prompt="again", is_continuation=True, session=snapshot)

    assert dict(events)["complete"]["turns"] == 4


async def test_busy_worker_rejects_second_dispatch(make_worker, agent_factory, ledger, collect):
    await ledger.create("sess_a")
    release = asyncio.Event()

    class SlowAgent(agent_factory):
        async def invoke(self, config):
            await release.wait()
            return await super().invoke(config)

    worker = make_worker(SlowAgent("ok"))
    streamer = await worker.dispatch(TurnRequest(session_id="sess_a", prompt="first"))

    assert worker.busy
    with pytest.raises(SessionBusyError):
        await worker.dispatch(TurnRequest(session_id="sess_a", prompt="second", is_continuation=True))

    release.set()
    events = await collect(streamer)
    await worker.wait_idle()
    assert _names(events)[-2:] == ["complete", "end"]
    assert not worker.busy


async def test_disconnect_mid_turn_lets_turn_finish(make_worker, agent_factory, ledger):
    await ledger.create("sess_a")
    started = asyncio.Event()
    release = asyncio.Event()

    class SlowAgent(agent_factory):
        async def invoke(self, config):
            started.set()
            await release.wait()
            return await super().invoke(config)

    worker = make_worker(SlowAgent("ok"))
    streamer = await worker.dispatch(TurnRequest(session_id="sess_a", prompt="hi"))
    await started.wait()

    streamer.disconnect()
    release.set()
    await worker.wait_idle()

    record = await ledger.get("sess_a")
    assert record.current_turn == 1
    assert record.status == SessionStatus.COMPLETED
    assert streamer.send("status", {"message": "late"}) is False


async def test_disconnect_before_start_skips_turn(make_worker, fake_agent, ledger):
    await ledger.create("sess_a")
    worker = make_worker(fake_agent)

    streamer = await worker.dispatch(TurnRequest(session_id="sess_a", prompt="hi"))
    streamer.disconnect()
    await worker.wait_idle()

    assert fake_agent.calls == []
    assert (await ledger.get("sess_a")).current_turn == 0


def test_outbound_prompt_strategies():
    history = [
        ConversationMessage(role="user", content="hi", timestamp=1),
        ConversationMessage(role="assistant", content="hello", timestamp=2),
    ]

    assert build_outbound_prompt(history, "next") == "next"
    transcript = build_outbound_prompt(history, "next", strategy="transcript", max_messages=1)
    assert transcript == "Previous conversation:\n\nAssistant: hello\n\nUser: next"


def test_naming_helpers():
    assert worker_name("sess_a") == "interactive-sess_a"
    assert prompt_preview("x" * 250) == "x" * 200 + "..."
    assert prompt_preview("short") == "short"
