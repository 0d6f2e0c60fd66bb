"""Shared test fixtures: fakeredis, settings, fake agent/PR collaborators, git origins."""

import asyncio
import json
import os
import shutil
import subprocess
from pathlib import Path

import pytest
from fakeredis import FakeAsyncRedis

from agentrelay.core.config import Settings
from agentrelay.core.exceptions import AgentInvocationError
from agentrelay.worker.schemas import AgentResult, PromptConfig


@pytest.fixture
async def redis():
    """Provide fakeredis async client."""
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the environment and .env files."""
    return Settings(
        _env_file=None,
        anthropic_api_key="sk-test-key",
        github_token="ghs_testtoken",
        workspace_root=str(tmp_path / "workspaces"),
        stream_flush_grace_seconds=0,
        git_timeout_seconds=60,
    )


class FakeAgent:
    """AgentBackend double.

    Each invoke pops the next scripted reply. A reply is a result string, an
    AgentResult, or an exception to raise. ``on_invoke`` runs first with the
    PromptConfig, e.g. to write files into the workspace.
    """

    def __init__(self, *replies, on_invoke=None):
        self.replies = list(replies) or ["Done."]
        self.on_invoke = on_invoke
        self.calls: list[PromptConfig] = []

    async def invoke(self, config: PromptConfig) -> AgentResult:
        self.calls.append(config)
        if self.on_invoke is not None:
            self.on_invoke(config)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, AgentResult):
            return reply
        return AgentResult(
            subtype="success",
            num_turns=1,
            result=reply,
            total_cost_usd=0.01,
            usage={"input_tokens": 100, "output_tokens": 50},
        )


class FakePullRequestClient:
    def __init__(self, token: str, full_name: str):
        self.token = token
        self.full_name = full_name
        self.created: list[dict] = []

    async def get_repository(self) -> dict:
        return {"full_name": self.full_name, "default_branch": "main"}

    async def create_pull_request(self, title: str, body: str, branch: str, base_branch: str) -> dict:
        pr = {"title": title, "body": body, "head": branch, "base": base_branch}
        self.created.append(pr)
        return {"number": len(self.created), "html_url": f"https://github.com/{self.full_name}/pull/{len(self.created)}"}


class BlockingAgent:
    """AgentBackend double that holds the turn open until ``release`` is set."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def invoke(self, config: PromptConfig) -> AgentResult:
        self.calls += 1
        self.started.set()
        await self.release.wait()
        return AgentResult(subtype="success", num_turns=1, result="Finished the long job.")


@pytest.fixture
def blocking_agent():
    return BlockingAgent()


@pytest.fixture
def agent_factory():
    """The FakeAgent class, for tests that script their own replies."""
    return FakeAgent


@pytest.fixture
def fake_agent():
    return FakeAgent("Here are the files: README.md")


@pytest.fixture
def failing_agent():
    return FakeAgent(AgentInvocationError("Agent CLI exited with code 1: boom"))


@pytest.fixture
def pr_clients():
    """Factory compatible with ComputeWorker.pr_client_factory; remembers what it built."""
    built: list[FakePullRequestClient] = []

    def factory(token: str, full_name: str) -> FakePullRequestClient:
        client = FakePullRequestClient(token, full_name)
        built.append(client)
        return client

    factory.built = built
    return factory


def parse_frames(raw: str) -> list[tuple[str, dict]]:
    """Split an SSE body into (event, data) pairs."""
    events = []
    for block in raw.strip().split("\n\n"):
        if not block:
            continue
        lines = dict(line.split(": ", 1) for line in block.split("\n"))
        events.append((lines["event"], json.loads(lines["data"])))
    return events


async def drain(streamer) -> list[tuple[str, dict]]:
    """Consume a streamer to completion and parse its frames."""
    frames = [frame async for frame in streamer.frames()]
    return parse_frames("".join(frames))


@pytest.fixture
def collect():
    return drain


@pytest.fixture
def sse_events():
    return parse_frames


def _git(*args: str, cwd: Path | None = None) -> str:
    result = subprocess.run(
        ["git", "-c", "commit.gpgsign=false", *args],
        cwd=cwd,
        # Identity via env, not -c, so `git config user.name` still reads the repo's own value
        env={
            **os.environ,
            "GIT_AUTHOR_NAME": "Test",
            "GIT_AUTHOR_EMAIL": "test@example.com",
            "GIT_COMMITTER_NAME": "Test",
            "GIT_COMMITTER_EMAIL": "test@example.com",
        },
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


@pytest.fixture
def origin_repo(tmp_path) -> str:
    """Bare repository with one commit on main. Returns its path, usable as a clone URL."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")

    bare = tmp_path / "origin.git"
    _git("init", "--bare", str(bare))
    _git("symbolic-ref", "HEAD", "refs/heads/main", cwd=bare)

    seed = tmp_path / "seed"
    _git("init", str(seed))
    _git("symbolic-ref", "HEAD", "refs/heads/main", cwd=seed)
    (seed / "README.md").write_text("# demo\n")
    _git("add", "README.md", cwd=seed)
    _git("commit", "-m", "initial", cwd=seed)
    _git("remote", "add", "origin", str(bare), cwd=seed)
    _git("push", "origin", "main", cwd=seed)
    return str(bare)


@pytest.fixture
def git():
    """Run git in a directory, returning stdout."""
    return _git
