"""Agent backends: the external coding-agent CLI and the direct Messages API.

Both implement ``AgentBackend.invoke(PromptConfig) -> AgentResult`` so the
turn loop never knows which one it is driving.
"""

import asyncio
import json
import os
import time
from typing import Any, Protocol, runtime_checkable

import structlog
from anthropic import APIError, AsyncAnthropic
from anthropic._exceptions import OverloadedError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from agentrelay.core.config import Settings
from agentrelay.core.exceptions import AgentInvocationError
from agentrelay.core.redaction import redact_secrets
from agentrelay.worker.schemas import AgentResult, PromptConfig

logger = structlog.get_logger(__name__)

FALLBACK_TEXT = "Processing completed."

# Agent stops early because its own turn budget ran out
MAX_TURNS_SUBTYPE = "error_max_turns"


@runtime_checkable
class AgentBackend(Protocol):
    """Runs one agent turn and returns its structured result."""

    async def invoke(self, config: PromptConfig) -> AgentResult:
        """Run the agent on config.prompt.

        Raises:
            AgentInvocationError: non-zero exit, unparsable output, or timeout
        """
        ...


class ClaudeCLIBackend:
    """Runs the coding-agent CLI as a subprocess, one JSON object per turn."""

    def __init__(self, cli_path: str = "claude"):
        self.cli_path = cli_path

    def build_args(self, config: PromptConfig) -> list[str]:
        return [
            self.cli_path,
            "--output-format", "json",
            "-p", "--print",
            "--permission-mode", config.permission_mode,
            "--max-turns", str(config.max_turns),
            config.prompt,
        ]

    def build_env(self, config: PromptConfig) -> dict[str, str]:
        env = dict(os.environ)
        if config.api_key:
            env["ANTHROPIC_API_KEY"] = config.api_key
        if config.base_url:
            env["ANTHROPIC_BASE_URL"] = config.base_url
        return env

    async def invoke(self, config: PromptConfig) -> AgentResult:
        started = time.monotonic()
        logger.info(
            "agent_cli_starting",
            cwd=config.cwd,
            prompt_length=len(config.prompt),
            permission_mode=config.permission_mode,
            has_api_key=bool(config.api_key),
        )

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.build_args(config),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=config.cwd,
                env=self.build_env(config),
            )
        except OSError as exc:
            raise AgentInvocationError(f"Failed to start agent CLI: {exc}") from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(),
                timeout=config.timeout_seconds,
            )
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise
        except TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("agent_cli_timeout", timeout_seconds=config.timeout_seconds)
            raise AgentInvocationError(f"Agent CLI timed out after {config.timeout_seconds}s") from None

        stdout = stdout_bytes.decode(errors="replace").strip()
        stderr = stderr_bytes.decode(errors="replace").strip()

        if proc.returncode != 0 or not stdout:
            detail = redact_secrets(stderr or stdout)[:500]
            raise AgentInvocationError(f"Agent CLI exited with code {proc.returncode}: {detail}")

        try:
            payload = json.loads(stdout)
        except json.JSONDecodeError:
            raise AgentInvocationError(
                f"Failed to parse agent CLI output: {redact_secrets(stdout[:200])}"
            ) from None
        if not isinstance(payload, dict):
            raise AgentInvocationError("Agent CLI output is not a JSON object")

        result = AgentResult.model_validate(payload)
        logger.info(
            "agent_cli_finished",
            subtype=result.subtype,
            num_turns=result.num_turns,
            elapsed_s=round(time.monotonic() - started, 2),
        )
        return result


class AnthropicAPIBackend:
    """Answers a turn with a single Messages API call (no tools, no file access)."""

    def __init__(self, model: str, max_tokens: int = 4096, client: Any = None):
        self.model = model
        self.max_tokens = max_tokens
        self._client = client

    def _client_for(self, config: PromptConfig) -> Any:
        if self._client is not None:
            return self._client
        kwargs = {"api_key": config.api_key}
        if config.base_url:
            kwargs["base_url"] = config.base_url
        return AsyncAnthropic(**kwargs)

    @retry(
        retry=retry_if_exception_type(OverloadedError),
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=2, min=2, max=30),
        reraise=True,
        before_sleep=lambda rs: logger.warning(
            "agent_api_overloaded_retrying",
            attempt=rs.attempt_number,
            sleep_seconds=rs.next_action.sleep,
        ),
    )
    async def _create(self, client: Any, prompt: str) -> Any:
        return await client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=[{"role": "user", "content": prompt}],
        )

    async def invoke(self, config: PromptConfig) -> AgentResult:
        started = time.monotonic()
        client = self._client_for(config)

        try:
            response = await asyncio.wait_for(
                self._create(client, config.prompt),
                timeout=config.timeout_seconds,
            )
        except TimeoutError:
            raise AgentInvocationError(f"Agent API timed out after {config.timeout_seconds}s") from None
        except APIError as exc:
            raise AgentInvocationError(f"Agent API call failed: {exc}") from exc

        text = "\n\n".join(block.text for block in response.content if getattr(block, "type", None) == "text")
        elapsed_ms = int((time.monotonic() - started) * 1000)
        return AgentResult(
            type="result",
            subtype="success",
            duration_ms=elapsed_ms,
            duration_api_ms=elapsed_ms,
            num_turns=1,
            result=text,
            usage={
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
            },
            model=response.model,
        )


def build_agent_backend(settings: Settings) -> AgentBackend:
    """Select the backend named by settings.agent_backend ("cli" or "api")."""
    if settings.agent_backend == "api":
        return AnthropicAPIBackend(model=settings.agent_api_model, max_tokens=settings.agent_api_max_tokens)
    if settings.agent_backend != "cli":
        logger.warning("unknown_agent_backend", agent_backend=settings.agent_backend)
    return ClaudeCLIBackend(cli_path=settings.agent_cli_path)


def _text_blocks(content: Any) -> str | None:
    if not isinstance(content, list):
        return None
    text = "\n\n".join(
        item.get("text", "") for item in content if isinstance(item, dict) and item.get("type") == "text"
    )
    return text if text.strip() else None


def extract_message_text(result: AgentResult | dict) -> str:
    """Pick the human-readable text out of an agent result.

    Order: ``result`` string, ``content``/``text`` string, ``content`` text
    blocks, ``message.content`` text blocks, then a fixed fallback. Raw JSON
    is never returned.
    """
    data = result.model_dump() if isinstance(result, AgentResult) else dict(result)

    if isinstance(data.get("result"), str) and data["result"]:
        return data["result"]
    if isinstance(data.get("content"), str):
        return data["content"]
    if isinstance(data.get("text"), str):
        return data["text"]

    text = _text_blocks(data.get("content"))
    if text:
        return text

    message = data.get("message")
    if isinstance(message, dict):
        text = _text_blocks(message.get("content"))
        if text:
            return text

    return FALLBACK_TEXT
