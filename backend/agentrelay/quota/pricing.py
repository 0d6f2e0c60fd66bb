"""Cost estimation for agent turns.

This is a conservative approximation, not billing. Preference order for a
turn's cost:
  1. the exact cost the agent reports (``total_cost_usd``)
  2. the per-model price table applied to reported token counts
  3. token counts scraped from the agent's text output
  4. a fixed per-turn token estimate

Prices are microdollars per million tokens so pricing changes need no code
changes in the tracker.
"""

import json
import re
import time

import structlog

from agentrelay.quota.schemas import UsageRecord
from agentrelay.worker.schemas import AgentResult

logger = structlog.get_logger(__name__)

MODEL_PRICING: dict[str, dict[str, int]] = {
    "sonnet": {
        "input": 3_000_000,    # $3/M input tokens in microdollars
        "output": 15_000_000,  # $15/M output tokens in microdollars
    },
    "opus": {
        "input": 15_000_000,
        "output": 75_000_000,
    },
    "haiku": {
        "input": 1_000_000,
        "output": 5_000_000,
    },
}

DEFAULT_MODEL = "sonnet"

# Assumed input and output tokens per agent-internal turn when nothing better is known
TOKENS_PER_TURN_ESTIMATE = 2000

_USAGE_BLOCK_RE = re.compile(r"(?:usage|tokens).*?:\s*\{[^}]*\}", re.IGNORECASE)
_INPUT_RE = re.compile(r"input[_\s]?tokens?\s*[:=]\s*(\d+)", re.IGNORECASE)
_OUTPUT_RE = re.compile(r"output[_\s]?tokens?\s*[:=]\s*(\d+)", re.IGNORECASE)


def resolve_pricing(model: str | None) -> dict[str, int]:
    """Map a model id ("claude-opus-4-...", "haiku") to its price family. Defaults to sonnet."""
    if model:
        lowered = model.lower()
        for family, prices in MODEL_PRICING.items():
            if family in lowered:
                return prices
    return MODEL_PRICING[DEFAULT_MODEL]


def estimate_cost(input_tokens: int, output_tokens: int, model: str | None = DEFAULT_MODEL) -> float:
    """Return the estimated USD cost of a token count."""
    prices = resolve_pricing(model)
    microdollars = (max(0, input_tokens) * prices["input"] + max(0, output_tokens) * prices["output"]) / 1_000_000
    return microdollars / 1_000_000


def parse_tokens_from_cli_output(output: str) -> tuple[int, int] | None:
    """Scrape (input, output) token counts from free-form agent output.

    Understands ``usage: {"input_tokens": 1000, "output_tokens": 500}`` blocks
    and ``input_tokens=1000`` style pairs. Returns None when neither is present.
    """
    if not output:
        return None

    block = _USAGE_BLOCK_RE.search(output)
    if block:
        try:
            parsed = json.loads(re.sub(r"^[^:]+:\s*", "", block.group(0)))
            return (
                int(parsed.get("input_tokens") or parsed.get("input") or 0),
                int(parsed.get("output_tokens") or parsed.get("output") or 0),
            )
        except (ValueError, AttributeError):
            pass  # fall through to the key=value scan

    input_match = _INPUT_RE.search(output)
    output_match = _OUTPUT_RE.search(output)
    if input_match or output_match:
        return (
            int(input_match.group(1)) if input_match else 0,
            int(output_match.group(1)) if output_match else 0,
        )

    return None


def _usage_tokens(result: AgentResult) -> tuple[int, int] | None:
    if not result.usage:
        return None
    return (
        int(result.usage.get("input_tokens") or 0),
        int(result.usage.get("output_tokens") or 0),
    )


def calculate_cost_from_cli_result(result: AgentResult) -> float:
    """Estimate the USD cost of one agent invocation."""
    if result.total_cost_usd:
        return result.total_cost_usd

    tokens = _usage_tokens(result)
    if tokens is None:
        tokens = parse_tokens_from_cli_output(result.result or "")
    if tokens is not None:
        return estimate_cost(*tokens, model=result.model)

    logger.info("cost_estimate_fallback_per_turn", num_turns=result.num_turns)
    estimated = max(1, result.num_turns) * TOKENS_PER_TURN_ESTIMATE
    return estimate_cost(estimated, estimated, model=result.model)


def usage_record_from_cli_result(
    result: AgentResult,
    session_id: str,
    repository: str | None = None,
) -> UsageRecord:
    """Build the usage record charged to the quota for one turn."""
    cost = calculate_cost_from_cli_result(result)

    tokens = _usage_tokens(result)
    if tokens is not None:
        tokens_used = sum(tokens)
    else:
        # Back out a token count from cost at the input rate
        input_rate = resolve_pricing(result.model)["input"] / 1_000_000 / 1_000_000
        tokens_used = round(cost / input_rate)

    return UsageRecord(
        session_id=session_id,
        timestamp=int(time.time() * 1000),
        api_calls=max(1, result.num_turns),
        tokens_used=tokens_used,
        cost_estimate=cost,
        repository=repository,
    )
