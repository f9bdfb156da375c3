"""Claude API client — Structured Outputs with prompt caching.

Used by the Claude-backed extractor. Unlike a best-effort helper this
client raises ClaudeError on every failure: the sync pipeline must never
guess field values when the model is unreachable or its output is
malformed.

Two model tiers:
  - FAST: claude-haiku-4-5 for high-volume field extraction
  - SMART: claude-sonnet-4-5 for harder free-text messages

Usage:
    from sheetsync.utils.claude_client import claude_structured
    result = await claude_structured(
        prompt="I'm Jane, interested in the premium plan",
        schema=FIELDS_SCHEMA,
        system="You extract CRM fields from chat messages.",
    )
"""

import json
import logging
from typing import Any

import httpx

from ..config import settings
from ..http_client import http

log = logging.getLogger("sheetsync.claude")

API_URL = "https://api.anthropic.com/v1/messages"
API_VERSION = "2023-06-01"

MODELS = {
    "fast": "claude-haiku-4-5-20251001",
    "smart": "claude-sonnet-4-5-20250929",
}


class ClaudeError(Exception):
    """Claude call failed: not configured, unreachable, non-200, or malformed."""


def _headers(*, cache: bool = False) -> dict:
    """Build API headers. Enable prompt caching when static prompts are reused."""
    h = {
        "x-api-key": settings.anthropic_api_key,
        "anthropic-version": API_VERSION,
        "content-type": "application/json",
    }
    if cache:
        h["anthropic-beta"] = "prompt-caching-2024-07-31"
    return h


async def claude_structured(
    prompt: str,
    schema: dict,
    *,
    system: str = "",
    model_tier: str = "fast",
    max_tokens: int = 1024,
    cache_system: bool = True,
    timeout: float | None = None,
    client: httpx.AsyncClient | None = None,
) -> dict:
    """Call Claude with guaranteed-valid JSON output (tool-forced schema).

    Args:
        prompt: User message content
        schema: JSON Schema that the model MUST conform to
        system: System prompt (cached if cache_system=True)
        model_tier: "fast" (Haiku) or "smart" (Sonnet)
        max_tokens: Max output tokens
        cache_system: Whether to mark the system prompt as cacheable
        timeout: Request timeout seconds (defaults to settings.http_timeout_seconds)
        client: httpx client override (tests)

    Returns:
        Parsed dict conforming to schema.

    Raises:
        ClaudeError: on any failure.
    """
    if not settings.anthropic_api_key:
        raise ClaudeError("ANTHROPIC_API_KEY is not configured")

    model = MODELS.get(model_tier, MODELS["fast"])

    system_blocks = []
    if system:
        block = {"type": "text", "text": system}
        if cache_system:
            block["cache_control"] = {"type": "ephemeral"}
        system_blocks.append(block)

    body: dict[str, Any] = {
        "model": model,
        "max_tokens": max_tokens,
        "messages": [{"role": "user", "content": prompt}],
    }
    if system_blocks:
        body["system"] = system_blocks

    body["tools"] = [
        {
            "name": "structured_output",
            "description": "Return structured data matching the required schema.",
            "input_schema": schema,
        }
    ]
    body["tool_choice"] = {"type": "tool", "name": "structured_output"}

    client = client or http
    try:
        resp = await client.post(
            API_URL,
            headers=_headers(cache=cache_system),
            json=body,
            timeout=timeout or settings.http_timeout_seconds,
        )
    except httpx.HTTPError as e:
        raise ClaudeError(f"Claude request failed: {e!r}") from e

    if resp.status_code != 200:
        raise ClaudeError(f"Claude API {resp.status_code}: {resp.text[:200]}")

    try:
        data = resp.json()
    except ValueError as e:
        raise ClaudeError("Claude returned a non-JSON body") from e

    for block in data.get("content", []):
        if block.get("type") == "tool_use" and block.get("name") == "structured_output":
            payload = block.get("input")
            if isinstance(payload, dict):
                return payload
            break

    raise ClaudeError("Claude structured output: no tool_use block in response")


def safe_json_parse(text: str) -> dict | list | None:
    """Parse JSON from text that may contain markdown fences or preamble."""
    if not text:
        return None

    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = [line for line in cleaned.split("\n") if not line.strip().startswith("```")]
        cleaned = "\n".join(lines).strip()

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    # Try to find a JSON object or array in the text
    for start_char, end_char in [("{", "}"), ("[", "]")]:
        start = cleaned.find(start_char)
        end = cleaned.rfind(end_char)
        if start != -1 and end > start:
            try:
                return json.loads(cleaned[start : end + 1])
            except json.JSONDecodeError:
                continue

    log.debug(f"JSON parse failed: {text[:100]}...")
    return None
