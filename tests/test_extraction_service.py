"""
test_extraction_service.py — Tests for the extraction clients

Covers: HTTP service contract (payload shape, complete key set,
placeholder normalization), failure → ExtractionError, interest
detection (keyword short-circuit and model fallback), Claude backend via
tool_use responses, and backend selection from settings.

Called by: pytest
Depends on: sheetsync/services/extraction_service.py, sheetsync/utils/claude_client.py
"""

import json
from unittest.mock import patch

import httpx
import pytest

from sheetsync.config import Settings
from sheetsync.errors import ExtractionError
from sheetsync.schemas.sync import ColumnDefinition
from sheetsync.services.extraction_service import (
    ClaudeExtractionClient,
    HttpExtractionClient,
    build_extraction_client,
    normalize_value,
)

COLUMNS = [
    ColumnDefinition(id="name", name="Name", type_hint="name", prompt="extract customer's name"),
    ColumnDefinition(id="interest", name="Interest", prompt="extract product interest"),
    ColumnDefinition(id="email", name="Email", type_hint="email"),
]


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ── normalize_value() ──────────────────────────────────────────────────


@pytest.mark.parametrize("raw, expected", [
    (None, ""),
    ("N/A", ""),
    ("  not found ", ""),
    ("null", ""),
    ("Jane", "Jane"),
    (["premium", "", "basic"], "premium, basic"),
    (True, "yes"),
    (42, "42"),
])
def test_normalize_value(raw, expected):
    assert normalize_value(raw) == expected


# ── HttpExtractionClient ───────────────────────────────────────────────


@pytest.mark.asyncio
async def test_http_extract_sends_fields_and_fills_missing_keys():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"name": "Jane", "interest": "premium plan", "extra": "x"})

    client = HttpExtractionClient("https://extract.example/v1", api_key="k1", client=_client(handler))
    result = await client.extract("I'm Jane, interested in the premium plan", COLUMNS)

    assert result == {"name": "Jane", "interest": "premium plan", "email": ""}
    assert seen["body"]["text"] == "I'm Jane, interested in the premium plan"
    assert [f["id"] for f in seen["body"]["fields"]] == ["name", "interest", "email"]
    assert seen["body"]["fields"][0]["prompt"] == "extract customer's name"
    # Columns without a prompt get the type-hint default
    assert "email" in seen["body"]["fields"][2]["prompt"].lower()
    assert seen["auth"] == "Bearer k1"


@pytest.mark.asyncio
async def test_http_extract_accepts_display_name_keys():
    client = HttpExtractionClient(
        "https://extract.example/v1",
        client=_client(lambda r: httpx.Response(200, json={"Name": "Jane", "Interest": "N/A"})),
    )
    result = await client.extract("hi", COLUMNS)
    assert result == {"name": "Jane", "interest": "", "email": ""}


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(500, text="boom"),
    httpx.Response(200, json=["not", "an", "object"]),
    httpx.Response(200, text="I could not parse that"),
])
async def test_http_extract_failures_raise(response):
    client = HttpExtractionClient("https://extract.example/v1", client=_client(lambda r: response))
    with pytest.raises(ExtractionError):
        await client.extract("hi", COLUMNS)


@pytest.mark.asyncio
async def test_http_extract_unreachable_raises():
    def handler(request):
        raise httpx.ConnectError("refused")

    client = HttpExtractionClient("https://extract.example/v1", client=_client(handler))
    with pytest.raises(ExtractionError) as exc_info:
        await client.extract("hi", COLUMNS)
    assert exc_info.value.reason == "extraction failed"


@pytest.mark.asyncio
async def test_http_extract_fenced_json_is_parsed():
    body = '```json\n{"name": "Jane"}\n```'
    client = HttpExtractionClient(
        "https://extract.example/v1", client=_client(lambda r: httpx.Response(200, text=body)),
    )
    result = await client.extract("hi", COLUMNS)
    assert result["name"] == "Jane"


@pytest.mark.asyncio
async def test_no_columns_makes_no_call():
    def handler(request):
        raise AssertionError("should not be called")

    client = HttpExtractionClient("https://extract.example/v1", client=_client(handler))
    assert await client.extract("hi", []) == {}


# ── detect_interest() ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_interest_keyword_hit_skips_model():
    def handler(request):
        raise AssertionError("keyword match should not call the service")

    client = HttpExtractionClient("https://extract.example/v1", client=_client(handler))
    assert await client.detect_interest("Do you have the PREMIUM plan?", ["premium"]) is True


@pytest.mark.asyncio
@pytest.mark.parametrize("answer, expected", [("yes", True), ("no", False), ("", False)])
async def test_interest_falls_back_to_extraction(answer, expected):
    client = HttpExtractionClient(
        "https://extract.example/v1",
        client=_client(lambda r: httpx.Response(200, json={"interested": answer})),
    )
    assert await client.detect_interest("how much does it cost?", ["premium"]) is expected


# ── ClaudeExtractionClient ─────────────────────────────────────────────


def _tool_use(payload: dict) -> dict:
    return {"content": [{"type": "tool_use", "name": "structured_output", "input": payload}]}


@pytest.mark.asyncio
async def test_claude_extract_uses_tool_schema():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_tool_use({"name": "Jane", "interest": "premium plan", "email": "none"}))

    with patch("sheetsync.utils.claude_client.settings.anthropic_api_key", "sk-test"):
        client = ClaudeExtractionClient(client=_client(handler))
        result = await client.extract("I'm Jane", COLUMNS)

    assert result == {"name": "Jane", "interest": "premium plan", "email": ""}
    schema = seen["body"]["tools"][0]["input_schema"]
    assert schema["required"] == ["name", "interest", "email"]
    assert seen["body"]["tool_choice"] == {"type": "tool", "name": "structured_output"}


@pytest.mark.asyncio
async def test_claude_without_key_raises_extraction_error():
    with patch("sheetsync.utils.claude_client.settings.anthropic_api_key", ""):
        client = ClaudeExtractionClient(client=_client(lambda r: httpx.Response(200, json={})))
        with pytest.raises(ExtractionError):
            await client.extract("hi", COLUMNS)


@pytest.mark.asyncio
async def test_claude_without_tool_block_raises():
    response = {"content": [{"type": "text", "text": "Sorry"}]}
    with patch("sheetsync.utils.claude_client.settings.anthropic_api_key", "sk-test"):
        client = ClaudeExtractionClient(client=_client(lambda r: httpx.Response(200, json=response)))
        with pytest.raises(ExtractionError):
            await client.extract("hi", COLUMNS)


# ── build_extraction_client() ──────────────────────────────────────────


def test_build_prefers_external_service():
    client = build_extraction_client(Settings(extraction_service_url="https://extract.example/v1"))
    assert isinstance(client, HttpExtractionClient)
    assert client.url == "https://extract.example/v1"


def test_build_defaults_to_claude():
    client = build_extraction_client(Settings(extraction_service_url="", extraction_model_tier="smart"))
    assert isinstance(client, ClaudeExtractionClient)
    assert client.model_tier == "smart"
