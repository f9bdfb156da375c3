"""
extraction_service.py — Field extraction from free-text chat messages

Turns one message plus a configuration's ordered columns into an
ExtractionResult: column id → extracted value. Two backends share the
same contract:
  - HttpExtractionClient: POSTs {text, fields} to an external extraction
    service and expects {fieldId: value}
  - ClaudeExtractionClient: asks Claude for a tool-forced JSON object

Business Rules:
- Unreachable service, timeout, non-2xx, or non-object output → ExtractionError
  (never guess; the pipeline fails only that configuration)
- Every configured column id is present in the result; "not found"
  placeholders ("N/A", "none", null, ...) normalize to ""
- Interest detection: keyword hit first, otherwise a yes/no extraction

Called by: services/sync_pipeline.py
Depends on: utils/claude_client.py, http_client.py, config.py
"""

import json
import logging
from abc import ABC, abstractmethod

import httpx

from ..config import Settings
from ..errors import ExtractionError
from ..http_client import http
from ..schemas.sync import ColumnDefinition, ExtractionResult
from ..utils.claude_client import ClaudeError, claude_structured, safe_json_parse

log = logging.getLogger(__name__)

NOT_FOUND_MARKERS = {"", "n/a", "na", "none", "null", "not found", "unknown", "-"}

# Default guidance per type hint when a column carries no prompt of its own
TYPE_INSTRUCTIONS = {
    "name": "Extract the person's full name if mentioned. Look for proper names in the message.",
    "phone": "Extract a phone number if one is written in the message.",
    "product": "Extract any products or services mentioned or that the person is interested in.",
    "date": "Extract any dates mentioned and format as YYYY-MM-DD if possible.",
    "email": "Extract an email address if one is written in the message.",
}
DEFAULT_INSTRUCTION = "Extract relevant information for this field."

EXTRACTION_SYSTEM = (
    "You are a data extraction assistant for a business's customer chat. "
    "Extract only what the customer explicitly states. If a field cannot be "
    "extracted, return an empty string for it. Be concise."
)

_INTEREST_FIELD_ID = "interested"


def normalize_value(value) -> str:
    """Coerce an extracted value to a sheet cell string; placeholders become ""."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, (list, tuple)):
        value = ", ".join(normalize_value(v) for v in value if normalize_value(v))
    elif isinstance(value, dict):
        value = json.dumps(value, ensure_ascii=False)
    text = str(value).strip()
    if text.lower() in NOT_FOUND_MARKERS:
        return ""
    return text


def field_instruction(column: ColumnDefinition) -> str:
    if column.prompt:
        return column.prompt
    return TYPE_INSTRUCTIONS.get(column.type_hint.lower(), DEFAULT_INSTRUCTION)


def _interest_column(keywords) -> ColumnDefinition:
    hint = ""
    if keywords:
        hint = f" Products or topics of interest include: {', '.join(keywords)}."
    return ColumnDefinition(
        id=_INTEREST_FIELD_ID,
        name="Interested",
        type_hint="boolean",
        prompt=(
            "Answer 'yes' if the customer shows buying interest or asks about "
            f"a product or service, otherwise 'no'.{hint}"
        ),
    )


class ExtractionClient(ABC):
    """text + columns → ExtractionResult with a complete key set."""

    async def extract(self, text: str, columns) -> ExtractionResult:
        columns = list(columns)
        if not columns:
            return {}
        raw = await self._extract_raw(text, columns)
        if not isinstance(raw, dict):
            raise ExtractionError(f"Extractor returned {type(raw).__name__}, expected an object")
        result: ExtractionResult = {}
        for col in columns:
            value = raw.get(col.id)
            if value is None:
                value = raw.get(col.name)
            result[col.id] = normalize_value(value)
        return result

    async def detect_interest(self, text: str, keywords=()) -> bool:
        """True when the message shows interest. Raises ExtractionError like extract()."""
        keywords = [k.strip() for k in keywords if k and k.strip()]
        lowered = text.lower()
        if any(k.lower() in lowered for k in keywords):
            return True
        result = await self.extract(text, [_interest_column(keywords)])
        return result[_INTEREST_FIELD_ID].lower() in {"yes", "y", "true"}

    @abstractmethod
    async def _extract_raw(self, text: str, columns: list[ColumnDefinition]):
        """Return the backend's raw field map (column id → value)."""


class HttpExtractionClient(ExtractionClient):
    """External extraction service: POST {text, fields} → {fieldId: value}."""

    def __init__(self, url: str, *, api_key: str = "", timeout: float = 20,
                 client: httpx.AsyncClient | None = None):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client or http

    async def _extract_raw(self, text, columns):
        payload = {
            "text": text,
            "fields": [
                {"id": c.id, "name": c.name, "typeHint": c.type_hint, "prompt": field_instruction(c)}
                for c in columns
            ],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            resp = await self._client.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise ExtractionError(f"Extraction service unreachable: {e!r}") from e

        if resp.status_code >= 300:
            raise ExtractionError(f"Extraction service {resp.status_code}: {resp.text[:200]}")

        try:
            return resp.json()
        except ValueError:
            parsed = safe_json_parse(resp.text)
            if parsed is None:
                raise ExtractionError("Extraction service returned malformed output")
            return parsed


class ClaudeExtractionClient(ExtractionClient):
    """Claude-backed extractor using tool-forced structured output."""

    def __init__(self, *, model_tier: str = "fast", timeout: float = 20,
                 client: httpx.AsyncClient | None = None):
        self.model_tier = model_tier
        self.timeout = timeout
        self._client = client

    @staticmethod
    def build_schema(columns: list[ColumnDefinition]) -> dict:
        return {
            "type": "object",
            "properties": {
                c.id: {"type": "string", "description": f"{c.name}: {field_instruction(c)}"}
                for c in columns
            },
            "required": [c.id for c in columns],
        }

    async def _extract_raw(self, text, columns):
        fields = "\n".join(f'- "{c.id}" ({c.name}): {field_instruction(c)}' for c in columns)
        prompt = f"Fields to extract:\n{fields}\n\nCustomer message:\n{text}"
        try:
            return await claude_structured(
                prompt,
                self.build_schema(columns),
                system=EXTRACTION_SYSTEM,
                model_tier=self.model_tier,
                timeout=self.timeout,
                client=self._client,
            )
        except ClaudeError as e:
            raise ExtractionError(str(e)) from e


def build_extraction_client(settings: Settings) -> ExtractionClient:
    """Pick the backend from settings: external service when configured, else Claude."""
    if settings.extraction_service_url:
        log.info(f"Extraction via external service {settings.extraction_service_url}")
        return HttpExtractionClient(
            settings.extraction_service_url,
            api_key=settings.extraction_service_api_key,
            timeout=settings.http_timeout_seconds,
        )
    log.info(f"Extraction via Claude ({settings.extraction_model_tier})")
    return ClaudeExtractionClient(
        model_tier=settings.extraction_model_tier,
        timeout=settings.http_timeout_seconds,
    )
