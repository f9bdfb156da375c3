"""
schemas/sync.py — Typed shapes flowing through the sync pipeline

SheetConfig rows carry loosely-typed JSON; SyncConfiguration is the
validated form produced by ConfigurationResolver. A row that fails
validation is skipped, never half-applied.

Business Rules:
- A configuration needs a non-empty sheet id and at least one column
- Column ids and display names are unique within a configuration
- At most one column may be the contact key (type hint "phone", or the
  legacy "Phone Number" column name); none means append-only
"""

from datetime import datetime
from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

CONTACT_KEY_HINTS = {"phone"}
TIMESTAMP_HINTS = {"timestamp"}
CONTACT_NAME_HINTS = {"contact_name"}

_LEGACY_KEY_NAME = "phone number"
_LEGACY_TIMESTAMP_NAME = "timestamp"
_LEGACY_CONTACT_NAME = "customer name"


class Outcome(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    PARTIAL = "partial"
    SKIPPED = "skipped"
    ERROR = "error"


class AttemptStatus(str, Enum):
    APPENDED = "appended"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    FAILED = "failed"


class AddTrigger(str, Enum):
    FIRST_MESSAGE = "first_message"
    INTEREST_DETECTED = "interest_detected"
    MANUAL = "manual"


class ColumnDefinition(BaseModel):
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    type_hint: str = Field(
        default="text", validation_alias=AliasChoices("type_hint", "typeHint", "type")
    )
    prompt: str = Field(
        default="", validation_alias=AliasChoices("prompt", "aiPrompt", "extraction_prompt")
    )

    @property
    def is_contact_key(self) -> bool:
        return (
            self.type_hint.lower() in CONTACT_KEY_HINTS
            or self.name.lower() == _LEGACY_KEY_NAME
        )

    @property
    def is_timestamp(self) -> bool:
        return (
            self.type_hint.lower() in TIMESTAMP_HINTS
            or self.name.lower() == _LEGACY_TIMESTAMP_NAME
        )

    @property
    def is_contact_name(self) -> bool:
        return (
            self.type_hint.lower() in CONTACT_NAME_HINTS
            or self.name.lower() == _LEGACY_CONTACT_NAME
        )


class SyncConfiguration(BaseModel):
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    id: str
    tenant_id: str
    sheet_id: str = Field(min_length=1)
    sheet_tab: str = "Sheet1"
    active: bool = True
    columns: tuple[ColumnDefinition, ...] = Field(min_length=1)
    add_trigger: str = AddTrigger.FIRST_MESSAGE.value
    interest_keywords: tuple[str, ...] = ()
    auto_update_fields: bool = True

    @model_validator(mode="after")
    def _check_columns(self):
        ids = [c.id for c in self.columns]
        if len(set(ids)) != len(ids):
            raise ValueError("duplicate column ids")
        names = [c.name for c in self.columns]
        if len(set(names)) != len(names):
            raise ValueError("duplicate column names")
        if sum(1 for c in self.columns if c.is_contact_key) > 1:
            raise ValueError("more than one contact-key column")
        return self

    @property
    def key_column(self) -> ColumnDefinition | None:
        for col in self.columns:
            if col.is_contact_key:
                return col
        return None

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]


class InboundMessage(BaseModel):
    """Immutable snapshot of a Message row as delivered by the feed."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    tenant_id: str
    contact: str
    body: str | None = ""
    sender: str
    arrived_at: datetime

    @property
    def text(self) -> str:
        return (self.body or "").strip()


class SheetTarget(BaseModel):
    """Where a configuration writes: spreadsheet, tab, and column layout (A, B, C...)."""

    model_config = ConfigDict(frozen=True)

    sheet_id: str
    tab: str = "Sheet1"
    columns: tuple[str, ...]

    @classmethod
    def from_config(cls, config: SyncConfiguration) -> "SheetTarget":
        return cls(sheet_id=config.sheet_id, tab=config.sheet_tab, columns=tuple(config.column_names))


class SheetRow(BaseModel):
    """A row as materialized in the sheet: 1-based index + name→value map."""

    index: int
    values: dict[str, str]


class ConfigAttempt(BaseModel):
    status: AttemptStatus
    reason: str = ""
    row: int | None = None

    @property
    def failed(self) -> bool:
        return self.status == AttemptStatus.FAILED

    @property
    def applied(self) -> bool:
        return self.status in (AttemptStatus.APPENDED, AttemptStatus.UPDATED, AttemptStatus.UNCHANGED)


class PipelineResult(BaseModel):
    outcome: Outcome
    details: dict = Field(default_factory=dict)


# Column id → extracted value; every configured column is present, "" = not found
ExtractionResult = dict[str, str]
