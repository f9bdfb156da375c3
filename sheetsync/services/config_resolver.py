"""
config_resolver.py — Active sheet configurations and automation switches

Reads a tenant's SheetConfig rows at message time (never cached, so a
dashboard edit applies to the next message) and turns them into validated
SyncConfiguration objects in position order.

Business Rules:
- Only active rows are returned, ordered by (position, created_at, id)
- A row that fails validation (no sheet id, no columns, duplicate column
  ids or names, more than one contact-key column) is skipped and logged
  once per (config id, updated_at)
- Unknown add_trigger values fall back to first_message with a warning
- Automation is off for a contact when the tenant has agent_disabled, or
  the chat has agent_status "off" or a human agent assigned

Called by: services/sync_pipeline.py
Depends on: models/sync_config.py, models/tenant.py, schemas/sync.py
"""

import logging

from pydantic import ValidationError
from sqlalchemy import select

from ..models import Chat, SheetConfig, Tenant
from ..schemas.sync import AddTrigger, SyncConfiguration

log = logging.getLogger(__name__)

_TRIGGERS = {t.value for t in AddTrigger}


class ConfigurationResolver:
    def __init__(self, session_factory):
        self._session_factory = session_factory
        self._reported: set[tuple[str, str]] = set()

    def resolve(self, tenant_id: str) -> list[SyncConfiguration]:
        with self._session_factory() as db:
            rows = db.execute(
                select(SheetConfig)
                .where(SheetConfig.tenant_id == tenant_id, SheetConfig.active.is_(True))
                .order_by(SheetConfig.position, SheetConfig.created_at, SheetConfig.id)
            ).scalars().all()
            raw = [self._row_data(r) for r in rows]

        configs = []
        for data, stamp in raw:
            config = self._validate(data, stamp)
            if config is not None:
                configs.append(config)
        return configs

    def automation_gate(self, tenant_id: str, contact: str) -> str | None:
        """Reason automation is off for this contact, or None when it is on."""
        with self._session_factory() as db:
            tenant = db.get(Tenant, tenant_id)
            if tenant is not None and tenant.agent_disabled:
                return "automation disabled for tenant"
            chat = db.execute(
                select(Chat).where(Chat.tenant_id == tenant_id, Chat.contact == contact)
            ).scalar_one_or_none()
            if chat is not None:
                if (chat.agent_status or "").lower() == "off":
                    return "automation disabled for chat"
                if chat.human_agent:
                    return "human agent assigned"
        return None

    def contact_names(self, tenant_id: str, contact: str) -> tuple[str, str]:
        """(chat contact name, tenant display name), either may be ""."""
        with self._session_factory() as db:
            tenant = db.get(Tenant, tenant_id)
            chat = db.execute(
                select(Chat).where(Chat.tenant_id == tenant_id, Chat.contact == contact)
            ).scalar_one_or_none()
            chat_name = (chat.contact_name or "") if chat is not None else ""
            tenant_name = ""
            if tenant is not None:
                tenant_name = tenant.display_name or tenant.name or ""
        return chat_name.strip(), tenant_name.strip()

    # ── Internal ────────────────────────────────────────────────────

    @staticmethod
    def _row_data(row: SheetConfig) -> tuple[dict, str]:
        data = {
            "id": row.id,
            "tenant_id": row.tenant_id,
            "sheet_id": row.sheet_id or "",
            "sheet_tab": row.sheet_tab or "Sheet1",
            "active": row.active,
            "columns": row.columns or [],
            "add_trigger": row.add_trigger or AddTrigger.FIRST_MESSAGE.value,
            "interest_keywords": row.interest_keywords or [],
            "auto_update_fields": row.auto_update_fields,
        }
        return data, str(row.updated_at)

    def _validate(self, data: dict, stamp: str) -> SyncConfiguration | None:
        trigger = str(data["add_trigger"]).strip().lower()
        if trigger not in _TRIGGERS:
            self._report_once(
                data["id"], stamp,
                f"Sheet config {data['id']}: unknown add_trigger {trigger!r}, using first_message",
            )
            trigger = AddTrigger.FIRST_MESSAGE.value
        data["add_trigger"] = trigger

        try:
            return SyncConfiguration.model_validate(data)
        except ValidationError as e:
            problems = "; ".join(err["msg"] for err in e.errors())
            self._report_once(data["id"], stamp, f"Sheet config {data['id']} skipped: {problems}")
            return None

    def _report_once(self, config_id: str, stamp: str, message: str) -> None:
        key = (config_id, stamp + message)
        if key in self._reported:
            return
        self._reported.add(key)
        log.warning(message)
