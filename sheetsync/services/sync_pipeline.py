"""
sync_pipeline.py — One message through every active sheet configuration

For a delivered message: gate checks, resolve configurations, then per
configuration get a credential, extract fields, and find/append/update
the contact's row. The terminal mark is always written last.

Business Rules:
- Already-processed messages are a no-op (no external calls)
- Only allowed sender roles are synced; tenant/chat automation switches
  and an empty configuration list → skipped
- Each configuration is isolated: any failure, expected or not, is
  recorded and the next one still runs. Outcome: all applied → success,
  some → partial, none applied but some failed → error, nothing
  attempted → skipped
- Updates never blank a known cell: only non-empty values that differ
  from the sheet are written, and an unchanged merge makes no call
- Extraction and sheet failures are not retried within the run

Called by: listener.py (via engine.py)
Depends on: config_resolver, credential_service, extraction_service,
            connectors/google_sheets, idempotency_service
"""

import logging

from ..database import run_db
from ..errors import SheetsRateLimitError, SyncError
from ..schemas.sync import (
    AddTrigger,
    AttemptStatus,
    ConfigAttempt,
    InboundMessage,
    Outcome,
    PipelineResult,
    SheetTarget,
    SyncConfiguration,
)
from .credential_service import NotAuthorized
from .extraction_service import normalize_value

log = logging.getLogger(__name__)

REAUTH_REASON = "needs reauthorization"


def merge_changes(existing: dict[str, str], new: dict[str, str], key_column: str | None = None) -> dict[str, str]:
    """Cells to write over an existing row: non-empty new values that differ.

    The key column is never rewritten; the row was matched on it.
    """
    changes = {}
    for name, value in new.items():
        if not value or name == key_column:
            continue
        current = (existing.get(name) or "").strip()
        if current != value.strip():
            changes[name] = value
    return changes


def summarize(attempts: dict[str, ConfigAttempt]) -> Outcome:
    failed = sum(1 for a in attempts.values() if a.failed)
    applied = sum(1 for a in attempts.values() if a.applied)
    if failed == 0:
        return Outcome.SUCCESS if applied else Outcome.SKIPPED
    return Outcome.PARTIAL if applied else Outcome.ERROR


class SyncPipeline:
    def __init__(self, resolver, credentials, extractor, sheets, tracker, *,
                 allowed_senders=("customer", "user")):
        self.resolver = resolver
        self.credentials = credentials
        self.extractor = extractor
        self.sheets = sheets
        self.tracker = tracker
        self.allowed_senders = {s.lower() for s in allowed_senders}

    async def process(self, message: InboundMessage) -> PipelineResult | None:
        """Run the message and write its terminal mark. None if it was already processed."""
        tag = f"message {message.id} tenant {message.tenant_id}"
        if await run_db(self.tracker.is_processed, message.id):
            log.debug(f"{tag}: already processed, skipping")
            return None

        gate = await self._gate(message)
        if gate:
            log.info(f"{tag}: skipped ({gate})")
            return await self._finish(message, Outcome.SKIPPED, {"reason": gate, "configs": {}})

        configs = await run_db(self.resolver.resolve, message.tenant_id)
        if not configs:
            log.info(f"{tag}: no active sheet configuration")
            return await self._finish(
                message, Outcome.SKIPPED, {"reason": "no active configuration", "configs": {}},
            )

        attempts: dict[str, ConfigAttempt] = {}
        for config in configs:
            attempt = await self._apply(message, config)
            attempts[config.id] = attempt
            log.info(
                f"{tag} config {config.id}: {attempt.status.value}"
                + (f" ({attempt.reason})" if attempt.reason else "")
                + (f" row {attempt.row}" if attempt.row else "")
            )

        outcome = summarize(attempts)
        details = {"configs": {cid: a.model_dump(mode="json") for cid, a in attempts.items()}}
        return await self._finish(message, outcome, details)

    # ── Gates ───────────────────────────────────────────────────────

    async def _gate(self, message: InboundMessage) -> str | None:
        if (message.sender or "").lower() not in self.allowed_senders:
            return f"sender {message.sender!r} not synced"
        return await run_db(self.resolver.automation_gate, message.tenant_id, message.contact)

    # ── Per-configuration ───────────────────────────────────────────

    async def _apply(self, message: InboundMessage, config: SyncConfiguration) -> ConfigAttempt:
        if config.add_trigger == AddTrigger.MANUAL.value:
            return ConfigAttempt(status=AttemptStatus.SKIPPED, reason="manual trigger")
        if not message.text:
            return ConfigAttempt(status=AttemptStatus.SKIPPED, reason="empty message")

        try:
            credential = await self.credentials.get_valid(message.tenant_id)
            if isinstance(credential, NotAuthorized):
                log.warning(
                    f"message {message.id} tenant {message.tenant_id}: not authorized ({credential.reason})"
                )
                return ConfigAttempt(status=AttemptStatus.FAILED, reason=REAUTH_REASON)

            if config.add_trigger == AddTrigger.INTEREST_DETECTED.value:
                if not await self.extractor.detect_interest(message.text, config.interest_keywords):
                    return ConfigAttempt(status=AttemptStatus.SKIPPED, reason="no interest detected")

            extracted = await self.extractor.extract(message.text, config.columns)
            values = await self._row_values(message, config, extracted)
            return await self._write(credential, config, message, values)

        except SheetsRateLimitError as e:
            log.warning(
                f"RATE LIMITED: message {message.id} tenant {message.tenant_id} "
                f"config {config.id} sheet {config.sheet_id}: {e}"
            )
            return ConfigAttempt(status=AttemptStatus.FAILED, reason=e.reason)
        except SyncError as e:
            log.warning(f"message {message.id} tenant {message.tenant_id} config {config.id} failed: {e}")
            return ConfigAttempt(status=AttemptStatus.FAILED, reason=e.reason)
        except Exception as e:
            log.exception(f"message {message.id} tenant {message.tenant_id} config {config.id} crashed: {e!r}")
            return ConfigAttempt(
                status=AttemptStatus.FAILED,
                reason=f"unexpected error: {type(e).__name__}: {e}"[:500],
            )

    async def _row_values(self, message: InboundMessage, config: SyncConfiguration, extracted) -> dict[str, str]:
        values = {}
        names = None
        for col in config.columns:
            value = normalize_value(extracted.get(col.id))
            if not value:
                if col.is_contact_key:
                    value = message.contact
                elif col.is_timestamp:
                    value = message.arrived_at.isoformat()
                elif col.is_contact_name:
                    if names is None:
                        names = await run_db(self.resolver.contact_names, message.tenant_id, message.contact)
                    value = names[0] or names[1]
            values[col.name] = value
        return values

    async def _write(self, credential, config: SyncConfiguration, message: InboundMessage,
                     values: dict[str, str]) -> ConfigAttempt:
        target = SheetTarget.from_config(config)
        key = config.key_column
        if key is None:
            row = await self.sheets.append_row(credential, target, values)
            return ConfigAttempt(status=AttemptStatus.APPENDED, row=row)

        # Always keyed by the sender, never by a value extracted from the text
        row = await self.sheets.find_row(credential, target, key.name, message.contact)
        if row is None:
            row = await self.sheets.append_row(credential, target, values)
            return ConfigAttempt(status=AttemptStatus.APPENDED, row=row)

        if not config.auto_update_fields:
            return ConfigAttempt(status=AttemptStatus.SKIPPED, reason="auto update disabled", row=row)

        existing = await self.sheets.read_row(credential, target, row)
        changes = merge_changes(existing.values, values, key.name)
        if not changes:
            return ConfigAttempt(status=AttemptStatus.UNCHANGED, row=row)
        await self.sheets.update_row(credential, target, row, changes)
        return ConfigAttempt(status=AttemptStatus.UPDATED, row=row)

    async def _finish(self, message: InboundMessage, outcome: Outcome, details: dict) -> PipelineResult:
        written = await self.tracker.mark_processed(message.id, outcome, details)
        if not written:
            log.debug(f"message {message.id}: terminal mark not written by this run")
        return PipelineResult(outcome=outcome, details=details)
