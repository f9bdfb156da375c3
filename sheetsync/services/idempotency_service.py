"""
idempotency_service.py — Terminal processed-marks for messages

The mark is the last step of a message's pipeline. It is a conditional
UPDATE guarded by processed = false, so a second terminal write for the
same message changes nothing.

Business Rules:
- pending → {success, partial, skipped, error} exactly once
- Transient database failures are retried with exponential backoff
- A mark that still fails is held in memory (pending marks) and logged
  CRITICAL: the sheet write happened but the message is not yet marked.
  is_processed() honors pending marks so the message is not re-applied,
  and flush_pending() retries them on every feed poll

Called by: services/sync_pipeline.py, listener.py (flush on poll)
Depends on: models/message.py
"""

import asyncio
import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from ..database import run_db
from ..models import Message
from ..schemas.sync import Outcome

log = logging.getLogger(__name__)

TERMINAL_OUTCOMES = {Outcome.SUCCESS, Outcome.PARTIAL, Outcome.SKIPPED, Outcome.ERROR}


class IdempotencyTracker:
    def __init__(self, session_factory, *, retry_attempts: int = 3, backoff: float = 0.5):
        self._session_factory = session_factory
        self.retry_attempts = max(1, retry_attempts)
        self.backoff = backoff
        # message id → (outcome, details, processed_at) whose DB write is still owed
        self._pending: dict[int, tuple[Outcome, dict, datetime]] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_processed(self, message_id: int) -> bool:
        if message_id in self._pending:
            return True
        with self._session_factory() as db:
            processed = db.execute(
                select(Message.processed).where(Message.id == message_id)
            ).scalar_one_or_none()
        return bool(processed)

    async def mark_processed(self, message_id: int, outcome: Outcome, details: dict | None = None) -> bool:
        """Write the terminal outcome. Returns True if this call made the transition.

        False means the message was already terminal, or the write is parked
        in the pending table after exhausting retries.
        """
        outcome = Outcome(outcome)
        if outcome not in TERMINAL_OUTCOMES:
            raise ValueError(f"{outcome.value} is not a terminal outcome")
        details = details or {}
        processed_at = datetime.now(timezone.utc)

        delay = self.backoff
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return await run_db(self._write, message_id, outcome, details, processed_at)
            except SQLAlchemyError as e:
                log.warning(
                    f"Mark processed failed for message {message_id} "
                    f"(attempt {attempt}/{self.retry_attempts}): {e}"
                )
                if attempt < self.retry_attempts:
                    await asyncio.sleep(delay)
                    delay *= 2

        self._pending[message_id] = (outcome, details, processed_at)
        log.critical(
            f"Message {message_id} finished with outcome {outcome.value} but could not be "
            f"marked processed; holding the mark in memory until the database recovers"
        )
        return False

    async def flush_pending(self) -> int:
        """Retry parked marks once each. Returns how many were written or found terminal."""
        if not self._pending:
            return 0
        flushed = 0
        for message_id, (outcome, details, processed_at) in list(self._pending.items()):
            try:
                await run_db(self._write, message_id, outcome, details, processed_at)
            except SQLAlchemyError as e:
                log.warning(f"Pending mark for message {message_id} still failing: {e}")
                continue
            del self._pending[message_id]
            flushed += 1
            log.info(f"Pending mark for message {message_id} written ({outcome.value})")
        return flushed

    def _write(self, message_id: int, outcome: Outcome, details: dict, processed_at: datetime) -> bool:
        with self._session_factory() as db:
            try:
                result = db.execute(
                    update(Message)
                    .where(Message.id == message_id, Message.processed.is_(False))
                    .values(
                        processed=True,
                        outcome=outcome.value,
                        outcome_details=details,
                        processed_at=processed_at,
                    )
                    .execution_options(synchronize_session=False)
                )
                changed = result.rowcount
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                raise
        if changed == 0:
            log.info(f"Message {message_id} already terminal; mark ignored")
            return False
        return True
