"""
message_feed.py — Change feed over unprocessed messages (all tenants)

Polls the messages table for processed = false, non-test rows in
ascending (arrived_at, id) order and yields them in batches. notify()
wakes the poller immediately, so an ingester living in the same process
can push inserts instead of waiting for the next tick.

Business Rules:
- A message is delivered once per feed lifetime; it is delivered again
  only after a restart if it is still unprocessed
- open() failing is fatal (FeedUnavailableError)
- max_consecutive_failures polls in a row failing is a dropped feed (fatal)
- Every poll yields, even an empty batch, so the listener can run its
  per-poll housekeeping

Called by: listener.py, engine.py
Depends on: models/message.py, schemas/sync.py
"""

import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from .database import run_db
from .errors import FeedUnavailableError
from .models import Message
from .schemas.sync import InboundMessage

log = logging.getLogger(__name__)


class DatabaseMessageFeed:
    def __init__(self, session_factory, *, poll_interval: float = 2.0, batch_size: int = 100,
                 max_consecutive_failures: int = 3):
        self._session_factory = session_factory
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_consecutive_failures = max(1, max_consecutive_failures)
        self._delivered: set[int] = set()
        self._wake = asyncio.Event()
        self._closed = False
        self._opened = False

    def open(self) -> None:
        try:
            with self._session_factory() as db:
                db.execute(select(Message.id).limit(1)).all()
        except SQLAlchemyError as e:
            raise FeedUnavailableError(f"Cannot open message feed: {e}") from e
        self._opened = True
        self._closed = False
        log.info("Message feed opened")

    def notify(self) -> None:
        """Push path: a message was inserted, poll now."""
        self._wake.set()

    def close(self) -> None:
        self._closed = True
        self._wake.set()

    async def changes(self):
        """Async iterator of InboundMessage batches until close()."""
        if not self._opened:
            raise FeedUnavailableError("Message feed is not open")
        failures = 0
        while not self._closed:
            try:
                batch = await run_db(self._poll)
                failures = 0
            except SQLAlchemyError as e:
                failures += 1
                log.error(f"Message feed poll failed ({failures}/{self.max_consecutive_failures}): {e}")
                if failures >= self.max_consecutive_failures:
                    raise FeedUnavailableError(f"Message feed dropped: {e}") from e
                batch = []
            yield batch
            await self._sleep()

    def _poll(self) -> list[InboundMessage]:
        with self._session_factory() as db:
            rows = db.execute(
                select(Message)
                .where(Message.processed.is_(False), Message.is_test.is_(False))
                .order_by(Message.arrived_at, Message.id)
                .limit(self.batch_size)
            ).scalars().all()
            messages = [InboundMessage.model_validate(r) for r in rows]

        seen = {m.id for m in messages}
        fresh = [m for m in messages if m.id not in self._delivered]
        if len(messages) < self.batch_size:
            # Everything still unprocessed is in this result; forget the rest
            self._delivered &= seen
        self._delivered.update(m.id for m in fresh)
        if fresh:
            log.debug(f"Feed delivered {len(fresh)} message(s)")
        return fresh

    async def _sleep(self) -> None:
        if self._closed:
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()
