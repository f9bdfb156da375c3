"""
test_message_feed.py — Tests for DatabaseMessageFeed

Covers: arrival ordering across tenants, test/processed filtering,
deliver-once semantics, notify() wake-up, open failure and dropped-feed
detection after consecutive poll failures.

Called by: pytest
Depends on: sheetsync/message_feed.py, conftest.py
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from sheetsync.errors import FeedUnavailableError
from sheetsync.message_feed import DatabaseMessageFeed

BASE_TIME = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class FlakySessions:
    """Session factory that can be switched to fail."""

    def __init__(self, factory):
        self.factory = factory
        self.down = False

    def __call__(self):
        if self.down:
            raise OperationalError("SELECT", {}, Exception("connection refused"))
        return self.factory()


@pytest.mark.asyncio
async def test_delivers_unprocessed_in_arrival_order(session_factory, tenant, other_tenant, make_message):
    late = make_message(tenant_id="T1", arrived_at=BASE_TIME + timedelta(minutes=10))
    early = make_message(tenant_id="T2", arrived_at=BASE_TIME)
    make_message(tenant_id="T1", is_test=True)
    make_message(tenant_id="T1", processed=True, outcome="success")

    feed = DatabaseMessageFeed(session_factory, poll_interval=0.01)
    feed.open()
    changes = feed.changes()
    batch = await changes.__anext__()
    feed.close()

    assert [m.id for m in batch] == [early.id, late.id]
    assert batch[0].tenant_id == "T2"


@pytest.mark.asyncio
async def test_each_message_delivered_once(session_factory, tenant, make_message):
    first = make_message()
    feed = DatabaseMessageFeed(session_factory, poll_interval=0.01)
    feed.open()
    changes = feed.changes()

    assert [m.id for m in await changes.__anext__()] == [first.id]
    assert await changes.__anext__() == []  # still unprocessed, not redelivered

    second = make_message()
    assert [m.id for m in await changes.__anext__()] == [second.id]
    feed.close()


@pytest.mark.asyncio
async def test_notify_wakes_the_poller(session_factory, tenant, make_message):
    feed = DatabaseMessageFeed(session_factory, poll_interval=30)
    feed.open()
    changes = feed.changes()
    assert await changes.__anext__() == []

    msg = make_message()
    pending = asyncio.ensure_future(changes.__anext__())
    await asyncio.sleep(0)
    feed.notify()
    batch = await asyncio.wait_for(pending, timeout=1)

    assert [m.id for m in batch] == [msg.id]
    feed.close()


@pytest.mark.asyncio
async def test_close_ends_iteration(session_factory, tenant):
    feed = DatabaseMessageFeed(session_factory, poll_interval=30)
    feed.open()

    async def drain():
        return [batch async for batch in feed.changes()]

    task = asyncio.ensure_future(drain())
    await asyncio.sleep(0.01)
    feed.close()
    assert await asyncio.wait_for(task, timeout=1) == [[]]


def test_open_failure_is_fatal(session_factory):
    sessions = FlakySessions(session_factory)
    sessions.down = True
    with pytest.raises(FeedUnavailableError):
        DatabaseMessageFeed(sessions).open()


@pytest.mark.asyncio
async def test_changes_before_open_is_fatal(session_factory):
    with pytest.raises(FeedUnavailableError):
        await DatabaseMessageFeed(session_factory).changes().__anext__()


@pytest.mark.asyncio
async def test_consecutive_poll_failures_drop_the_feed(session_factory, tenant):
    sessions = FlakySessions(session_factory)
    feed = DatabaseMessageFeed(sessions, poll_interval=0.01, max_consecutive_failures=3)
    feed.open()
    sessions.down = True

    batches = []
    with pytest.raises(FeedUnavailableError):
        async for batch in feed.changes():
            batches.append(batch)

    # Two failed polls are tolerated (empty batches), the third is fatal
    assert batches == [[], []]


@pytest.mark.asyncio
async def test_single_poll_failure_recovers(session_factory, tenant, make_message):
    sessions = FlakySessions(session_factory)
    feed = DatabaseMessageFeed(sessions, poll_interval=0.01, max_consecutive_failures=2)
    feed.open()
    changes = feed.changes()

    sessions.down = True
    assert await changes.__anext__() == []
    sessions.down = False
    msg = make_message()
    assert [m.id for m in await changes.__anext__()] == [msg.id]
    feed.close()
