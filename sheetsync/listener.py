"""
listener.py — Event listener: feed → per-tenant queues → pipeline

One pump task reads batches from the message feed and routes each
message to its tenant's bounded queue. Each tenant has at most one
worker, so a tenant's next message does not start until the current
one (including its terminal mark) is done. Different tenants run
concurrently. Idle workers exit and are re-created on demand.

Business Rules:
- A per-message exception never ends the subscription: it is logged with
  the message id and handed to on_error (which marks the message error)
- A feed failure (open or mid-stream) is fatal: Subscription.wait()
  re-raises it so the process can exit non-zero
- on_poll (async) runs before each batch is dispatched
- stop(): no new deliveries, idle workers cancelled, in-flight messages
  get grace_period seconds to finish before being cancelled

Called by: engine.py
Depends on: message_feed.py, errors.py
"""

import asyncio
import logging

from .errors import FeedUnavailableError

log = logging.getLogger(__name__)


class _TenantWorker:
    def __init__(self, tenant_id: str, queue_size: int):
        self.tenant_id = tenant_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.busy = False
        self.task: asyncio.Task | None = None


class Subscription:
    """Handle returned by EventListener.subscribe()."""

    def __init__(self, listener: "EventListener"):
        self._listener = listener

    @property
    def running(self) -> bool:
        return self._listener.running

    async def stop(self) -> None:
        await self._listener._shutdown()

    async def wait(self) -> None:
        """Block until the subscription ends. Raises the fatal feed error, if any."""
        await self._listener._done.wait()
        if self._listener.fatal_error is not None:
            raise self._listener.fatal_error


class EventListener:
    def __init__(self, feed, *, queue_size: int = 50, idle_timeout: float = 60.0,
                 grace_period: float = 30.0, on_error=None, on_poll=None):
        self.feed = feed
        self.queue_size = queue_size
        self.idle_timeout = idle_timeout
        self.grace_period = grace_period
        self.on_error = on_error
        self.on_poll = on_poll
        self.fatal_error: FeedUnavailableError | None = None
        self._on_message = None
        self._workers: dict[str, _TenantWorker] = {}
        self._pump_task: asyncio.Task | None = None
        self._stopping = False
        self._done = asyncio.Event()

    @property
    def running(self) -> bool:
        return (
            self._pump_task is not None
            and not self._pump_task.done()
            and not self._stopping
        )

    @property
    def active_workers(self) -> int:
        return len(self._workers)

    def subscribe(self, on_message) -> Subscription:
        """Open the feed and start delivering. Raises FeedUnavailableError if it cannot open."""
        if self._pump_task is not None:
            raise RuntimeError("Listener is already subscribed")
        self.feed.open()
        self._on_message = on_message
        self._pump_task = asyncio.create_task(self._pump(), name="sheetsync-feed-pump")
        log.info("Listener subscribed to message feed")
        return Subscription(self)

    # ── Pump ────────────────────────────────────────────────────────

    async def _pump(self) -> None:
        try:
            async for batch in self.feed.changes():
                if self.on_poll is not None:
                    await self.on_poll()
                for message in batch:
                    if self._stopping:
                        return
                    await self._dispatch(message)
        except FeedUnavailableError as e:
            self.fatal_error = e
            log.critical(f"Message feed unavailable, listener stopping: {e}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.fatal_error = FeedUnavailableError(f"Message feed dropped: {e!r}")
            log.critical(f"Message feed crashed, listener stopping: {e!r}")
        finally:
            self._done.set()

    async def _dispatch(self, message) -> None:
        worker = self._workers.get(message.tenant_id)
        if worker is None or worker.task is None or worker.task.done():
            worker = _TenantWorker(message.tenant_id, self.queue_size)
            worker.task = asyncio.create_task(
                self._run_worker(worker), name=f"sheetsync-tenant-{message.tenant_id}",
            )
            self._workers[message.tenant_id] = worker
        # Bounded: a backed-up tenant slows the pump instead of growing memory
        await worker.queue.put(message)

    # ── Tenant workers ──────────────────────────────────────────────

    async def _run_worker(self, worker: _TenantWorker) -> None:
        try:
            while not self._stopping:
                try:
                    message = await asyncio.wait_for(worker.queue.get(), timeout=self.idle_timeout)
                except asyncio.TimeoutError:
                    if worker.queue.empty():
                        log.debug(f"Tenant {worker.tenant_id} worker idle, exiting")
                        return
                    continue
                worker.busy = True
                try:
                    await self._handle(message)
                finally:
                    worker.busy = False
                    worker.queue.task_done()
        finally:
            if self._workers.get(worker.tenant_id) is worker:
                del self._workers[worker.tenant_id]

    async def _handle(self, message) -> None:
        try:
            await self._on_message(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception(f"Message {message.id} (tenant {message.tenant_id}) failed: {e!r}")
            if self.on_error is None:
                return
            try:
                await self.on_error(message, e)
            except Exception as mark_err:
                log.critical(f"Could not mark message {message.id} as error: {mark_err!r}")

    # ── Shutdown ────────────────────────────────────────────────────

    async def _shutdown(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        self.feed.close()
        if self._pump_task is not None and not self._pump_task.done():
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass

        workers = list(self._workers.values())
        tasks = [w.task for w in workers if w.task is not None]
        for w in workers:
            if not w.busy and w.task is not None:
                w.task.cancel()
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.grace_period)
            for task in pending:
                log.warning(f"Cancelling {task.get_name()} after {self.grace_period}s grace period")
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        self._done.set()
        log.info("Listener stopped")
