"""
engine.py — SyncEngine: the wired-up synchronization service

Builds the pipeline from its collaborators and owns the listener
lifecycle. Nothing here reaches into module-level state except
from_settings(), so tests construct the engine with fakes.

Usage:
    engine = SyncEngine.from_settings(settings)
    await engine.start()      # FeedUnavailableError if the feed cannot open
    await engine.wait()       # returns on stop(), raises on a dropped feed
    await engine.stop()
"""

import logging
from datetime import timedelta

from .config import Settings
from .connectors.google_sheets import GoogleSheetsConnector
from .database import SessionLocal
from .listener import EventListener, Subscription
from .message_feed import DatabaseMessageFeed
from .schemas.sync import Outcome
from .services.config_resolver import ConfigurationResolver
from .services.credential_service import CredentialManager
from .services.extraction_service import build_extraction_client
from .services.idempotency_service import IdempotencyTracker
from .services.sync_pipeline import SyncPipeline

log = logging.getLogger(__name__)


class SyncEngine:
    def __init__(self, pipeline: SyncPipeline, feed, tracker: IdempotencyTracker, *,
                 queue_size: int = 50, idle_timeout: float = 60.0, grace_period: float = 30.0):
        self.pipeline = pipeline
        self.feed = feed
        self.tracker = tracker
        self.listener = EventListener(
            feed,
            queue_size=queue_size,
            idle_timeout=idle_timeout,
            grace_period=grace_period,
            on_error=self._mark_error,
            on_poll=tracker.flush_pending,
        )
        self.subscription: Subscription | None = None

    @classmethod
    def from_settings(cls, settings: Settings, session_factory=SessionLocal) -> "SyncEngine":
        tracker = IdempotencyTracker(
            session_factory,
            retry_attempts=settings.mark_retry_attempts,
            backoff=settings.mark_retry_backoff_seconds,
        )
        credentials = CredentialManager(
            session_factory,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            token_url=settings.google_token_url,
            refresh_margin=timedelta(seconds=settings.token_refresh_margin_seconds),
            timeout=settings.http_timeout_seconds,
        )
        pipeline = SyncPipeline(
            ConfigurationResolver(session_factory),
            credentials,
            build_extraction_client(settings),
            GoogleSheetsConnector(api_base=settings.sheets_api_base, timeout=settings.http_timeout_seconds),
            tracker,
            allowed_senders=settings.allowed_senders,
        )
        feed = DatabaseMessageFeed(
            session_factory,
            poll_interval=settings.feed_poll_interval_seconds,
            batch_size=settings.feed_batch_size,
            max_consecutive_failures=settings.feed_max_consecutive_failures,
        )
        return cls(
            pipeline, feed, tracker,
            queue_size=settings.tenant_queue_size,
            idle_timeout=settings.tenant_worker_idle_seconds,
            grace_period=settings.shutdown_grace_seconds,
        )

    @property
    def running(self) -> bool:
        return self.subscription is not None and self.subscription.running

    def status(self) -> dict:
        return {
            "listener": "running" if self.running else "stopped",
            "tenant_workers": self.listener.active_workers,
            "pending_marks": self.tracker.pending_count,
        }

    async def start(self) -> None:
        if self.subscription is not None:
            return
        self.subscription = self.listener.subscribe(self.pipeline.process)
        log.info("Sync engine started")

    async def stop(self) -> None:
        if self.subscription is None:
            return
        await self.subscription.stop()
        if self.tracker.pending_count:
            await self.tracker.flush_pending()
        if self.tracker.pending_count:
            log.critical(f"Shutting down with {self.tracker.pending_count} unwritten processed mark(s)")
        log.info("Sync engine stopped")

    async def wait(self) -> None:
        if self.subscription is None:
            raise RuntimeError("Sync engine was not started")
        await self.subscription.wait()

    async def _mark_error(self, message, exc: Exception) -> None:
        await self.tracker.mark_processed(
            message.id,
            Outcome.ERROR,
            {"reason": f"unexpected error: {type(exc).__name__}: {exc}"[:500], "configs": {}},
        )
