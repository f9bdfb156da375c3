"""
startup.py — Database startup sync (idempotent)

Tables and indexes are defined in the ORM models and created with
Base.metadata.create_all(checkfirst=True). Alembic stays the source of
truth for changes to existing tables; this only guarantees a fresh
database can run.

Called by: main.py lifespan
Depends on: database.py (engine), models (Base)
"""

import logging
import os

from sqlalchemy import text as sqltext

from .database import engine

log = logging.getLogger(__name__)


def run_startup_migrations() -> None:
    """Safe to call on every boot."""
    if os.environ.get("TESTING"):
        log.info("TESTING mode — skipping startup migrations")
        return

    from .models import Base

    Base.metadata.create_all(bind=engine, checkfirst=True)
    log.info("ORM schema sync complete (create_all checkfirst=True)")

    if engine.dialect.name == "postgresql":
        with engine.connect() as conn:
            _create_partial_indexes(conn)
    log.info("Startup migrations complete")


def _exec(conn, stmt: str) -> None:
    """Execute a single DDL statement with rollback on failure."""
    try:
        conn.execute(sqltext(stmt))
        conn.commit()
    except Exception as e:
        log.warning("DDL failed: %s", e)
        conn.rollback()


def _create_partial_indexes(conn) -> None:
    """The feed only ever scans unprocessed, non-test messages."""
    _exec(conn, """
        CREATE INDEX IF NOT EXISTS ix_messages_feed_pending
        ON messages (arrived_at, id)
        WHERE processed = false AND is_test = false
    """)
