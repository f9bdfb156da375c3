"""Database connection and session factory.

All naive datetimes loaded from the database are auto-tagged as UTC via
event listener to prevent naive-vs-aware comparison errors.

Session work called from the engine's coroutines goes through run_db(),
which runs it on a dedicated thread pool so a slow query never blocks
the event loop.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from sqlalchemy import create_engine, event, DateTime, TypeDecorator
from sqlalchemy.orm import sessionmaker

from .config import settings


class UTCDateTime(TypeDecorator):
    """DateTime type that ensures UTC timezone on load."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
        "connect_args": {"connect_timeout": 10},
    }


engine = create_engine(settings.database_url, **_engine_kwargs(settings.database_url))
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@event.listens_for(engine, "connect")
def _set_timezone(dbapi_conn, connection_record):
    if engine.dialect.name != "postgresql":
        return
    cursor = dbapi_conn.cursor()
    cursor.execute("SET timezone = 'UTC'")
    cursor.close()


# SQLite allows a single writer; give it one thread
db_executor = ThreadPoolExecutor(
    max_workers=1 if settings.database_url.startswith("sqlite") else 10,
    thread_name_prefix="sheetsync-db",
)


async def run_db(fn, *args):
    """Run a blocking Session function on the DB thread pool."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(db_executor, fn, *args)
