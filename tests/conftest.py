"""
conftest.py — Shared test fixtures for SheetSync

Provides an in-memory SQLite database, a session factory the services
can be constructed with, and factory fixtures for tenants, chats,
messages, sheet configurations and stored Google credentials.

Business Rules:
- All tests run against an isolated in-memory DB
- Services receive TestSessionLocal as their session_factory
- Each test gets freshly created tables

Called by: all test files via pytest autodiscovery
Depends on: sheetsync.models (Base)
"""

import os

os.environ["TESTING"] = "1"  # Must be set before importing sheetsync modules
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from sheetsync.connectors.google_sheets import normalize_key
from sheetsync.models import Base, Chat, GoogleCredential, Message, SheetConfig, Tenant
from sheetsync.schemas.sync import SheetRow

# ── In-memory SQLite engine ──────────────────────────────────────────

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@event.listens_for(engine, "connect")
def _enable_fk(dbapi_conn, _):
    """SQLite ignores FKs by default — turn them on."""
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


BASE_TIME = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

JANE_COLUMNS = [
    {"id": "name", "name": "Name", "typeHint": "name", "prompt": "extract customer's name"},
    {"id": "interest", "name": "Interest", "typeHint": "text", "prompt": "extract product interest"},
    {"id": "phone", "name": "Phone", "typeHint": "phone", "prompt": ""},
]


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def db_session():
    """Create all tables, yield a session, then tear down."""
    Base.metadata.create_all(bind=engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def session_factory():
    return TestSessionLocal


@pytest.fixture()
def tenant(db_session: Session) -> Tenant:
    t = Tenant(id="T1", name="acme", display_name="Acme Dental", created_at=BASE_TIME)
    db_session.add(t)
    db_session.commit()
    return t


@pytest.fixture()
def other_tenant(db_session: Session) -> Tenant:
    t = Tenant(id="T2", name="globex", display_name="Globex", created_at=BASE_TIME)
    db_session.add(t)
    db_session.commit()
    return t


@pytest.fixture()
def make_chat(db_session: Session):
    def _make(tenant_id="T1", contact="+15551234567", **kw):
        chat = Chat(tenant_id=tenant_id, contact=contact, **kw)
        db_session.add(chat)
        db_session.commit()
        return chat
    return _make


@pytest.fixture()
def make_message(db_session: Session):
    """Insert a pending message; arrival defaults to BASE_TIME + n minutes."""
    counter = {"n": 0}

    def _make(tenant_id="T1", contact="+15551234567", body="hello", sender="customer", **kw):
        counter["n"] += 1
        kw.setdefault("arrived_at", BASE_TIME + timedelta(minutes=counter["n"]))
        msg = Message(tenant_id=tenant_id, contact=contact, body=body, sender=sender, **kw)
        db_session.add(msg)
        db_session.commit()
        return msg
    return _make


@pytest.fixture()
def make_config(db_session: Session):
    counter = {"n": 0}

    def _make(tenant_id="T1", columns=None, **kw):
        counter["n"] += 1
        kw.setdefault("id", f"cfg-{counter['n']}")
        kw.setdefault("sheet_id", f"sheet-{counter['n']}")
        kw.setdefault("position", counter["n"])
        cfg = SheetConfig(
            tenant_id=tenant_id,
            columns=columns if columns is not None else JANE_COLUMNS,
            **kw,
        )
        db_session.add(cfg)
        db_session.commit()
        return cfg
    return _make


@pytest.fixture()
def stored_credential(db_session: Session, tenant):
    def _make(expires_at=None, access_token="access-1", refresh_token="refresh-1", **kw):
        cred = GoogleCredential(
            tenant_id=tenant.id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at or datetime.now(timezone.utc) + timedelta(hours=1),
            **kw,
        )
        db_session.add(cred)
        db_session.commit()
        return cred
    return _make


# ── In-memory sheet ──────────────────────────────────────────────────


class FakeSheets:
    """Spreadsheet connector double: rows kept per sheet id, calls recorded."""

    def __init__(self):
        self.rows: dict[str, list[dict[str, str]]] = {}
        self.calls: list[tuple] = []

    def seed(self, sheet_id: str, *rows: dict):
        self.rows.setdefault(sheet_id, []).extend(dict(r) for r in rows)

    async def find_row(self, credential, target, key_column, key_value):
        self.calls.append(("find_row", target.sheet_id, key_column, key_value))
        for i, row in enumerate(self.rows.get(target.sheet_id, [])):
            if normalize_key(row.get(key_column, "")) == normalize_key(key_value):
                return i + 2  # row 1 is the header
        return None

    async def read_row(self, credential, target, row_index):
        self.calls.append(("read_row", target.sheet_id, row_index))
        row = self.rows[target.sheet_id][row_index - 2]
        return SheetRow(index=row_index, values={c: row.get(c, "") for c in target.columns})

    async def append_row(self, credential, target, values):
        self.calls.append(("append_row", target.sheet_id, dict(values)))
        rows = self.rows.setdefault(target.sheet_id, [])
        rows.append(dict(values))
        return len(rows) + 1

    async def update_row(self, credential, target, row_index, values):
        self.calls.append(("update_row", target.sheet_id, row_index, dict(values)))
        self.rows[target.sheet_id][row_index - 2].update(values)

    def called(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]


@pytest.fixture()
def fake_sheets() -> FakeSheets:
    return FakeSheets()
