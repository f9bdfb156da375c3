"""initial schema - tenants, chats, messages, sheet configs, google credentials

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19

For a database the channel ingester already created: `alembic stamp 001_initial`.
For a new database: `alembic upgrade head` (creates all tables from models).
"""
from typing import Sequence, Union

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create every table from the models; checkfirst keeps it idempotent."""
    from sheetsync.database import engine
    from sheetsync.models import Base

    Base.metadata.create_all(bind=engine, checkfirst=True)


def downgrade() -> None:
    """Drop all tables. DESTRUCTIVE — dev/test only."""
    from sheetsync.database import engine
    from sheetsync.models import Base

    Base.metadata.drop_all(bind=engine)
