"""Sheet sync configurations — stored as the dashboard writes them.

`columns` is free-form JSON; it only becomes a typed configuration after
ConfigurationResolver validates it.
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, ForeignKey, Index, Integer, String

from ..database import UTCDateTime
from .base import Base


class SheetConfig(Base):
    __tablename__ = "sheet_configs"
    id = Column(String(64), primary_key=True)
    tenant_id = Column(String(64), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    sheet_id = Column(String(255))
    sheet_tab = Column(String(100), default="Sheet1")
    active = Column(Boolean, default=True, nullable=False)
    add_trigger = Column(String(40), default="first_message")
    interest_keywords = Column(JSON, default=list)
    auto_update_fields = Column(Boolean, default=True, nullable=False)
    columns = Column(JSON, default=list)
    position = Column(Integer, default=0)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (Index("ix_sheet_configs_tenant", "tenant_id", "position"),)
