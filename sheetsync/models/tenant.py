"""Tenant and chat models — the automation switches the engine reads."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String

from ..database import UTCDateTime
from .base import Base


class Tenant(Base):
    """One business customer. Profile fields are owned by the dashboard."""

    __tablename__ = "tenants"
    id = Column(String(64), primary_key=True)
    name = Column(String(255))
    display_name = Column(String(255))
    agent_disabled = Column(Boolean, default=False, nullable=False)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))


class Chat(Base):
    """One conversation between a tenant and a channel contact."""

    __tablename__ = "chats"
    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(64), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    contact = Column(String(64), nullable=False)
    contact_name = Column(String(255))
    agent_status = Column(String(20), default="on")  # on | off
    human_agent = Column(Boolean, default=False, nullable=False)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_chats_tenant_contact", "tenant_id", "contact", unique=True),
    )
