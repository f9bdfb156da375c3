"""Inbound chat messages and their processing outcome."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, ForeignKey, Index, Integer, String, Text

from ..database import UTCDateTime
from .base import Base


class Message(Base):
    """Created by the channel ingester; only the processed fields are ours."""

    __tablename__ = "messages"
    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(64), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    contact = Column(String(64), nullable=False)
    body = Column(Text, default="")
    sender = Column(String(20), nullable=False)  # customer | user | agent | human
    is_test = Column(Boolean, default=False, nullable=False)
    arrived_at = Column(UTCDateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    processed = Column(Boolean, default=False, nullable=False)
    outcome = Column(String(20), default="pending", nullable=False)
    outcome_details = Column(JSON)
    processed_at = Column(UTCDateTime)

    __table_args__ = (
        Index("ix_messages_unprocessed", "processed", "arrived_at"),
        Index("ix_messages_tenant_contact", "tenant_id", "contact"),
    )
