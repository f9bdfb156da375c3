"""Per-tenant Google OAuth credential. Tokens are encrypted at rest."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, ForeignKey, String

from ..database import UTCDateTime
from ..utils.encrypted_type import EncryptedText
from .base import Base


class GoogleCredential(Base):
    __tablename__ = "google_credentials"
    tenant_id = Column(String(64), ForeignKey("tenants.id", ondelete="CASCADE"), primary_key=True)
    access_token = Column(EncryptedText)
    refresh_token = Column(EncryptedText, nullable=False)
    expires_at = Column(UTCDateTime)
    reauth_required = Column(Boolean, default=False, nullable=False)
    last_error = Column(String(255))
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))
