"""Database models — re-exported for convenience.

Import from here:  from sheetsync.models import Message, SheetConfig, ...
"""

from .base import Base  # noqa: F401
from .credential import GoogleCredential  # noqa: F401
from .message import Message  # noqa: F401
from .sync_config import SheetConfig  # noqa: F401
from .tenant import Chat, Tenant  # noqa: F401
