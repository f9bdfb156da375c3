"""
errors.py — Failure taxonomy for the sync engine

Everything below the listener boundary is converted into a
per-configuration or per-message outcome. The `reason` attribute is the
operator-facing string stored in the message's outcome details.

Business Rules:
- FeedUnavailableError is the only fatal error; it ends the subscription
  and the process exits non-zero so a supervisor restarts it
- Sheets 403 → "needs reauthorization or sheet access"
- Sheets 404 → "configuration invalid, sheet missing"
- Sheets 429 → "rate limited" (logged distinctly)

Called by: listener.py, message_feed.py, services/*, connectors/*
"""


class SyncError(Exception):
    """Base for every engine error."""

    reason = "sync failed"

    def __init__(self, message: str = "", *, reason: str | None = None):
        super().__init__(message or self.reason)
        if reason:
            self.reason = reason


class FeedUnavailableError(SyncError):
    """The message change feed cannot be opened or has dropped."""

    reason = "message feed unavailable"


class CredentialError(SyncError):
    reason = "needs reauthorization"


class TokenRefreshError(CredentialError):
    """Token endpoint unreachable or returned a non-grant error. Transient."""

    reason = "token refresh failed"


class ExtractionError(SyncError):
    """Extraction service unreachable, timed out, or returned malformed output."""

    reason = "extraction failed"


class SheetsApiError(SyncError):
    reason = "spreadsheet request failed"

    def __init__(self, message: str = "", *, status_code: int | None = None,
                 reason: str | None = None):
        super().__init__(message, reason=reason)
        self.status_code = status_code


class SheetsAuthError(SheetsApiError):
    reason = "needs reauthorization"


class SheetsPermissionError(SheetsApiError):
    reason = "needs reauthorization or sheet access"


class SheetsNotFoundError(SheetsApiError):
    reason = "configuration invalid, sheet missing"


class SheetsRateLimitError(SheetsApiError):
    reason = "rate limited"
