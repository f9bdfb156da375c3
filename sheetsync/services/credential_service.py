"""
credential_service.py — Per-tenant Google OAuth credential lifecycle

Produces a currently-valid access token for a tenant's Sheets calls,
refreshing it through the OAuth token endpoint when it is at or near
expiry. Tokens are encrypted at rest (EncryptedText columns).

Business Rules:
- Refresh when now >= expires_at - margin (default 5 min)
- Refresh is single-flight per tenant: concurrent callers wait on one
  asyncio.Lock and re-read the stored credential after acquiring it
- The refresh token is rotated only when the provider returns a new one
- No stored credential, a credential flagged reauth_required, or an
  invalid_grant answer → NotAuthorized (returned, never raised)
- Token endpoint timeouts / 5xx / other errors → TokenRefreshError
- Writes touch only the google_credentials row, never tenant profile fields

Called by: services/sync_pipeline.py, engine.py
Depends on: models/credential.py, http_client.py, config.py
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import httpx

from ..database import run_db
from ..errors import TokenRefreshError
from ..http_client import http
from ..models import GoogleCredential

log = logging.getLogger(__name__)

# Provider error codes that mean "the grant is gone, the tenant must reconnect"
REAUTH_ERRORS = {"invalid_grant", "unauthorized_client"}


def _utc(dt):
    """Make a naive datetime UTC-aware (no-op if already aware)."""
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


@dataclass(frozen=True)
class Credential:
    tenant_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime | None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class NotAuthorized:
    """The tenant has to reconnect Google before anything can be written."""
    tenant_id: str
    reason: str

    def __bool__(self) -> bool:
        return False


class _Flight:
    """Per-tenant refresh lock, dropped once nobody holds or awaits it."""

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class CredentialManager:
    """Resolve and refresh tenant credentials.

    session_factory: callable returning a SQLAlchemy Session (SessionLocal).
    """

    def __init__(
        self,
        session_factory,
        *,
        client_id: str,
        client_secret: str,
        token_url: str = "https://oauth2.googleapis.com/token",
        refresh_margin: timedelta = timedelta(minutes=5),
        timeout: float = 15,
        client: httpx.AsyncClient | None = None,
        clock=None,
    ):
        self._session_factory = session_factory
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.refresh_margin = refresh_margin
        self.timeout = timeout
        self._client = client or http
        self._now = clock or (lambda: datetime.now(timezone.utc))
        self._locks: dict[str, _Flight] = {}

    # ── Public API ──────────────────────────────────────────────────

    async def get_valid(self, tenant_id: str) -> Credential | NotAuthorized:
        """Return a valid Credential, refreshing if needed, or NotAuthorized."""
        current = await run_db(self._load, tenant_id)
        if not isinstance(current, Credential) or not self._needs_refresh(current):
            return current

        flight = self._locks.get(tenant_id)
        if flight is None:
            flight = self._locks[tenant_id] = _Flight()
        flight.users += 1
        try:
            async with flight.lock:
                # Another caller may have refreshed while we waited
                current = await run_db(self._load, tenant_id)
                if not isinstance(current, Credential) or not self._needs_refresh(current):
                    return current
                return await self._refresh(current)
        finally:
            flight.users -= 1
            if flight.users == 0 and self._locks.get(tenant_id) is flight:
                del self._locks[tenant_id]

    def store(self, tenant_id: str, *, access_token: str, refresh_token: str,
              expires_in: int) -> None:
        """Persist tokens from a fresh authorization (OAuth callback) and clear reauth flags."""
        now = self._now()
        with self._session_factory() as db:
            row = db.get(GoogleCredential, tenant_id)
            if row is None:
                row = GoogleCredential(tenant_id=tenant_id, created_at=now)
                db.add(row)
            row.access_token = access_token
            row.refresh_token = refresh_token
            row.expires_at = now + timedelta(seconds=expires_in)
            row.reauth_required = False
            row.last_error = None
            row.updated_at = now
            db.commit()
        log.info(f"Stored Google credential for tenant {tenant_id}")

    def disconnect(self, tenant_id: str) -> bool:
        """Delete the tenant's credential. Returns False if none was stored."""
        with self._session_factory() as db:
            row = db.get(GoogleCredential, tenant_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
        log.info(f"Google credential deleted for tenant {tenant_id}")
        return True

    # ── Internals ───────────────────────────────────────────────────

    def _load(self, tenant_id: str) -> Credential | NotAuthorized:
        with self._session_factory() as db:
            row = db.get(GoogleCredential, tenant_id)
            if row is None or not row.refresh_token:
                return NotAuthorized(tenant_id, "no Google credential stored")
            if row.reauth_required:
                return NotAuthorized(tenant_id, row.last_error or "reauthorization required")
            return Credential(
                tenant_id=tenant_id,
                access_token=row.access_token or "",
                refresh_token=row.refresh_token,
                expires_at=_utc(row.expires_at),
                updated_at=_utc(row.updated_at),
            )

    def _needs_refresh(self, cred: Credential) -> bool:
        if not cred.access_token or cred.expires_at is None:
            return True
        return self._now() >= cred.expires_at - self.refresh_margin

    async def _refresh(self, cred: Credential) -> Credential | NotAuthorized:
        tenant_id = cred.tenant_id
        log.info(f"Refreshing Google token for tenant {tenant_id}")
        try:
            r = await self._client.post(
                self.token_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": cred.refresh_token,
                    "grant_type": "refresh_token",
                },
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            log.warning(f"Token refresh error for tenant {tenant_id}: {e!r}")
            raise TokenRefreshError(f"Token endpoint unreachable: {e!r}") from e

        try:
            body = r.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if r.status_code != 200:
            error = str(body.get("error", ""))
            if error in REAUTH_ERRORS:
                reason = f"Google refresh denied ({error}): tenant must reconnect"
                await run_db(self._flag_reauth, tenant_id, reason)
                log.warning(f"Token refresh denied for tenant {tenant_id}: {error}")
                return NotAuthorized(tenant_id, reason)
            log.warning(f"Token refresh failed for tenant {tenant_id}: {r.status_code} — {r.text[:200]}")
            raise TokenRefreshError(f"Token endpoint returned {r.status_code}")

        access_token = body.get("access_token")
        if not access_token:
            raise TokenRefreshError("Token endpoint returned no access_token")

        try:
            expires_in = int(body.get("expires_in") or 3600)
        except (TypeError, ValueError):
            raise TokenRefreshError(f"Token endpoint returned a bad expires_in: {body.get('expires_in')!r}")

        now = self._now()
        expires_at = now + timedelta(seconds=expires_in)
        new_refresh = body.get("refresh_token")

        saved = await run_db(self._save_refreshed, tenant_id, access_token, expires_at, new_refresh, now)
        if not saved:
            # Disconnected while the refresh was in flight
            return NotAuthorized(tenant_id, "credential removed during refresh")

        log.info(f"Token refreshed for tenant {tenant_id}")
        return Credential(
            tenant_id=tenant_id,
            access_token=access_token,
            refresh_token=new_refresh or cred.refresh_token,
            expires_at=expires_at,
            updated_at=now,
        )

    def _save_refreshed(self, tenant_id: str, access_token: str, expires_at: datetime,
                        new_refresh: str | None, now: datetime) -> bool:
        with self._session_factory() as db:
            row = db.get(GoogleCredential, tenant_id)
            if row is None:
                return False
            row.access_token = access_token
            row.expires_at = expires_at
            if new_refresh:
                row.refresh_token = new_refresh
            row.updated_at = now
            row.last_error = None
            db.commit()
        return True

    def _flag_reauth(self, tenant_id: str, reason: str) -> None:
        with self._session_factory() as db:
            row = db.get(GoogleCredential, tenant_id)
            if row is None:
                return
            row.reauth_required = True
            row.last_error = reason[:255]
            row.updated_at = self._now()
            db.commit()
