"""Google Sheets v4 connector — find / read / append / update a contact row.

Thin httpx wrapper over the values API, authenticated per call with the
tenant's bearer token. Errors are classified, never retried inline: the
pipeline records them against the configuration and moves on.

Usage:
    from sheetsync.connectors.google_sheets import GoogleSheetsConnector
    sheets = GoogleSheetsConnector()
    row = await sheets.find_row(cred, target, "Phone", "+15551234567")
    if row is None:
        row = await sheets.append_row(cred, target, {"Name": "Jane", "Phone": "+15551234567"})
"""

import logging
import re
from urllib.parse import quote

import httpx

from ..errors import (
    SheetsApiError,
    SheetsAuthError,
    SheetsNotFoundError,
    SheetsPermissionError,
    SheetsRateLimitError,
)
from ..http_client import http
from ..schemas.sync import SheetRow, SheetTarget

log = logging.getLogger("sheetsync.sheets")

SHEETS_BASE = "https://sheets.googleapis.com/v4"

_PHONE_LIKE = re.compile(r"[\d\s()+\-.]+")
_UPDATED_ROW = re.compile(r"![A-Z]+(\d+)")
_RATE_REASONS = ("rateLimitExceeded", "userRateLimitExceeded", "RATE_LIMIT_EXCEEDED")


def column_letter(index: int) -> str:
    """0 → A, 25 → Z, 26 → AA."""
    letters = ""
    index += 1
    while index:
        index, rem = divmod(index - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


def a1_range(tab: str, ref: str) -> str:
    return "'" + tab.replace("'", "''") + "'!" + ref


def normalize_key(value) -> str:
    """Comparable form of a contact key. Phone-like values compare by digits only."""
    text = str(value or "").strip()
    digits = re.sub(r"\D", "", text)
    if digits and _PHONE_LIKE.fullmatch(text):
        return digits
    return text.lower()


class GoogleSheetsConnector:
    """Stateless: every call takes the Credential to use."""

    def __init__(self, *, api_base: str = SHEETS_BASE, timeout: float = 20,
                 client: httpx.AsyncClient | None = None):
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._client = client or http

    async def find_row(self, credential, target: SheetTarget, key_column: str,
                       key_value: str) -> int | None:
        """1-based row index whose key column matches key_value, or None."""
        letter = column_letter(self._column_index(target, key_column))
        data = await self._request(
            credential, "GET", self._values_url(target, a1_range(target.tab, f"{letter}:{letter}")),
        )
        wanted = normalize_key(key_value)
        if not wanted:
            return None
        for i, row in enumerate(data.get("values", [])):
            if row and normalize_key(row[0]) == wanted:
                log.debug(f"Found {key_value} at row {i + 1} in sheet {target.sheet_id}")
                return i + 1
        return None

    async def read_row(self, credential, target: SheetTarget, row_index: int) -> SheetRow:
        last = column_letter(len(target.columns) - 1)
        ref = f"A{row_index}:{last}{row_index}"
        data = await self._request(credential, "GET", self._values_url(target, a1_range(target.tab, ref)))
        cells = (data.get("values") or [[]])[0]
        values = {
            name: str(cells[i]) if i < len(cells) and cells[i] is not None else ""
            for i, name in enumerate(target.columns)
        }
        return SheetRow(index=row_index, values=values)

    async def append_row(self, credential, target: SheetTarget, values: dict[str, str]) -> int | None:
        """Append one row in column order. Returns the new row's index when reported."""
        row = [values.get(name, "") for name in target.columns]
        url = self._values_url(target, a1_range(target.tab, "A1")) + ":append"
        data = await self._request(
            credential, "POST", url,
            params={"valueInputOption": "USER_ENTERED", "insertDataOption": "INSERT_ROWS"},
            json_data={"values": [row]},
        )
        updated = (data.get("updates") or {}).get("updatedRange", "")
        match = _UPDATED_ROW.search(updated)
        if not match:
            log.warning(f"Append to {target.sheet_id} did not report a row ({updated!r})")
            return None
        return int(match.group(1))

    async def update_row(self, credential, target: SheetTarget, row_index: int,
                         values: dict[str, str]) -> None:
        """Write only the given cells of an existing row; other cells are untouched."""
        if not values:
            return
        data = [
            {
                "range": a1_range(target.tab, f"{column_letter(self._column_index(target, name))}{row_index}"),
                "values": [[value]],
            }
            for name, value in values.items()
        ]
        url = f"{self.api_base}/spreadsheets/{quote(target.sheet_id, safe='')}/values:batchUpdate"
        await self._request(
            credential, "POST", url,
            json_data={"valueInputOption": "USER_ENTERED", "data": data},
        )

    # ── Internal ────────────────────────────────────────────────────

    @staticmethod
    def _column_index(target: SheetTarget, name: str) -> int:
        try:
            return target.columns.index(name)
        except ValueError:
            raise ValueError(f"Column {name!r} is not part of sheet layout {target.columns}")

    def _values_url(self, target: SheetTarget, a1: str) -> str:
        return (
            f"{self.api_base}/spreadsheets/{quote(target.sheet_id, safe='')}"
            f"/values/{quote(a1, safe='')}"
        )

    async def _request(self, credential, method: str, url: str, *,
                       params: dict | None = None, json_data: dict | None = None) -> dict:
        headers = {"Authorization": f"Bearer {credential.access_token}"}
        try:
            resp = await self._client.request(
                method, url, params=params, json=json_data, headers=headers, timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise SheetsApiError(f"Sheets request timed out: {url}",
                                 reason="spreadsheet request timed out") from e
        except httpx.HTTPError as e:
            raise SheetsApiError(f"Sheets request failed: {e!r}") from e

        if resp.status_code in (200, 201):
            try:
                return resp.json()
            except ValueError as e:
                raise SheetsApiError("Sheets returned a non-JSON body") from e
        if resp.status_code == 204:
            return {}

        detail = resp.text[:300]
        status = resp.status_code
        if status == 401:
            raise SheetsAuthError(f"Sheets 401: {detail}", status_code=status)
        if status == 429 or (status == 403 and any(r in detail for r in _RATE_REASONS)):
            raise SheetsRateLimitError(f"Sheets {status}: {detail}", status_code=status)
        if status == 403:
            raise SheetsPermissionError(f"Sheets 403: {detail}", status_code=status)
        if status == 404:
            raise SheetsNotFoundError(f"Sheets 404: {detail}", status_code=status)
        raise SheetsApiError(f"Sheets {status}: {detail}", status_code=status)
