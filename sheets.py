# sheets.py
# Google Sheets access: service-account client bootstrap and the row store
# used by the membership engine, sync and the dataset readers.
#
# Row numbers are 1-based sheet rows (row 1 is the header). Column indexes
# are 0-based (A=0).

from __future__ import annotations

import base64
import json
import logging
import re
import threading
from typing import Any, Dict, List, Optional, Protocol, Sequence, Set

import google_auth_httplib2
import httplib2
from google.auth.exceptions import GoogleAuthError
from google.oauth2.service_account import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

import config
from errors import InvalidRange, StoreUnavailable

logger = logging.getLogger(__name__)

SHEETS_SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
]

RENDER_FORMATTED = "FORMATTED_VALUE"
RENDER_FORMULA = "FORMULA"

# "'Members / Subscriptions'!A194:J195" -> 194
_UPDATED_ROW_RE = re.compile(r"![A-Z]+(\d+)")


# =============================================================================
# A1 helpers
# =============================================================================

def _escape_sheet_name(sheet: str) -> str:
    """
    Sheets API range supports quoting:
      'My Sheet'!A:Z
    If name has special chars/spaces, quote it.
    Also escape single quotes by doubling.
    """
    sheet = (sheet or "").strip()
    if sheet == "":
        return sheet
    needs_quote = bool(re.search(r"[ '\[\]\(\)\-!@#$%^&*+=,./\\;:]", sheet))
    sheet_escaped = sheet.replace("'", "''")
    return f"'{sheet_escaped}'" if needs_quote else sheet_escaped


def _a1(sheet: str, rng: str) -> str:
    return f"{_escape_sheet_name(sheet)}!{(rng or '').strip()}"


def col_to_letter(col_idx: int) -> str:
    # 0 -> A, 25 -> Z, 26 -> AA
    n = col_idx + 1
    letters = ""
    while n:
        n, rem = divmod(n - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


def _check_row(row_number: int) -> None:
    if not isinstance(row_number, int) or row_number < 1:
        raise InvalidRange("row number out of range", details={"rowNumber": row_number})


def _check_col(col_idx: int) -> None:
    if not isinstance(col_idx, int) or col_idx < 0:
        raise InvalidRange("column index out of range", details={"column": col_idx})


def _cell_str(v: Any) -> str:
    return "" if v is None else str(v)


# =============================================================================
# Google client
# =============================================================================

_google_lock = threading.Lock()
_credentials: Optional[Credentials] = None
_local = threading.local()


def _load_sa_credentials(scopes: List[str]) -> Credentials:
    if config.GOOGLE_SERVICE_ACCOUNT_B64:
        raw = base64.b64decode(config.GOOGLE_SERVICE_ACCOUNT_B64).decode("utf-8")
        info = json.loads(raw)
        return Credentials.from_service_account_info(info, scopes=scopes)

    if not config.GOOGLE_SERVICE_ACCOUNT_EMAIL or not config.GOOGLE_PRIVATE_KEY:
        raise RuntimeError("Missing GOOGLE_SERVICE_ACCOUNT_B64 (or GOOGLE_SERVICE_ACCOUNT_EMAIL + GOOGLE_PRIVATE_KEY)")

    # Hosting dashboards often store the key with literal "\n"
    private_key = config.GOOGLE_PRIVATE_KEY.replace("\\n", "\n")
    if "BEGIN PRIVATE KEY" not in private_key or "END PRIVATE KEY" not in private_key:
        raise RuntimeError("Invalid GOOGLE_PRIVATE_KEY: missing BEGIN or END PRIVATE KEY")

    info = {
        "type": "service_account",
        "client_email": config.GOOGLE_SERVICE_ACCOUNT_EMAIL,
        "private_key": private_key,
        "token_uri": "https://oauth2.googleapis.com/token",
    }
    return Credentials.from_service_account_info(info, scopes=scopes)


def sheets_service():
    """Sheets v4 service for the calling thread (httplib2 transports are not thread-safe)."""
    global _credentials
    svc = getattr(_local, "sheets_service", None)
    if svc is not None:
        return svc
    with _google_lock:
        if _credentials is None:
            _credentials = _load_sa_credentials(SHEETS_SCOPES)
        creds = _credentials
    http = google_auth_httplib2.AuthorizedHttp(
        creds,
        http=httplib2.Http(timeout=config.SHEETS_TIMEOUT_SEC),
    )
    svc = build("sheets", "v4", http=http, cache_discovery=False)
    _local.sheets_service = svc
    return svc


# =============================================================================
# Row store
# =============================================================================

class RowStore(Protocol):
    """What the membership engine needs from a row-oriented spreadsheet."""

    def read_range(
        self,
        sheet: str,
        first_row: int,
        last_row: Optional[int] = None,
        first_col: int = 0,
        last_col: Optional[int] = None,
        render: str = RENDER_FORMATTED,
    ) -> List[List[str]]: ...

    def write_range(self, sheet: str, first_row: int, first_col: int, values: Sequence[Sequence[Any]]) -> None: ...

    def write_cells(self, sheet: str, row_number: int, cells: Dict[int, Any]) -> None: ...

    def append_rows(self, sheet: str, values: Sequence[Sequence[Any]]) -> Optional[int]: ...

    def delete_row(self, sheet: str, row_number: int) -> None: ...

    def is_cell_computed(self, sheet: str, row_number: int, col_idx: int) -> bool: ...

    def computed_rows(self, sheet: str, col_idx: int, first_row: int = 2) -> Set[int]: ...

    def set_cell_formula(self, sheet: str, row_number: int, col_idx: int, formula: str) -> None: ...

    def set_cell_formulas(self, sheet: str, col_idx: int, formulas: Dict[int, str]) -> None: ...


def _shape(values: Sequence[Sequence[Any]]) -> tuple:
    if not values or not values[0]:
        raise InvalidRange("empty values", details={"rows": len(values or [])})
    width = len(values[0])
    for row in values:
        if len(row) != width:
            raise InvalidRange("values are not rectangular", details={"expectedWidth": width, "got": len(row)})
    return len(values), width


class SheetStore:
    """RowStore backed by the Google Sheets v4 API."""

    def __init__(self, spreadsheet_id: str, service_factory=sheets_service):
        self.sid = spreadsheet_id
        self._service_factory = service_factory
        self._sheet_ids: Dict[str, int] = {}
        self._sheet_ids_lock = threading.Lock()

    def _svc(self):
        try:
            return self._service_factory()
        except RuntimeError as e:
            raise StoreUnavailable("sheets client not configured", details={"reason": str(e)}) from e

    def _execute(self, request, action: str) -> Dict[str, Any]:
        try:
            return request.execute() or {}
        except HttpError as e:
            status = int(getattr(e.resp, "status", 0) or 0)
            logger.warning("[Sheets] %s failed: HTTP %s", action, status)
            if status == 400:
                raise InvalidRange("range rejected by store", details={"action": action, "status": status}) from e
            raise StoreUnavailable("store request failed", details={"action": action, "status": status}) from e
        except (GoogleAuthError, httplib2.HttpLib2Error, OSError) as e:
            # OSError covers socket timeouts and connection resets
            logger.warning("[Sheets] %s failed: %r", action, e)
            raise StoreUnavailable("store unreachable", details={"action": action, "reason": repr(e)}) from e

    # ---- reads ---------------------------------------------------------------

    def read_range(
        self,
        sheet: str,
        first_row: int,
        last_row: Optional[int] = None,
        first_col: int = 0,
        last_col: Optional[int] = None,
        render: str = RENDER_FORMATTED,
    ) -> List[List[str]]:
        _check_row(first_row)
        _check_col(first_col)
        if last_row is not None and last_row < first_row:
            raise InvalidRange("last row before first row", details={"first": first_row, "last": last_row})
        end_col = col_to_letter(last_col) if last_col is not None else "ZZ"
        end = f"{end_col}{last_row}" if last_row is not None else end_col
        rng = _a1(sheet, f"{col_to_letter(first_col)}{first_row}:{end}")

        resp = self._execute(
            self._svc().spreadsheets().values().get(
                spreadsheetId=self.sid,
                range=rng,
                valueRenderOption=render,
            ),
            "read " + rng,
        )
        width = (last_col - first_col + 1) if last_col is not None else None
        out: List[List[str]] = []
        for row in resp.get("values", []):
            cells = [_cell_str(v) for v in row]
            if width is not None:
                cells = (cells + [""] * width)[:width]
            out.append(cells)
        return out

    def is_cell_computed(self, sheet: str, row_number: int, col_idx: int) -> bool:
        rows = self.read_range(sheet, row_number, row_number, col_idx, col_idx, render=RENDER_FORMULA)
        return bool(rows) and rows[0][0].startswith("=")

    def computed_rows(self, sheet: str, col_idx: int, first_row: int = 2) -> Set[int]:
        rows = self.read_range(sheet, first_row, None, col_idx, col_idx, render=RENDER_FORMULA)
        return {first_row + i for i, row in enumerate(rows) if row and row[0].startswith("=")}

    def sheet_id(self, sheet: str) -> int:
        with self._sheet_ids_lock:
            if sheet in self._sheet_ids:
                return self._sheet_ids[sheet]
        resp = self._execute(
            self._svc().spreadsheets().get(spreadsheetId=self.sid, fields="sheets.properties(sheetId,title)"),
            "get sheet ids",
        )
        found: Dict[str, int] = {}
        for s in resp.get("sheets", []):
            props = s.get("properties", {}) or {}
            if "title" in props:
                # sheetId 0 is valid (first tab)
                found[props["title"]] = int(props.get("sheetId", 0))
        with self._sheet_ids_lock:
            self._sheet_ids.update(found)
        if sheet not in found:
            raise InvalidRange("sheet not found", details={"sheet": sheet})
        return found[sheet]

    # ---- writes --------------------------------------------------------------

    def write_range(self, sheet: str, first_row: int, first_col: int, values: Sequence[Sequence[Any]]) -> None:
        _check_row(first_row)
        _check_col(first_col)
        height, width = _shape(values)
        rng = _a1(
            sheet,
            f"{col_to_letter(first_col)}{first_row}:{col_to_letter(first_col + width - 1)}{first_row + height - 1}",
        )
        self._execute(
            self._svc().spreadsheets().values().update(
                spreadsheetId=self.sid,
                range=rng,
                valueInputOption="RAW",
                body={"values": [[_cell_str(v) for v in row] for row in values]},
            ),
            "write " + rng,
        )

    def write_cells(self, sheet: str, row_number: int, cells: Dict[int, Any]) -> None:
        _check_row(row_number)
        data = []
        for col_idx, v in sorted(cells.items()):
            _check_col(col_idx)
            cell = f"{col_to_letter(col_idx)}{row_number}"
            data.append({"range": _a1(sheet, f"{cell}:{cell}"), "values": [[_cell_str(v)]]})
        if not data:
            return
        self._execute(
            self._svc().spreadsheets().values().batchUpdate(
                spreadsheetId=self.sid,
                body={"valueInputOption": "RAW", "data": data},
            ),
            f"write cells row {row_number}",
        )

    def append_rows(self, sheet: str, values: Sequence[Sequence[Any]]) -> Optional[int]:
        """Append rows; returns the row number of the first inserted row when the API reports it."""
        if not values:
            return None
        width = max(len(row) for row in values)
        rng = _a1(sheet, f"A:{col_to_letter(max(width, 1) - 1)}")
        resp = self._execute(
            self._svc().spreadsheets().values().append(
                spreadsheetId=self.sid,
                range=rng,
                valueInputOption="RAW",
                insertDataOption="INSERT_ROWS",
                body={"values": [[_cell_str(v) for v in row] for row in values]},
            ),
            "append " + rng,
        )
        updated = (resp.get("updates", {}) or {}).get("updatedRange", "") or ""
        m = _UPDATED_ROW_RE.search(updated)
        if not m:
            logger.warning("[Sheets] append to %s returned no updatedRange", sheet)
            return None
        return int(m.group(1))

    def delete_row(self, sheet: str, row_number: int) -> None:
        _check_row(row_number)
        sheet_id = self.sheet_id(sheet)
        self._execute(
            self._svc().spreadsheets().batchUpdate(
                spreadsheetId=self.sid,
                body={
                    "requests": [
                        {
                            "deleteDimension": {
                                "range": {
                                    "sheetId": sheet_id,
                                    "dimension": "ROWS",
                                    "startIndex": row_number - 1,
                                    "endIndex": row_number,
                                }
                            }
                        }
                    ]
                },
            ),
            f"delete row {row_number}",
        )

    def set_cell_formula(self, sheet: str, row_number: int, col_idx: int, formula: str) -> None:
        self.set_cell_formulas(sheet, col_idx, {row_number: formula})

    def set_cell_formulas(self, sheet: str, col_idx: int, formulas: Dict[int, str]) -> None:
        _check_col(col_idx)
        data = []
        for row_number, formula in sorted(formulas.items()):
            _check_row(row_number)
            cell = f"{col_to_letter(col_idx)}{row_number}"
            data.append({"range": _a1(sheet, f"{cell}:{cell}"), "values": [[formula]]})
        if not data:
            return
        self._execute(
            self._svc().spreadsheets().values().batchUpdate(
                spreadsheetId=self.sid,
                body={"valueInputOption": "USER_ENTERED", "data": data},
            ),
            f"set formulas ({len(data)})",
        )
