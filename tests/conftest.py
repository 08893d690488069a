"""
Pytest configuration and shared fixtures.

Provides an in-memory RowStore that behaves like the Sheets API for the
parts the app relies on (1-based rows, header row, append position,
row deletion shifting, formula cells evaluated at read time), a membership
engine pinned to a fixed "today", and a FastAPI test client wired to both.
"""
import datetime as dt
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import pytest
from fastapi.testclient import TestClient

import config
import main
from dates import business_tz
from errors import InvalidRange
from members import COL_EXPIRE_AT, MembershipEngine, evaluate_plan
from sheets import RENDER_FORMULA, RENDER_FORMATTED

TODAY = dt.date(2026, 10, 19)

MEMBERS_HEADER = [
    "userId", "plan", "status", "startAt", "expireAt",
    "LINE名稱", "狀態", "聯絡電話", "繳費方式", "繳費時間",
]
RISK_HEADER = [f"c{i}" for i in range(26)]
RECORDS_HEADER = [f"c{i}" for i in range(48)]
LINE_OA_HEADER = ["timestamp", "userId", "displayName", "profileUrl", "messageType", "messageText"]


class FakeStore:
    """In-memory RowStore. Formula cells evaluate like the members plan formula."""

    def __init__(self, today: dt.date = TODAY):
        self.today = today
        self.sheets: Dict[str, List[List[str]]] = {}
        self.formulas: Dict[str, Dict[Tuple[int, int], str]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.report_append_rows = True

    # ---- fixtures helpers ----------------------------------------------------

    def add_sheet(self, name: str, header: Sequence[str], rows: Sequence[Sequence[Any]] = ()) -> None:
        self.sheets[name] = [list(header)] + [[str(c) for c in r] for r in rows]
        self.formulas[name] = {}

    def raw(self, sheet: str, row_number: int, col_idx: int) -> str:
        rows = self._rows(sheet)
        if row_number > len(rows):
            return ""
        row = rows[row_number - 1]
        return row[col_idx] if col_idx < len(row) else ""

    def formula(self, sheet: str, row_number: int, col_idx: int) -> Optional[str]:
        return self.formulas[sheet].get((row_number, col_idx))

    def count(self, op: str) -> int:
        return sum(1 for o, _ in self.calls if o == op)

    # ---- internals -----------------------------------------------------------

    def _rows(self, sheet: str) -> List[List[str]]:
        if sheet not in self.sheets:
            raise InvalidRange("sheet not found", details={"sheet": sheet})
        return self.sheets[sheet]

    def _set(self, sheet: str, row_number: int, col_idx: int, value: Any) -> None:
        rows = self._rows(sheet)
        while len(rows) < row_number:
            rows.append([])
        row = rows[row_number - 1]
        while len(row) <= col_idx:
            row.append("")
        row[col_idx] = "" if value is None else str(value)
        # A literal write replaces any formula in the cell
        self.formulas[sheet].pop((row_number, col_idx), None)

    def _cell(self, sheet: str, row_number: int, col_idx: int, render: str) -> str:
        f = self.formulas[sheet].get((row_number, col_idx))
        if f is None:
            return self.raw(sheet, row_number, col_idx)
        if render == RENDER_FORMULA:
            return f
        expire_at = self.raw(sheet, row_number, COL_EXPIRE_AT)
        return evaluate_plan(expire_at, self.today, business_tz(config.TZ_OFFSET_HOURS))

    def _last_data_row(self, sheet: str) -> int:
        rows = self._rows(sheet)
        n = len(rows)
        while n > 1 and not any(c.strip() for c in rows[n - 1]) and not any(
            r == n for r, _ in self.formulas[sheet]
        ):
            n -= 1
        return n

    # ---- RowStore ------------------------------------------------------------

    def read_range(self, sheet, first_row, last_row=None, first_col=0, last_col=None, render=RENDER_FORMATTED):
        self.calls.append(("read", sheet))
        if first_row < 1 or first_col < 0:
            raise InvalidRange("out of range")
        end = self._last_data_row(sheet)
        if last_row is not None:
            end = min(end, last_row)
        out = []
        for r in range(first_row, end + 1):
            if last_col is not None:
                stop = last_col
            else:
                stop = max(len(self._rows(sheet)[r - 1]) - 1, first_col)
            out.append([self._cell(sheet, r, c, render) for c in range(first_col, stop + 1)])
        while out and not any(c.strip() for c in out[-1]):
            out.pop()
        return out

    def write_range(self, sheet, first_row, first_col, values):
        self.calls.append(("write_range", sheet))
        if first_row < 1 or not values or len({len(r) for r in values}) != 1:
            raise InvalidRange("shape mismatch")
        for i, row in enumerate(values):
            for j, v in enumerate(row):
                self._set(sheet, first_row + i, first_col + j, v)

    def write_cells(self, sheet, row_number, cells):
        self.calls.append(("write_cells", sheet))
        for col_idx, v in cells.items():
            self._set(sheet, row_number, col_idx, v)

    def append_rows(self, sheet, values):
        self.calls.append(("append", sheet))
        first = self._last_data_row(sheet) + 1
        rows = self._rows(sheet)
        del rows[first - 1:]
        for row in values:
            rows.append([str(c) for c in row])
        return first if self.report_append_rows else None

    def delete_row(self, sheet, row_number):
        self.calls.append(("delete", sheet))
        rows = self._rows(sheet)
        if row_number < 1 or row_number > len(rows):
            raise InvalidRange("row out of range", details={"rowNumber": row_number})
        del rows[row_number - 1]
        shifted = {}
        for (r, c), f in self.formulas[sheet].items():
            if r == row_number:
                continue
            shifted[(r - 1 if r > row_number else r, c)] = f
        self.formulas[sheet] = shifted

    def is_cell_computed(self, sheet, row_number, col_idx):
        self.calls.append(("is_computed", sheet))
        return (row_number, col_idx) in self.formulas[sheet]

    def computed_rows(self, sheet, col_idx, first_row=2) -> Set[int]:
        self.calls.append(("computed_rows", sheet))
        return {r for (r, c) in self.formulas[sheet] if c == col_idx and r >= first_row}

    def set_cell_formula(self, sheet, row_number, col_idx, formula):
        self.set_cell_formulas(sheet, col_idx, {row_number: formula})

    def set_cell_formulas(self, sheet, col_idx, formulas):
        self.calls.append(("formulas", sheet))
        for row_number, formula in formulas.items():
            self._set(sheet, row_number, col_idx, "")
            self.formulas[sheet][(row_number, col_idx)] = formula


def phone_row(phone: str, user_id: str = "", **cols: Any) -> List[str]:
    """Sheet1 row with phoneNumber (A), userId (L) and any other column by index."""
    row = [""] * 48
    row[0] = phone
    row[11] = user_id
    for key, value in cols.items():
        row[int(key.lstrip("c"))] = str(value)
    return row


@pytest.fixture
def store() -> FakeStore:
    s = FakeStore()
    s.add_sheet(config.SHEET_MEMBERS_NAME, MEMBERS_HEADER)
    s.add_sheet(config.SHEET_RECORDS_NAME, RECORDS_HEADER)
    s.add_sheet(config.SHEET_RISK_NAME, RISK_HEADER)
    s.add_sheet(config.SHEET_LINE_OA_NAME, LINE_OA_HEADER)
    return s


@pytest.fixture
def engine(store: FakeStore) -> MembershipEngine:
    return MembershipEngine(store, sheet=config.SHEET_MEMBERS_NAME, today=lambda: TODAY)


@pytest.fixture
def client(store: FakeStore, engine: MembershipEngine):
    main.app.dependency_overrides[main.get_store] = lambda: store
    main.app.dependency_overrides[main.get_engine] = lambda: engine
    main.cache.clear()

    with TestClient(main.app) as c:
        yield c

    main.app.dependency_overrides.clear()
    main.cache.clear()
