# records.py
# Event-log datasets: phone lookups (Sheet1), risk list (Sheet2) and LINE OA
# messages. Rows are keyed by their sheet row number; row 1 is the header.

from __future__ import annotations

import datetime as dt
import re
from typing import Any, Dict, Iterable, List, Optional

import config
from dates import parse_flexible_date
from errors import InvalidRange, NotFound
from members import MemberRecord
from sheets import RowStore

FIRST_DATA_ROW = 2

# Sheet1 layout (A=0). Columns not listed are n8n bookkeeping.
PHONE_COLUMNS = {
    "phoneNumber": 0,
    "prefix": 1,
    "riskLevel": 2,
    "executionMode": 9,
    "userId": 11,
    "timestamp": 12,
    "isPigeon": 13,
    "pigeonPhone": 14,
    "isPigeonListed": 15,
    "type": 16,
    "category": 17,
    "source": 18,
    "overrideBlocked": 19,
    "replyBody": 21,
    "displayName": 22,
    "action": 23,
    "isMember": 25,
    "plan": 26,
    "status": 27,
    "memberState": 31,
    "startAt": 35,
    "expireAt": 36,
    "lineName": 37,
    "contactPhone": 38,
    "paymentMethod": 39,
    "paymentTime": 41,
    "state": 45,
    "profileUrl": 46,
    "needProfile": 47,
}
PHONE_LAST_COL = 47  # AV

# Sheet2 layout
RISK_COLUMNS = {
    "phoneNumber": 0,
    "userId": 1,
    "timestamp": 2,
    "prefix": 10,
    "riskLevel": 11,
    "isPigeon": 12,
    "pigeonPhone": 13,
    "category": 14,
    "type": 15,
    "typeFromSheet": 16,
    "displayName": 17,
    "memberProfile": 18,
    "hasMemberRow": 19,
    "plan": 20,
    "memberState": 21,
    "isMember": 22,
    "overrideBlocked": 23,
    "hasUserId": 24,
    "status": 25,
}
RISK_LAST_COL = 25  # Z
RISK_EDITABLE = ("phoneNumber", "userId", "riskLevel", "type", "status")

# LineOA layout
LINE_OA_COLUMNS = {
    "timestamp": 0,
    "userId": 1,
    "displayName": 2,
    "profileUrl": 3,
    "messageType": 4,
    "messageText": 5,
}
LINE_OA_LAST_COL = 5

BOOL_FIELDS = {
    "isPigeon",
    "isPigeonListed",
    "overrideBlocked",
    "isMember",
    "needProfile",
    "hasMemberRow",
    "hasUserId",
}


def _map_row(row_number: int, row: List[str], columns: Dict[str, int]) -> Dict[str, Any]:
    d: Dict[str, Any] = {"rowNumber": row_number}
    for name, idx in columns.items():
        v = row[idx].strip() if idx < len(row) else ""
        d[name] = (v.upper() == "TRUE") if name in BOOL_FIELDS else v
    return d


def _read_rows(store: RowStore, sheet: str, last_col: int, columns: Dict[str, int]) -> List[Dict[str, Any]]:
    rows = store.read_range(sheet, FIRST_DATA_ROW, None, 0, last_col)
    return [
        _map_row(FIRST_DATA_ROW + i, row, columns)
        for i, row in enumerate(rows)
        if any(c.strip() for c in row)
    ]


def _digits(s: str) -> str:
    return re.sub(r"\D", "", s or "")


def phone_matches(query: str, phone: str) -> bool:
    """Digit-only containment in either direction ("0912-345" finds "0912345678")."""
    q, p = _digits(query), _digits(phone)
    if not q or not p:
        return False
    return q in p or p in q


def _timestamp_key(value: str) -> Optional[dt.datetime]:
    text = (value or "").strip()
    if not text:
        return None
    try:
        parsed = dt.datetime.fromisoformat(text[:-1] + "+00:00" if text[-1] in "Zz" else text)
    except ValueError:
        d = parse_flexible_date(text)
        if d is None:
            return None
        parsed = dt.datetime(d.year, d.month, d.day)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def newest_first(items: Iterable[Dict[str, Any]], key: str) -> List[Dict[str, Any]]:
    """Sort by a timestamp-like field, newest first; unparseable values go last."""
    dated, undated = [], []
    for item in items:
        ts = _timestamp_key(item.get(key, ""))
        (dated if ts is not None else undated).append((ts, item))
    dated.sort(key=lambda p: p[0], reverse=True)
    return [item for _, item in dated] + [item for _, item in undated]


# =============================================================================
# Phone records (Sheet1)
# =============================================================================

def get_phone_records(store: RowStore, sheet: str = config.SHEET_RECORDS_NAME) -> List[Dict[str, Any]]:
    return _read_rows(store, sheet, PHONE_LAST_COL, PHONE_COLUMNS)


def records_by_phone(records: List[Dict[str, Any]], phone: str) -> List[Dict[str, Any]]:
    return [r for r in records if phone_matches(phone, r.get("phoneNumber", ""))]


def records_by_user(records: List[Dict[str, Any]], user_id: str) -> List[Dict[str, Any]]:
    key = (user_id or "").strip()
    return [r for r in records if r.get("userId") == key]


def merge_profiles(members: List[MemberRecord], records: List[Dict[str, Any]]) -> List[MemberRecord]:
    """Fill displayName/profileUrl from the first event-log row of each identity."""
    profiles: Dict[str, Dict[str, Any]] = {}
    for r in records:
        uid = r.get("userId", "")
        if uid and uid not in profiles:
            profiles[uid] = r
    for m in members:
        p = profiles.get(m.identity_id)
        if p:
            m.profile_url = p.get("profileUrl", "")
            m.display_name = p.get("displayName", "") or m.line_name
    return members


# =============================================================================
# Risk list (Sheet2)
# =============================================================================

def get_risk_list(store: RowStore, sheet: str = config.SHEET_RISK_NAME) -> List[Dict[str, Any]]:
    return _read_rows(store, sheet, RISK_LAST_COL, RISK_COLUMNS)


def filter_risk_list(items: List[Dict[str, Any]], risk_type: str = "", phone: str = "") -> List[Dict[str, Any]]:
    out = items
    if risk_type:
        out = [r for r in out if r.get("type") == risk_type]
    if phone:
        out = [r for r in out if phone_matches(phone, r.get("phoneNumber", ""))]
    return out


def update_risk_record(
    store: RowStore,
    row_number: int,
    updates: Dict[str, Optional[str]],
    sheet: str = config.SHEET_RISK_NAME,
) -> Dict[str, Any]:
    """Overwrite only the given editable fields; every other cell of the row is written back as read."""
    if row_number < FIRST_DATA_ROW:
        raise InvalidRange("row number must point below the header", details={"rowNumber": row_number})
    rows = store.read_range(sheet, row_number, row_number, 0, RISK_LAST_COL)
    if not rows or not any(c.strip() for c in rows[0]):
        raise NotFound("risk record not found", details={"rowNumber": row_number})

    row = list(rows[0])
    for name in RISK_EDITABLE:
        v = updates.get(name)
        if v is not None:
            row[RISK_COLUMNS[name]] = v
    store.write_range(sheet, row_number, 0, [row])
    return _map_row(row_number, row, RISK_COLUMNS)


def delete_risk_record(store: RowStore, row_number: int, sheet: str = config.SHEET_RISK_NAME) -> None:
    if row_number < FIRST_DATA_ROW:
        raise InvalidRange("row number must point below the header", details={"rowNumber": row_number})
    store.delete_row(sheet, row_number)


# =============================================================================
# LINE OA messages
# =============================================================================

def get_line_oa_records(store: RowStore, sheet: str = config.SHEET_LINE_OA_NAME) -> List[Dict[str, Any]]:
    return newest_first(_read_rows(store, sheet, LINE_OA_LAST_COL, LINE_OA_COLUMNS), "timestamp")


def append_line_oa_record(store: RowStore, record: Dict[str, Any], sheet: str = config.SHEET_LINE_OA_NAME) -> Optional[int]:
    row = [""] * (LINE_OA_LAST_COL + 1)
    for name, idx in LINE_OA_COLUMNS.items():
        v = record.get(name)
        row[idx] = "" if v is None else str(v)
    return store.append_rows(sheet, [row])


# =============================================================================
# Reports
# =============================================================================

def build_stats(records: List[Dict[str, Any]], members: List[MemberRecord], today: dt.date) -> Dict[str, int]:
    return {
        "totalRecords": len(records),
        "totalMembers": len(members),
        "highRiskRecords": sum(1 for r in records if r.get("riskLevel") == "high"),
        "mediumRiskRecords": sum(1 for r in records if r.get("riskLevel") == "medium"),
        "lowRiskRecords": sum(1 for r in records if r.get("riskLevel") == "low"),
        "activeMembers": sum(1 for m in members if m.display_status(today) == "active"),
        "proMembers": sum(1 for m in members if m.plan == "pro"),
        "expiredMembers": sum(1 for m in members if m.is_expired(today)),
        "pigeonRecords": sum(1 for r in records if r.get("isPigeon")),
        "recordsWithMembers": sum(1 for r in records if r.get("isMember")),
    }


def recent_records(records: List[Dict[str, Any]], limit: int = 10) -> List[Dict[str, Any]]:
    with_ts = [r for r in records if (r.get("timestamp") or "").strip()]
    return newest_first(with_ts, "timestamp")[:max(limit, 0)]


def recent_members(members: List[MemberRecord], limit: int = 10) -> List[MemberRecord]:
    dated = [(m.start_date(), m) for m in members]
    dated = [(d, m) for d, m in dated if d is not None]
    dated.sort(key=lambda p: (p[0], p[1].row_number), reverse=True)
    return [m for _, m in dated][:max(limit, 0)]
