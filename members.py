# members.py
# Membership engine over the "Members / Subscriptions" sheet.
#
# Columns (row 1 is the header):
#   A userId | B plan | C status | D startAt | E expireAt | F lineName
#   G state  | H contactPhone | I paymentMethod | J paymentTime
#
# Row numbers are locators, not keys: deleting a row shifts every row below
# it. Pass expected_identity to the row-number based operations to have the
# engine refuse a row that no longer belongs to that identity.

from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import config
from dates import (
    DurationOption,
    add_duration,
    business_tz,
    days_left,
    format_for_store,
    is_expired,
    parse_flexible_date,
    today_local,
)
from errors import InvalidInput, InvalidRange, NotFound, StaleRow
from sheets import RowStore

logger = logging.getLogger(__name__)

HEADER_ROWS = 1
FIRST_DATA_ROW = HEADER_ROWS + 1

COL_USER_ID = 0
COL_PLAN = 1
COL_STATUS = 2
COL_START_AT = 3
COL_EXPIRE_AT = 4
COL_LINE_NAME = 5
COL_STATE = 6
COL_CONTACT_PHONE = 7
COL_PAYMENT_METHOD = 8
COL_PAYMENT_TIME = 9
LAST_COL = COL_PAYMENT_TIME
WIDTH = LAST_COL + 1

TRIAL_DAYS_OPTION = DurationOption.TRIAL_7_DAYS


class Plan(str, Enum):
    PRO = "pro"
    NOPRO = "nopro"


class Status(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"


def _enum_value(enum_cls, value: Any, field: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value or "").strip())
    except ValueError:
        raise InvalidInput(
            f"invalid {field}",
            details={"field": field, "value": value, "allowed": [e.value for e in enum_cls]},
        ) from None


def plan_formula(row_number: int) -> str:
    """Formula installed in the plan cell of rows the app creates."""
    e = f"E{row_number}"
    return f'=IF({e}="","",IF({e}<TODAY(),"nopro","pro"))'


def evaluate_plan(expire_at: str, today: dt.date, tz: Optional[dt.tzinfo] = None) -> str:
    """What plan_formula() evaluates to for a given expireAt cell."""
    if not (expire_at or "").strip():
        return ""
    expire = parse_flexible_date(expire_at, tz)
    if expire is None:
        # Sheets compares a text cell as greater than any date
        return Plan.PRO.value
    return Plan.NOPRO.value if is_expired(expire, today) else Plan.PRO.value


# =============================================================================
# Records
# =============================================================================

@dataclass
class MemberRecord:
    row_number: int
    identity_id: str
    plan: str = ""
    status: str = ""
    start_at: str = ""
    expire_at: str = ""
    line_name: str = ""
    state: str = ""
    contact_phone: str = ""
    payment_method: str = ""
    payment_time: str = ""
    plan_is_computed: bool = False
    display_name: str = ""
    profile_url: str = ""
    # zone that aware timestamps in the date cells are read in
    tz: Optional[dt.tzinfo] = None

    @classmethod
    def from_row(
        cls,
        row_number: int,
        row: List[str],
        plan_is_computed: bool = False,
        tz: Optional[dt.tzinfo] = None,
    ) -> "MemberRecord":
        cells = (list(row) + [""] * WIDTH)[:WIDTH]
        cells = [str(c).strip() for c in cells]
        return cls(
            row_number=row_number,
            identity_id=cells[COL_USER_ID],
            plan=cells[COL_PLAN],
            status=cells[COL_STATUS],
            start_at=cells[COL_START_AT],
            expire_at=cells[COL_EXPIRE_AT],
            line_name=cells[COL_LINE_NAME],
            state=cells[COL_STATE],
            contact_phone=cells[COL_CONTACT_PHONE],
            payment_method=cells[COL_PAYMENT_METHOD],
            payment_time=cells[COL_PAYMENT_TIME],
            plan_is_computed=plan_is_computed,
            display_name=cells[COL_LINE_NAME],
            tz=tz,
        )

    def start_date(self) -> Optional[dt.date]:
        return parse_flexible_date(self.start_at, self.tz)

    def expire_date(self) -> Optional[dt.date]:
        return parse_flexible_date(self.expire_at, self.tz)

    def is_expired(self, today: dt.date) -> bool:
        expire = self.expire_date()
        return expire is not None and is_expired(expire, today)

    def display_status(self, today: dt.date) -> str:
        # Expiry wins over whatever status is stored
        if self.is_expired(today):
            return Status.EXPIRED.value
        return self.status

    def to_dict(self, today: dt.date) -> Dict[str, Any]:
        return {
            "rowNumber": self.row_number,
            "userId": self.identity_id,
            "plan": self.plan,
            "planIsComputed": self.plan_is_computed,
            "status": self.status,
            "displayStatus": self.display_status(today),
            "startAt": self.start_at,
            "expireAt": self.expire_at,
            "lineName": self.line_name,
            "state": self.state,
            "contactPhone": self.contact_phone,
            "paymentMethod": self.payment_method,
            "paymentTime": self.payment_time,
            "displayName": self.display_name or self.line_name,
            "profileUrl": self.profile_url,
            "daysLeft": days_left(self.expire_date(), today),
            "isExpired": self.is_expired(today),
        }


@dataclass
class EnsureResult:
    created: bool
    member: MemberRecord


@dataclass
class TopUpResult:
    start_at: str
    expire_at: str

    def to_dict(self) -> Dict[str, str]:
        return {"startAt": self.start_at, "expireAt": self.expire_at}


def new_member_row(identity_id: str, today: dt.date) -> List[str]:
    row = [""] * WIDTH
    row[COL_USER_ID] = identity_id
    # plan stays blank; its formula is installed once the row number is known
    row[COL_STATUS] = Status.ACTIVE.value
    row[COL_START_AT] = format_for_store(today)
    row[COL_EXPIRE_AT] = format_for_store(add_duration(today, TRIAL_DAYS_OPTION))
    return row


# =============================================================================
# Engine
# =============================================================================

class MembershipEngine:
    """
    Reads and mutates member rows through a RowStore.

    Every mutation is a read-then-write sequence against the remote sheet
    without version checks. Within one process the engine lock serializes
    them; a second writer in another process can still overwrite a change
    made between our read and our write.
    """

    def __init__(
        self,
        store: RowStore,
        sheet: str = config.SHEET_MEMBERS_NAME,
        today: Optional[Callable[[], dt.date]] = None,
        lock: Optional[threading.RLock] = None,
        tz: Optional[dt.tzinfo] = None,
    ):
        self.store = store
        self.sheet = sheet
        self.tz = tz or business_tz(config.TZ_OFFSET_HOURS)
        self._today = today or (lambda: today_local(self.tz))
        self.lock = lock or threading.RLock()

    def today(self) -> dt.date:
        return self._today()

    # ---- reads ---------------------------------------------------------------

    def list_members(self) -> List[MemberRecord]:
        rows = self.store.read_range(self.sheet, FIRST_DATA_ROW, None, 0, LAST_COL)
        computed = self.store.computed_rows(self.sheet, COL_PLAN, FIRST_DATA_ROW)
        out: List[MemberRecord] = []
        for i, row in enumerate(rows):
            if not any(c.strip() for c in row):
                continue
            row_number = FIRST_DATA_ROW + i
            out.append(MemberRecord.from_row(row_number, row, row_number in computed, self.tz))
        return out

    def find_by_identity(self, identity_id: str) -> Optional[MemberRecord]:
        key = (identity_id or "").strip()
        if not key:
            return None
        # Linear scan; sheet sizes are small enough that no index is kept
        for m in self.list_members():
            if m.identity_id == key:
                return m
        return None

    def get(self, row_number: int, expected_identity: Optional[str] = None) -> MemberRecord:
        if not isinstance(row_number, int) or row_number < FIRST_DATA_ROW:
            raise InvalidRange("row number must point below the header", details={"rowNumber": row_number})
        rows = self.store.read_range(self.sheet, row_number, row_number, 0, LAST_COL)
        if not rows or not any(c.strip() for c in rows[0]):
            raise NotFound("member row not found", details={"rowNumber": row_number})
        member = MemberRecord.from_row(
            row_number,
            rows[0],
            self.store.is_cell_computed(self.sheet, row_number, COL_PLAN),
            self.tz,
        )
        if expected_identity and expected_identity.strip() and member.identity_id != expected_identity.strip():
            raise StaleRow(
                "row no longer belongs to this member",
                details={"rowNumber": row_number, "expected": expected_identity, "found": member.identity_id},
            )
        return member

    # ---- mutations -----------------------------------------------------------

    def ensure_member(self, identity_id: str) -> EnsureResult:
        key = (identity_id or "").strip()
        if not key:
            raise InvalidInput("identity is required", details={"field": "userId"})

        with self.lock:
            existing = self.find_by_identity(key)
            if existing:
                return EnsureResult(created=False, member=existing)

            first_row = self.store.append_rows(self.sheet, [new_member_row(key, self.today())])
            member = self._locate_created(key, first_row)
            self.store.set_cell_formula(self.sheet, member.row_number, COL_PLAN, plan_formula(member.row_number))
            logger.info("[Members] created trial member %s at row %s", key, member.row_number)
            return EnsureResult(created=True, member=self.get(member.row_number, key))

    def _locate_created(self, identity_id: str, row_number: Optional[int]) -> MemberRecord:
        if row_number is not None:
            try:
                return self.get(row_number, identity_id)
            except NotFound:
                logger.warning("[Members] appended row %s does not hold %s; rescanning", row_number, identity_id)
        member = self.find_by_identity(identity_id)
        if member is None:
            raise NotFound("appended member row not found", details={"userId": identity_id})
        return member

    def top_up(
        self,
        row_number: int,
        option: DurationOption,
        expected_identity: Optional[str] = None,
    ) -> TopUpResult:
        option = DurationOption.parse(option)
        with self.lock:
            member = self.get(row_number, expected_identity)
            today = self.today()
            writes: Dict[int, str] = {}

            start_at = member.start_at
            if not start_at:
                start_at = format_for_store(today)
                writes[COL_START_AT] = start_at
            start = parse_flexible_date(start_at, self.tz) or today

            current_expire = member.expire_date()
            if option is DurationOption.TRIAL_7_DAYS:
                # Trial resets from the start date instead of extending
                anchor = start
            elif current_expire is not None and not is_expired(current_expire, today):
                anchor = current_expire
            else:
                anchor = today

            new_expire = add_duration(anchor, option)
            if current_expire is not None and new_expire < current_expire:
                new_expire = current_expire

            expire_at = format_for_store(new_expire)
            writes[COL_EXPIRE_AT] = expire_at
            self.store.write_cells(self.sheet, row_number, writes)
            logger.info(
                "[Members] top-up row %s (%s): %s -> %s", row_number, option.value, member.expire_at or "-", expire_at
            )
            return TopUpResult(start_at=start_at, expire_at=expire_at)

    def update(
        self,
        row_number: int,
        plan: Plan,
        status: Status,
        line_name: Optional[str] = None,
        start_at: Optional[str] = None,
        expire_at: Optional[str] = None,
        expected_identity: Optional[str] = None,
    ) -> MemberRecord:
        plan = _enum_value(Plan, plan, "plan")
        status = _enum_value(Status, status, "status")
        line_name = line_name.strip() if line_name is not None and line_name.strip() else None

        with self.lock:
            member = self.get(row_number, expected_identity)

            if member.plan_is_computed:
                # Leave the formula alone; it follows expireAt
                cells: Dict[int, str] = {COL_STATUS: status.value}
                if line_name is not None:
                    cells[COL_LINE_NAME] = line_name
                if start_at is not None:
                    cells[COL_START_AT] = start_at.strip()
                if expire_at is not None:
                    cells[COL_EXPIRE_AT] = expire_at.strip()
                self.store.write_cells(self.sheet, row_number, cells)
            else:
                values = [
                    plan.value,
                    status.value,
                    start_at.strip() if start_at is not None else member.start_at,
                    expire_at.strip() if expire_at is not None else member.expire_at,
                ]
                if line_name is not None:
                    values.append(line_name)
                self.store.write_range(self.sheet, row_number, COL_PLAN, [values])

            logger.info("[Members] updated row %s (computed plan=%s)", row_number, member.plan_is_computed)
            return self.get(row_number)

    def delete(self, row_number: int, expected_identity: Optional[str] = None) -> MemberRecord:
        with self.lock:
            member = self.get(row_number, expected_identity)
            self.store.delete_row(self.sheet, row_number)
            logger.info("[Members] deleted row %s (%s)", row_number, member.identity_id)
            return member
