# sync.py
# Creates member rows for identities that so far only appear in the event log.

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import config
from members import (
    COL_PLAN,
    COL_USER_ID,
    FIRST_DATA_ROW,
    MembershipEngine,
    new_member_row,
    plan_formula,
)

logger = logging.getLogger(__name__)

# Sheet1 column L carries the LINE userId of each lookup
RECORDS_USER_ID_COL = 11

DEFAULT_SOURCES: Tuple[Tuple[str, int], ...] = ((config.SHEET_RECORDS_NAME, RECORDS_USER_ID_COL),)


@dataclass
class ReconcileResult:
    created_count: int = 0
    existing_count: int = 0
    created_identities: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": self.created_count,
            "existing": self.existing_count,
            "newUserIds": list(self.created_identities),
        }


class MemberSync:
    def __init__(self, engine: MembershipEngine, sources: Optional[Sequence[Tuple[str, int]]] = None):
        self.engine = engine
        self.store = engine.store
        self.sources = tuple(sources) if sources is not None else DEFAULT_SOURCES

    def _column_values(self, sheet: str, col_idx: int) -> List[str]:
        rows = self.store.read_range(sheet, FIRST_DATA_ROW, None, col_idx, col_idx)
        return [row[0].strip() for row in rows if row and row[0].strip()]

    def logged_identities(self) -> List[str]:
        """Distinct identities from the event log, in first-seen order."""
        seen: Dict[str, None] = {}
        for sheet, col_idx in self.sources:
            for identity in self._column_values(sheet, col_idx):
                seen.setdefault(identity, None)
        return list(seen)

    def reconcile(self) -> ReconcileResult:
        with self.engine.lock:
            logged = self.logged_identities()
            if not logged:
                return ReconcileResult()

            existing = set(self._column_values(self.engine.sheet, COL_USER_ID))
            missing = [i for i in logged if i not in existing]
            if not missing:
                return ReconcileResult(existing_count=len(existing))

            today = self.engine.today()
            first_row = self.store.append_rows(self.engine.sheet, [new_member_row(i, today) for i in missing])

            rows = self._created_rows(missing, first_row)
            if rows:
                self.store.set_cell_formulas(
                    self.engine.sheet,
                    COL_PLAN,
                    {row_number: plan_formula(row_number) for row_number in rows},
                )

            logger.info("[Sync] created %d member(s), %d existing", len(missing), len(existing))
            return ReconcileResult(
                created_count=len(missing),
                existing_count=len(existing),
                created_identities=missing,
            )

    def _created_rows(self, identities: List[str], first_row: Optional[int]) -> List[int]:
        if first_row is not None:
            return [first_row + i for i in range(len(identities))]
        # Append response carried no range; find the rows by identity
        logger.warning("[Sync] append returned no row number; locating %d new rows", len(identities))
        wanted = set(identities)
        return [m.row_number for m in self.engine.list_members() if m.identity_id in wanted]


def run_background_reconcile(sync: MemberSync, on_created=None) -> None:
    """Fire-and-forget entry point; failures are logged, never raised to the caller."""
    try:
        result = sync.reconcile()
    except Exception:
        logger.exception("[Sync] background reconcile failed")
        return
    if result.created_count and on_created is not None:
        on_created(result)
