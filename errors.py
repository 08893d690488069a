# errors.py
# Error taxonomy for the membership core. Each error carries a machine-readable
# code plus structured details; main.py decides how they are presented.

from __future__ import annotations

from typing import Any, Dict, Optional


class MembershipError(Exception):
    """Base class for every error raised by the sheet-backed core."""
    code = "error"
    http_status = 500

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFound(MembershipError):
    """No record at the requested row number / identity."""
    code = "not_found"
    http_status = 404


class StaleRow(NotFound):
    """The row number now points at a different identity (rows shifted after a delete)."""
    code = "stale_row"
    http_status = 409


class InvalidInput(MembershipError):
    code = "invalid_input"
    http_status = 400


class InvalidDurationOption(InvalidInput):
    code = "invalid_duration_option"


class InvalidRange(MembershipError):
    """Row/column out of bounds, or values whose shape does not match the target range."""
    code = "invalid_range"
    http_status = 400


class StoreUnavailable(MembershipError):
    """Backing spreadsheet unreachable (network, auth, quota, timeout)."""
    code = "store_unavailable"
    http_status = 503


class Unauthorized(MembershipError):
    code = "unauthorized"
    http_status = 401
