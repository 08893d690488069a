# config.py
# Environment-driven settings for the risk / membership admin backend.

from __future__ import annotations

import os
import re


def _safe_int_env(key: str, default: int) -> int:
    """
    Accepts values like:
      "8", " 8 ", "(8)", "8h", "TZ=8"
    Returns the first integer found, otherwise default.
    """
    raw = os.getenv(key, "")
    s = str(raw).strip()
    m = re.search(r"-?\d+", s)
    if not m:
        return default
    return int(m.group(0))


# LINE Messaging API
CHANNEL_ACCESS_TOKEN = os.getenv("CHANNEL_ACCESS_TOKEN", os.getenv("LINE_CHANNEL_ACCESS_TOKEN", "")).strip()
CHANNEL_SECRET = os.getenv("CHANNEL_SECRET", os.getenv("LINE_CHANNEL_SECRET", "")).strip()

# Admin API guard (disabled when empty)
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "").strip()

# Sheets
GSHEET_ID = os.getenv("GSHEET_ID", os.getenv("GOOGLE_SHEETS_SPREADSHEET_ID", "")).strip()

SHEET_RECORDS_NAME = os.getenv("SHEET_RECORDS_NAME", "Sheet1").strip()
SHEET_RISK_NAME = os.getenv("SHEET_RISK_NAME", "Sheet2").strip()
SHEET_MEMBERS_NAME = os.getenv("SHEET_MEMBERS_NAME", "Members / Subscriptions").strip()
SHEET_LINE_OA_NAME = os.getenv("SHEET_LINE_OA_NAME", "LineOA").strip()

# Google Service Account: base64 json, or the email + private key pair
GOOGLE_SERVICE_ACCOUNT_B64 = os.getenv("GOOGLE_SERVICE_ACCOUNT_B64", "").strip()
GOOGLE_SERVICE_ACCOUNT_EMAIL = os.getenv("GOOGLE_SERVICE_ACCOUNT_EMAIL", "").strip()
GOOGLE_PRIVATE_KEY = os.getenv("GOOGLE_PRIVATE_KEY", "")

# Business timezone (hours from UTC); Asia/Taipei by default
TZ_OFFSET_HOURS = _safe_int_env("TZ_OFFSET_HOURS", 8)

SHEETS_TIMEOUT_SEC = _safe_int_env("SHEETS_TIMEOUT_SEC", 20)
CACHE_TTL_SEC = _safe_int_env("CACHE_TTL_SEC", 60)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()
APP_ENV = os.getenv("APP_ENV", "prod").strip().lower()
