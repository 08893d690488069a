"""
Event-log helpers and the read cache.
"""
import pytest

import config
from cache import TTLCache
from errors import NotFound
from records import (
    append_line_oa_record,
    get_line_oa_records,
    newest_first,
    phone_matches,
    update_risk_record,
)


@pytest.mark.parametrize(
    "query,phone,expected",
    [
        ("0912345678", "0912-345-678", True),
        ("345678", "0912345678", True),
        ("+886 912 345 678 ext", "912345678", True),
        ("0912", "0987654321", False),
        ("", "0912345678", False),
        ("0912", "", False),
    ],
)
def test_phone_matches(query, phone, expected):
    assert phone_matches(query, phone) is expected


def test_newest_first_puts_undated_last():
    items = [
        {"id": 1, "ts": "2026/10/1"},
        {"id": 2, "ts": "garbage"},
        {"id": 3, "ts": "2026-10-18T08:00:00Z"},
        {"id": 4, "ts": "2026-10-18T09:00:00+08:00"},
    ]
    assert [i["id"] for i in newest_first(items, "ts")] == [3, 4, 1, 2]


def test_line_oa_round_trip(store):
    append_line_oa_record(store, {"timestamp": "2026-10-18T01:00:00Z", "userId": "U1", "messageText": "old"})
    append_line_oa_record(store, {"timestamp": "2026-10-19T01:00:00Z", "userId": "U2", "messageType": "text", "messageText": "new"})

    rows = get_line_oa_records(store)

    assert [r["messageText"] for r in rows] == ["new", "old"]
    assert rows[0]["rowNumber"] == 3
    assert rows[1]["displayName"] == ""


def test_update_missing_risk_record(store):
    with pytest.raises(NotFound):
        update_risk_record(store, 9, {"status": "done"}, sheet=config.SHEET_RISK_NAME)


def test_ttl_cache_expiry_and_prefix_delete():
    now = [100.0]
    cache = TTLCache(default_ttl=10, clock=lambda: now[0])
    cache.set("members", [1])
    cache.set("recent-data:records", [2])
    cache.set("recent-data:members", [3], ttl=1)

    now[0] = 102.0
    assert cache.get("members") == [1]
    assert cache.get("recent-data:members") is None

    cache.delete_prefix("recent-data")
    assert cache.get("recent-data:records") is None

    now[0] = 111.0
    assert cache.get("members") is None
