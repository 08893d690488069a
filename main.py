# main.py
# Phone-risk lookup & membership admin backend (FastAPI)
# - Google Sheets: Sheet1 (phone lookups / event log), Sheet2 (risk list),
#   "Members / Subscriptions" (members), LineOA (raw LINE OA messages)
# - Admin API for the dashboard (members, risk list, reports)
# - LINE webhook that records incoming OA messages
# - Member rows for new LINE users are created by a background reconcile

from __future__ import annotations

import base64
import datetime as dt
import hashlib
import hmac
import json
import logging
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import config
import records
from cache import TTLCache
from dates import DurationOption
from errors import InvalidInput, MembershipError, StoreUnavailable, Unauthorized
from members import MembershipEngine
from sheets import RowStore, SheetStore
from sync import MemberSync, ReconcileResult, run_background_reconcile


logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# =============================================================================
# App
# =============================================================================

app = FastAPI()

LINE_PROFILE_ENDPOINT = "https://api.line.me/v2/bot/profile/{user_id}"

cache = TTLCache(default_ttl=config.CACHE_TTL_SEC)

# Webhook de-dup (LINE may resend)
_DEDUP_LOCK = threading.Lock()
_DEDUP_TTL_SEC = 60 * 10
_DEDUP_MAP: Dict[str, float] = {}  # key -> expires_at


def _dedup_seen(key: str) -> bool:
    """Return True if already processed recently."""
    now = time.time()
    with _DEDUP_LOCK:
        expired = [k for k, exp in _DEDUP_MAP.items() if exp <= now]
        for k in expired:
            _DEDUP_MAP.pop(k, None)

        if key in _DEDUP_MAP:
            return True
        _DEDUP_MAP[key] = now + _DEDUP_TTL_SEC
        return False


# =============================================================================
# Dependencies
# =============================================================================

_deps_lock = threading.Lock()
_store: Optional[RowStore] = None
_engine: Optional[MembershipEngine] = None


def get_store() -> RowStore:
    global _store
    with _deps_lock:
        if _store is None:
            if not config.GSHEET_ID:
                raise StoreUnavailable("spreadsheet not configured", details={"missing": "GSHEET_ID"})
            _store = SheetStore(config.GSHEET_ID)
        return _store


def get_engine() -> MembershipEngine:
    # One engine per process so its lock serializes every member write
    global _engine
    store = get_store()
    with _deps_lock:
        if _engine is None:
            _engine = MembershipEngine(store)
        return _engine


def get_sync(engine: MembershipEngine = Depends(get_engine)) -> MemberSync:
    return MemberSync(engine)


def require_admin(x_admin_token: str = Header(default="")) -> None:
    if config.ADMIN_TOKEN and not hmac.compare_digest(x_admin_token, config.ADMIN_TOKEN):
        raise Unauthorized("admin token required", details={"header": "X-Admin-Token"})


# =============================================================================
# Errors
# =============================================================================

@app.exception_handler(MembershipError)
async def membership_error_handler(request: Request, exc: MembershipError):
    if isinstance(exc, StoreUnavailable):
        logger.error("[API] %s %s: store unavailable %s", request.method, request.url.path, exc.details)
    else:
        logger.info("[API] %s %s: %s %s", request.method, request.url.path, exc.code, exc.details)
    return JSONResponse({"success": False, "error": exc.to_dict()}, status_code=exc.http_status)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("[API] unhandled exception on %s: %r", request.url.path, exc, exc_info=True)
    return JSONResponse(
        {"success": False, "error": {"code": "internal_error", "message": "internal_error", "details": {}}},
        status_code=500,
    )


def _ok(data: Any = None, **extra: Any) -> Dict[str, Any]:
    out = {"success": True, "data": data}
    out.update(extra)
    return out


# =============================================================================
# Cache helpers
# =============================================================================

def _invalidate_members(*_: Any) -> None:
    cache.delete("members")
    cache.delete_prefix("recent-data")


def _cached(key: str, loader):
    value = cache.get(key)
    if value is None:
        value = loader()
        cache.set(key, value)
    return value


def _reconcile_quietly(sync: MemberSync) -> Optional[ReconcileResult]:
    # ?sync=true must not break the read it precedes
    try:
        result = sync.reconcile()
    except MembershipError as e:
        logger.error("[Sync] reconcile before read failed: %s %s", e.code, e.details)
        return None
    logger.info("[Sync] reconcile before read: %s", result.to_dict())
    if result.created_count:
        _invalidate_members()
    return result


def _schedule_reconcile(background_tasks: BackgroundTasks, sync: MemberSync) -> None:
    background_tasks.add_task(run_background_reconcile, sync, _invalidate_members)


# =============================================================================
# Request bodies
# =============================================================================

class MemberUpdateIn(BaseModel):
    rowNumber: int
    plan: str
    status: str
    lineName: Optional[str] = None
    startAt: Optional[str] = None
    expireAt: Optional[str] = None
    userId: Optional[str] = None  # when given, the row must still belong to this user


class MemberActionIn(BaseModel):
    action: str
    rowNumber: Optional[int] = None
    option: Optional[str] = None
    userId: Optional[str] = None


class RiskUpdateIn(BaseModel):
    rowNumber: int
    phoneNumber: Optional[str] = None
    userId: Optional[str] = None
    type: Optional[str] = None
    riskLevel: Optional[str] = None
    status: Optional[str] = None


# =============================================================================
# Admin API
# =============================================================================

api = APIRouter(prefix="/api", dependencies=[Depends(require_admin)])


def _member_list(engine: MembershipEngine, store: RowStore) -> List[Dict[str, Any]]:
    members = engine.list_members()
    records.merge_profiles(members, _cached("phone-records", lambda: records.get_phone_records(store)))
    today = engine.today()
    return [m.to_dict(today) for m in members]


@api.get("/members")
def list_members(
    background_tasks: BackgroundTasks,
    userId: str = "",
    sync: str = "",
    engine: MembershipEngine = Depends(get_engine),
    syncer: MemberSync = Depends(get_sync),
    store: RowStore = Depends(get_store),
):
    if sync == "true":
        _reconcile_quietly(syncer)

    if userId:
        member = engine.find_by_identity(userId)
        return _ok(member.to_dict(engine.today()) if member else None)

    data = _cached("members", lambda: _member_list(engine, store))
    _schedule_reconcile(background_tasks, syncer)
    return _ok(data)


@api.put("/members")
def update_member(body: MemberUpdateIn, engine: MembershipEngine = Depends(get_engine)):
    member = engine.update(
        body.rowNumber,
        body.plan,
        body.status,
        line_name=body.lineName,
        start_at=body.startAt,
        expire_at=body.expireAt,
        expected_identity=body.userId,
    )
    _invalidate_members()
    return _ok(member.to_dict(engine.today()), message="updated")


@api.post("/members")
def member_action(
    body: MemberActionIn,
    engine: MembershipEngine = Depends(get_engine),
    syncer: MemberSync = Depends(get_sync),
):
    if body.action == "add-value":
        if not body.rowNumber or not body.option:
            raise InvalidInput("rowNumber and option are required", details={"action": body.action})
        option = DurationOption.parse(body.option)
        result = engine.top_up(body.rowNumber, option, expected_identity=body.userId)
        _invalidate_members()
        return _ok(result.to_dict(), message="topped up")

    if body.action == "ensure":
        if not (body.userId or "").strip():
            raise InvalidInput("userId is required", details={"action": body.action})
        result = engine.ensure_member(body.userId)
        if result.created:
            _invalidate_members()
        return _ok({"created": result.created, "member": result.member.to_dict(engine.today())})

    if body.action in ("sync", "sync-members"):
        result = syncer.reconcile()
        if result.created_count:
            _invalidate_members()
        return _ok(result.to_dict())

    raise InvalidInput("unknown action", details={"action": body.action})


@api.delete("/members")
def delete_member(
    rowNumber: int = Query(...),
    userId: Optional[str] = None,
    engine: MembershipEngine = Depends(get_engine),
):
    member = engine.delete(rowNumber, expected_identity=userId)
    _invalidate_members()
    return _ok({"rowNumber": rowNumber, "userId": member.identity_id}, message="deleted")


@api.get("/phone-records")
def list_phone_records(
    background_tasks: BackgroundTasks,
    phone: str = "",
    userId: str = "",
    sync: str = "",
    syncer: MemberSync = Depends(get_sync),
    store: RowStore = Depends(get_store),
):
    if sync == "true":
        _reconcile_quietly(syncer)

    all_records = _cached("phone-records", lambda: records.get_phone_records(store))
    if phone:
        return _ok(records.records_by_phone(all_records, phone))
    if userId:
        return _ok(records.records_by_user(all_records, userId))

    _schedule_reconcile(background_tasks, syncer)
    return _ok(all_records)


@api.get("/risk-list")
def list_risk(type: str = "", phoneNumber: str = "", store: RowStore = Depends(get_store)):
    items = _cached("risk-list", lambda: records.get_risk_list(store))
    return _ok(records.filter_risk_list(items, risk_type=type, phone=phoneNumber))


@api.put("/risk-list")
def update_risk(body: RiskUpdateIn, store: RowStore = Depends(get_store)):
    updates = body.model_dump(exclude={"rowNumber"}, exclude_none=True)
    if not updates:
        raise InvalidInput("nothing to update", details={"rowNumber": body.rowNumber})
    row = records.update_risk_record(store, body.rowNumber, updates)
    cache.delete("risk-list")
    return _ok(row, message="updated")


@api.delete("/risk-list")
def delete_risk(rowNumber: int = Query(...), store: RowStore = Depends(get_store)):
    records.delete_risk_record(store, rowNumber)
    cache.delete("risk-list")
    return _ok({"rowNumber": rowNumber}, message="deleted")


@api.get("/line-oa")
def list_line_oa(store: RowStore = Depends(get_store)):
    return _ok(_cached("line-oa", lambda: records.get_line_oa_records(store)))


@api.get("/stats")
def stats(engine: MembershipEngine = Depends(get_engine), store: RowStore = Depends(get_store)):
    all_records = _cached("phone-records", lambda: records.get_phone_records(store))
    return _ok(records.build_stats(all_records, engine.list_members(), engine.today()))


@api.get("/recent-data")
def recent_data(
    type: str = "records",
    limit: int = 10,
    engine: MembershipEngine = Depends(get_engine),
    store: RowStore = Depends(get_store),
):
    if type == "members":
        today = engine.today()
        return _ok([m.to_dict(today) for m in records.recent_members(engine.list_members(), limit)])
    if type == "records":
        all_records = _cached("phone-records", lambda: records.get_phone_records(store))
        return _ok(records.recent_records(all_records, limit))
    raise InvalidInput("unknown type", details={"type": type, "allowed": ["records", "members"]})


app.include_router(api)


# =============================================================================
# LINE webhook
# =============================================================================

def _hmac_sha256(secret: str, body: bytes) -> str:
    mac = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(mac).decode("utf-8")


def _verify_line_signature(body: bytes, signature: str) -> bool:
    if not config.CHANNEL_SECRET or not signature:
        return False
    expected = _hmac_sha256(config.CHANNEL_SECRET, body)
    return hmac.compare_digest(expected, signature)


async def get_line_profile(user_id: str) -> Tuple[str, str]:
    # display_name, picture_url; blank when the profile can't be fetched
    if not user_id or not config.CHANNEL_ACCESS_TOKEN:
        return "", ""
    headers = {"Authorization": f"Bearer {config.CHANNEL_ACCESS_TOKEN}"}
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            r = await client.get(LINE_PROFILE_ENDPOINT.format(user_id=user_id), headers=headers)
    except httpx.HTTPError as e:
        logger.warning("[LINE] profile lookup failed: %r", e)
        return "", ""
    if r.status_code != 200:
        logger.warning("[LINE] profile lookup failed: %s %s", r.status_code, r.text[:200])
        return "", ""
    try:
        j = r.json()
    except ValueError:
        logger.warning("[LINE] profile lookup returned non-JSON body")
        return "", ""
    if not isinstance(j, dict):
        return "", ""
    return j.get("displayName", ""), j.get("pictureUrl", "")


def _utc_now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@app.get("/")
def health():
    return {"ok": True, "app": "risk-member-admin", "env": config.APP_ENV}


@app.post("/api/line-webhook")
@app.post("/callback")
async def line_webhook(
    request: Request,
    x_line_signature: str = Header(default=""),
    store: RowStore = Depends(get_store),
):
    if not config.CHANNEL_SECRET:
        logger.error("[Webhook] CHANNEL_SECRET is not set")
        return JSONResponse({"error": "server config error"}, status_code=500)

    body = await request.body()
    if not _verify_line_signature(body, x_line_signature):
        return JSONResponse({"error": "invalid signature"}, status_code=401)

    try:
        payload = json.loads(body.decode("utf-8"))
    except ValueError:
        return JSONResponse({"error": "invalid json"}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"error": "invalid payload"}, status_code=400)

    events = payload.get("events")
    if not isinstance(events, list):
        events = []

    appended = 0
    for ev in events:
        if not isinstance(ev, dict):
            continue
        ev_id = ev.get("webhookEventId") or ""
        if not ev_id:
            ev_id = hashlib.sha1(json.dumps(ev, ensure_ascii=False, sort_keys=True).encode("utf-8")).hexdigest()
        if _dedup_seen(ev_id):
            continue

        source = ev.get("source")
        user_id = source.get("userId", "") if isinstance(source, dict) else ""
        msg = ev.get("message")
        if ev.get("type") != "message" or not user_id or not isinstance(msg, dict) or not msg:
            continue

        mtype = msg.get("type") or "text"
        text = msg.get("text", "") if mtype == "text" else f"[{mtype}]"
        try:
            display_name, picture_url = await get_line_profile(user_id)
            await run_in_threadpool(
                records.append_line_oa_record,
                store,
                {
                    "timestamp": _utc_now_iso(),
                    "userId": user_id,
                    "displayName": display_name,
                    "profileUrl": picture_url,
                    "messageType": mtype,
                    "messageText": text,
                },
            )
            appended += 1
        except MembershipError as e:
            # LINE redelivers on non-2xx; one bad event must not block the batch
            logger.error("[Webhook] append LineOA failed: %s %s", e.code, e.details)

    if appended:
        cache.delete("line-oa")
    return JSONResponse({"ok": True})
