from fastapi import FastAPI, HTTPException, Depends, Header, APIRouter, BackgroundTasks, Response, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, ConfigDict
from typing import Any, Dict, List, Optional
import asyncio
import json
import logging
import os

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hybridpos_shared import (
    RequestIDMiddleware,
    configure_cors,
    add_standard_health,
    setup_json_logging,
    register_startup,
    register_shutdown,
)

from . import conflicts, orders, outbox
from .changes import capture_changes, make_channel
from .config import load_settings
from .drain_lock import make_drain_lock
from .models import QUEUE_STATUSES, create_schema, make_engine, make_sessionmaker
from .mutations import OPERATIONS, CreateOrder, OrderItemIn, OrderType
from .notifier import ChangeNotifier, ReconnectPolicy
from .realtime import STAFF_ROOMS, RealtimeHub, is_valid_room, table_room
from .sync_worker import SyncWorker

_log = logging.getLogger("pos.api")

settings = load_settings()

store_engine = make_engine(settings.db_url)
queue_engine = store_engine if settings.queue_db_url == settings.db_url else make_engine(settings.queue_db_url)
StoreSession = make_sessionmaker(store_engine)
QueueSession = make_sessionmaker(queue_engine)

hub = RealtimeHub()
change_channel = make_channel(settings.changes_backend, settings.changes_redis_url, settings.changes_channel)
capture_changes(StoreSession, change_channel)


def _publish_sync_event(event: str, data: Dict[str, Any]) -> None:
    hub.publish_threadsafe(settings.events_room, event, data)


# With a redis change backend the lock is shared with any standalone worker.
worker = SyncWorker(QueueSession, StoreSession, settings, publish=_publish_sync_event, lock=make_drain_lock(settings))
notifier = ChangeNotifier(
    change_channel,
    hub,
    room=settings.events_room,
    policy=ReconnectPolicy(
        error_delay=settings.notifier_retry_seconds,
        setup_delay=settings.notifier_setup_retry_seconds,
    ),
)


def get_store_session():
    with StoreSession() as s:
        yield s


def get_queue_session():
    with QueueSession() as s:
        yield s


def _outbox_depth() -> int:
    with QueueSession() as s:
        return outbox.count_pending(s)


# Never expose interactive API docs by default in prod.
_ENABLE_DOCS = settings.env in ("dev", "test") or os.getenv("ENABLE_API_DOCS_IN_PROD", "").lower() in (
    "1",
    "true",
    "yes",
    "on",
)
app = FastAPI(
    title="Hybrid POS Sync API",
    version="0.1.0",
    docs_url="/docs" if _ENABLE_DOCS else None,
    redoc_url="/redoc" if _ENABLE_DOCS else None,
    openapi_url="/openapi.json" if _ENABLE_DOCS else None,
)
setup_json_logging()
app.add_middleware(RequestIDMiddleware)
configure_cors(app, os.getenv("ALLOWED_ORIGINS", ""))
add_standard_health(app, checks={"outbox_pending": _outbox_depth})

router = APIRouter()

_background: Dict[str, Any] = {"stop": None, "tasks": []}


@register_startup(app)
async def _startup():
    create_schema(store_engine, queue_engine)
    hub.bind_loop(asyncio.get_running_loop())
    notifier.reset()
    stop = asyncio.Event()
    tasks = [asyncio.create_task(notifier.run(), name="pos-change-notifier")]
    if settings.background:
        tasks.append(asyncio.create_task(worker.run_periodic(stop), name="pos-sync-worker"))
    _background["stop"] = stop
    _background["tasks"] = tasks
    _log.info(
        "pos: started (changes=%s, periodic_sync=%s)",
        change_channel.name,
        settings.background,
    )


@register_shutdown(app)
async def _shutdown():
    notifier.stop()
    stop = _background.get("stop")
    if stop is not None:
        stop.set()
    change_channel.close()
    tasks = _background.get("tasks") or []
    for t in tasks:
        t.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    _background["tasks"] = []
    hub.bind_loop(None)


def _enqueue_or_503(qs: Session, target_entity: str, operation: str, payload: Any, local_id: Optional[str]) -> str:
    try:
        key = outbox.enqueue(qs, target_entity, operation, payload, local_id=local_id)
    except outbox.QueueUnavailable as e:
        _log.error("pos: outbox unavailable: %s", e)
        raise HTTPException(status_code=503, detail="queue store unavailable")
    _publish_sync_event("sync:queued", {"local_id": key, "target_entity": target_entity, "operation": operation})
    return key


# --- tables ---
class TableCreate(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    number: Optional[int] = None
    capacity: int = Field(default=2, ge=1)


class TableOut(BaseModel):
    id: str
    name: str
    number: Optional[int]
    capacity: int
    status: str
    active_session_id: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class SessionOpen(BaseModel):
    customer_count: int = Field(default=1, ge=1)


class SessionOut(BaseModel):
    id: str
    table_id: str
    session_token: str
    customer_count: int
    started_at: Any
    ended_at: Optional[Any] = None
    model_config = ConfigDict(from_attributes=True)


def _store_error(e: orders.StoreError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=str(e))


@router.post("/tables", response_model=TableOut)
def create_table(req: TableCreate, s: Session = Depends(get_store_session)):
    t = orders.create_table(s, req.name, number=req.number, capacity=req.capacity)
    s.commit()
    return TableOut.model_validate(t)


@router.get("/tables", response_model=List[TableOut])
def list_tables(s: Session = Depends(get_store_session)):
    out = []
    for t in orders.list_tables(s):
        ts = orders.active_session(s, t.id)
        row = TableOut.model_validate(t)
        row.active_session_id = ts.id if ts else None
        out.append(row)
    return out


@router.post("/tables/{table_id}/sessions", response_model=SessionOut)
def open_table_session(table_id: str, req: SessionOpen, s: Session = Depends(get_store_session)):
    try:
        ts = orders.open_session(s, table_id, customer_count=req.customer_count)
    except orders.StoreError as e:
        raise _store_error(e)
    s.commit()
    return ts


@router.post("/tables/{table_id}/sessions/close", response_model=SessionOut)
def close_table_session(table_id: str, s: Session = Depends(get_store_session)):
    try:
        ts = orders.close_session(s, table_id)
    except orders.StoreError as e:
        raise _store_error(e)
    s.commit()
    return ts


# --- orders ---
class OrderCreate(BaseModel):
    table_id: Optional[str] = None
    table_session_id: Optional[str] = None
    customer_id: Optional[str] = None
    order_type: OrderType = "dine_in"
    note: Optional[str] = None
    items: List[OrderItemIn] = Field(default_factory=list)
    # Send straight to the outbox (client knows the primary is unreachable).
    defer: bool = False


@router.post("/orders", status_code=201)
def create_order(
    req: OrderCreate,
    background: BackgroundTasks,
    response: Response,
    x_local_id: Optional[str] = Header(default=None, alias="X-Local-Id"),
    ss: Session = Depends(get_store_session),
    qs: Session = Depends(get_queue_session),
):
    mutation = CreateOrder.model_validate(req.model_dump(exclude={"defer"}))
    local_id = (x_local_id or "").strip() or None
    if not req.defer:
        try:
            if local_id:
                existing = orders.find_by_source_local_id(ss, local_id)
                if existing is not None:
                    response.status_code = 200
                    return {"queued": False, "order": orders.order_to_dict(ss, existing)}
            od = orders.create_order(ss, mutation, source_local_id=local_id)
            ss.commit()
            out = orders.order_to_dict(ss, od)
            hub.publish_threadsafe(settings.events_room, "order:created", {"order": out})
            return {"queued": False, "order": out}
        except SQLAlchemyError as e:
            ss.rollback()
            _log.warning("pos: direct order write failed, deferring to outbox: %s", e)
    key = _enqueue_or_503(qs, "orders", "create", mutation.model_dump(exclude={"kind"}), local_id)
    background.add_task(worker.drain)
    response.status_code = 202
    return {"queued": True, "local_id": key}


@router.get("/orders")
def list_orders(table_id: str = "", status: str = "", limit: int = 50, s: Session = Depends(get_store_session)):
    return [orders.order_to_dict(s, od) for od in orders.list_orders(s, table_id=table_id, status=status, limit=limit)]


# --- sync ---
class EnqueueReq(BaseModel):
    target_entity: str = Field(min_length=1, max_length=64)
    operation: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class ResolveReq(BaseModel):
    queue_id: int
    decision: str


@router.post("/sync/queue", status_code=202)
def enqueue_mutation(
    req: EnqueueReq,
    background: BackgroundTasks,
    x_local_id: Optional[str] = Header(default=None, alias="X-Local-Id"),
    qs: Session = Depends(get_queue_session),
):
    if req.operation not in OPERATIONS:
        raise HTTPException(status_code=400, detail=f"operation must be one of {', '.join(OPERATIONS)}")
    key = _enqueue_or_503(qs, req.target_entity, req.operation, req.payload, (x_local_id or "").strip() or None)
    background.add_task(worker.drain)
    return {"queued": True, "local_id": key}


@router.get("/sync/queue")
def list_queue(status: str = "", limit: int = 100, qs: Session = Depends(get_queue_session)):
    if status and status not in QUEUE_STATUSES:
        raise HTTPException(status_code=400, detail="unknown status")
    return [outbox.entry_to_dict(e) for e in outbox.list_entries(qs, status=status, limit=limit)]


@router.get("/sync/pending-count")
def pending_count(qs: Session = Depends(get_queue_session)):
    return {"count": outbox.count_pending(qs)}


def _sync_status(qs: Session) -> Dict[str, Any]:
    return {
        "counts": outbox.count_by_status(qs),
        "pending": outbox.count_pending(qs),
        "exhausted": outbox.count_exhausted(qs, settings.max_retries),
        "max_retries": settings.max_retries,
        "worker": worker.state(),
        "notifier": notifier.state(),
    }


@router.get("/sync/status")
def sync_status(qs: Session = Depends(get_queue_session)):
    return _sync_status(qs)


@router.post("/sync/trigger", status_code=202)
def trigger_sync(background: BackgroundTasks):
    # Client regained connectivity.
    background.add_task(worker.drain)
    return {"scheduled": True, "running": worker.running}


@router.get("/sync/conflicts")
def list_conflicts(qs: Session = Depends(get_queue_session), ss: Session = Depends(get_store_session)):
    return {"conflicts": conflicts.list_conflicts(qs, ss)}


@router.post("/sync/resolve")
def resolve_conflict(
    req: ResolveReq,
    qs: Session = Depends(get_queue_session),
    ss: Session = Depends(get_store_session),
):
    try:
        result = conflicts.resolve(qs, ss, req.queue_id, req.decision)
    except conflicts.ResolutionError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    _publish_sync_event("sync:resolved", {"queue_entry_id": req.queue_id, "decision": req.decision})
    return {"resolved": True, **result}


app.include_router(router)


# --- realtime ---
@app.websocket("/ws")
async def realtime_ws(ws: WebSocket):
    await ws.accept()
    params = dict(ws.query_params)
    token = (params.get("table") or "").strip()
    room = table_room(token) if token else (params.get("room") or "").strip()
    if not is_valid_room(room):
        await ws.close(code=1008)
        return
    hub.join(ws, room)
    joined = {room}
    try:
        if room in STAFF_ROOMS:
            with QueueSession() as qs:
                snapshot = _sync_status(qs)
            await ws.send_json({"event": "sync:status", "data": snapshot})
        while True:
            raw = await ws.receive_text()
            try:
                msg = json.loads(raw)
            except ValueError:
                await ws.send_json({"event": "error", "data": {"error": "invalid json"}})
                continue
            if not isinstance(msg, dict):
                continue
            target = str(msg.get("join") or msg.get("leave") or "").strip()
            if not is_valid_room(target):
                await ws.send_json({"event": "error", "data": {"error": "unknown room"}})
                continue
            if msg.get("join"):
                hub.join(ws, target)
                joined.add(target)
            else:
                hub.leave(ws, target)
                joined.discard(target)
            await ws.send_json({"event": "rooms", "data": sorted(joined)})
    except WebSocketDisconnect:
        pass
    finally:
        hub.leave(ws)
