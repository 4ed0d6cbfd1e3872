"""
Read/write operations on authoritative storage (tables, sessions, orders).

Nothing here commits: callers own the transaction so a queued mutation is
applied atomically together with its items.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import DiningTable, Order, OrderItem, TableSession, utcnow
from .mutations import CancelOrder, CreateOrder, Mutation, UnknownMutation, UpdateOrder


class StoreError(Exception):
    status_code = 400


class NotFound(StoreError):
    status_code = 404


class StateError(StoreError):
    status_code = 409


class UnsupportedMutation(StoreError):
    pass


# --- tables & sessions ---
def create_table(s: Session, name: str, number: Optional[int] = None, capacity: int = 2) -> DiningTable:
    t = DiningTable(id=str(uuid.uuid4()), name=name.strip(), number=number, capacity=capacity)
    s.add(t)
    return t


def list_tables(s: Session) -> List[DiningTable]:
    return list(s.execute(select(DiningTable).order_by(DiningTable.number, DiningTable.name)).scalars().all())


def active_session(s: Session, table_id: str) -> Optional[TableSession]:
    stmt = (
        select(TableSession)
        .where(TableSession.table_id == table_id, TableSession.ended_at.is_(None))
        .order_by(TableSession.started_at.desc())
        .limit(1)
    )
    return s.execute(stmt).scalars().first()


def open_session(s: Session, table_id: str, customer_count: int = 1) -> TableSession:
    t = s.get(DiningTable, table_id)
    if not t:
        raise NotFound("table not found")
    if active_session(s, table_id) is not None:
        raise StateError("table already has an active session")
    ts = TableSession(
        id=str(uuid.uuid4()),
        table_id=table_id,
        session_token=uuid.uuid4().hex,
        customer_count=max(1, customer_count),
    )
    t.status = "occupied"
    s.add(ts)
    return ts


def close_session(s: Session, table_id: str) -> TableSession:
    ts = active_session(s, table_id)
    if ts is None:
        raise NotFound("no active session")
    ts.ended_at = utcnow()
    t = s.get(DiningTable, table_id)
    if t:
        t.status = "free"
    return ts


# --- orders ---
def find_by_source_local_id(s: Session, local_id: str) -> Optional[Order]:
    return s.execute(select(Order).where(Order.source_local_id == local_id)).scalars().first()


def recent_open_orders(s: Session, table_id: str, since: datetime) -> List[Order]:
    """Open orders of the table, under an active session, created after ``since``."""
    stmt = (
        select(Order)
        .join(TableSession, Order.table_session_id == TableSession.id)
        .where(
            Order.table_id == table_id,
            Order.status == "open",
            TableSession.ended_at.is_(None),
            Order.created_at > since,
        )
        .order_by(Order.created_at.desc())
    )
    return list(s.execute(stmt).scalars().all())


def latest_open_order(s: Session, table_id: str) -> Optional[Order]:
    stmt = (
        select(Order)
        .where(Order.table_id == table_id, Order.status == "open")
        .order_by(Order.created_at.desc())
        .limit(1)
    )
    return s.execute(stmt).scalars().first()


def list_orders(s: Session, table_id: str = "", status: str = "", limit: int = 50) -> List[Order]:
    stmt = select(Order)
    if table_id:
        stmt = stmt.where(Order.table_id == table_id)
    if status:
        stmt = stmt.where(Order.status == status)
    stmt = stmt.order_by(Order.created_at.desc()).limit(max(1, min(limit, 200)))
    return list(s.execute(stmt).scalars().all())


def order_items(s: Session, order_id: str) -> List[OrderItem]:
    return list(s.execute(select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)).scalars().all())


def order_to_dict(s: Session, od: Order, with_items: bool = True) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "id": od.id,
        "table_id": od.table_id,
        "table_session_id": od.table_session_id,
        "customer_id": od.customer_id,
        "order_type": od.order_type,
        "status": od.status,
        "note": od.note,
        "total_cents": od.total_cents,
        "source_local_id": od.source_local_id,
        "created_at": od.created_at.isoformat() if od.created_at else None,
    }
    if with_items:
        out["items"] = [
            {
                "id": it.id,
                "product_id": it.product_id,
                "name": it.name,
                "qty": it.qty,
                "price_cents": it.price_cents,
                "note": it.note,
            }
            for it in order_items(s, od.id)
        ]
    return out


def create_order(
    s: Session,
    req: CreateOrder,
    source_local_id: Optional[str] = None,
    note_prefix: str = "",
) -> Order:
    table_session_id = req.table_session_id
    # Dine-in orders attach to the table's running session when the client did not say.
    if req.order_type == "dine_in" and req.table_id and not table_session_id:
        ts = active_session(s, req.table_id)
        if ts is not None:
            table_session_id = ts.id
    note = req.note or None
    if note_prefix:
        note = f"{note_prefix}{req.note or ''}"
    od = Order(
        id=str(uuid.uuid4()),
        table_id=req.table_id or None,
        table_session_id=table_session_id or None,
        customer_id=req.customer_id or None,
        order_type=req.order_type,
        status="open",
        note=note,
        total_cents=sum(it.qty * it.price_cents for it in req.items),
        source_local_id=source_local_id,
        created_at=utcnow(),
    )
    s.add(od)
    for it in req.items:
        s.add(
            OrderItem(
                order_id=od.id,
                product_id=it.product_id,
                name=it.name,
                qty=it.qty,
                price_cents=it.price_cents,
                note=it.note,
            )
        )
    s.flush()
    return od


def update_order(s: Session, req: UpdateOrder) -> Order:
    od = s.get(Order, req.order_id)
    if not od:
        raise NotFound(f"order {req.order_id} not found")
    if od.status != "open":
        raise StateError(f"order {req.order_id} is {od.status}")
    if req.note is not None:
        od.note = req.note
    if req.customer_id is not None:
        od.customer_id = req.customer_id or None
    if req.order_type is not None:
        od.order_type = req.order_type
    s.flush()
    return od


def cancel_order(s: Session, req: CancelOrder) -> Order:
    od = s.get(Order, req.order_id)
    if not od:
        raise NotFound(f"order {req.order_id} not found")
    if od.status == "paid":
        raise StateError(f"order {req.order_id} is already paid")
    if od.status != "cancelled":
        od.status = "cancelled"
        if req.reason:
            od.note = f"{od.note or ''} [cancelled: {req.reason}]".strip()
        s.flush()
    return od


def apply_mutation(s: Session, mutation: Mutation, local_id: str) -> Order:
    if isinstance(mutation, CreateOrder):
        return create_order(s, mutation, source_local_id=local_id)
    if isinstance(mutation, UpdateOrder):
        return update_order(s, mutation)
    if isinstance(mutation, CancelOrder):
        return cancel_order(s, mutation)
    if isinstance(mutation, UnknownMutation):
        raise UnsupportedMutation(f"no handler for {mutation.target_entity}/{mutation.operation}")
    raise UnsupportedMutation(f"no handler for {type(mutation).__name__}")
