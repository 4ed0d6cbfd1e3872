from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .config import load_settings

_settings = load_settings()
DB_SCHEMA = _settings.db_schema
QUEUE_DB_SCHEMA = _settings.queue_db_schema

# Queue entry lifecycle.
STATUS_PENDING = "pending"
STATUS_SYNCING = "syncing"
STATUS_FAILED = "failed"
STATUS_CONFLICT = "conflict"
STATUS_SYNCED = "synced"
QUEUE_STATUSES = (STATUS_PENDING, STATUS_SYNCING, STATUS_FAILED, STATUS_CONFLICT, STATUS_SYNCED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Authoritative storage (cloud primary)."""


class QueueBase(DeclarativeBase):
    """Outbox storage; may live in a different database than Base."""


class DiningTable(Base):
    __tablename__ = "tables"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(50))
    number: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    capacity: Mapped[int] = mapped_column(Integer, default=2)
    status: Mapped[str] = mapped_column(String(16), default="free")  # free/occupied/cleaning


class TableSession(Base):
    __tablename__ = "table_sessions"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    table_id: Mapped[str] = mapped_column(String(36), index=True)
    session_token: Mapped[str] = mapped_column(String(64), unique=True)
    customer_count: Mapped[int] = mapped_column(Integer, default=1)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    # NULL while the guests are still seated.
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    table_id: Mapped[Optional[str]] = mapped_column(String(36), default=None, index=True)
    table_session_id: Mapped[Optional[str]] = mapped_column(String(36), default=None)
    customer_id: Mapped[Optional[str]] = mapped_column(String(36), default=None)
    order_type: Mapped[str] = mapped_column(String(16), default="dine_in")  # dine_in/takeaway/retail
    status: Mapped[str] = mapped_column(String(16), default="open")  # open/paid/cancelled
    note: Mapped[Optional[str]] = mapped_column(String(500), default=None)
    total_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    # Idempotency key of the queue entry that produced this order.
    source_local_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None, onupdate=utcnow)


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), index=True)
    product_id: Mapped[Optional[str]] = mapped_column(String(36), default=None)
    name: Mapped[Optional[str]] = mapped_column(String(120), default=None)
    qty: Mapped[int] = mapped_column(Integer, default=1)
    price_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    note: Mapped[Optional[str]] = mapped_column(String(200), default=None)


class SyncQueueEntry(QueueBase):
    __tablename__ = "offline_sync_queue"
    __table_args__ = (
        Index("ix_offline_sync_queue_status_created", "status", "created_at"),
        {"schema": QUEUE_DB_SCHEMA} if QUEUE_DB_SCHEMA else {},
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    local_id: Mapped[str] = mapped_column(String(64), unique=True)
    target_entity: Mapped[str] = mapped_column(String(64))
    operation: Mapped[str] = mapped_column(String(16))  # create/update/delete
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    status: Mapped[str] = mapped_column(String(16), default=STATUS_PENDING)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(String(1000), default=None)
    # Operator decision for entries that went through conflict review.
    resolution: Mapped[Optional[str]] = mapped_column(String(16), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    # When the current syncing claim was taken; a claim older than the lease is reclaimable.
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, pool_pre_ping=True)


def make_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def create_schema(store_engine: Engine, queue_engine: Engine) -> None:
    Base.metadata.create_all(store_engine)
    QueueBase.metadata.create_all(queue_engine)
