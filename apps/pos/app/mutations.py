"""
Typed view of queued payloads.

The outbox stores payloads as opaque JSON. The worker and the conflict
resolver parse them into one of the models below, selected by
``(target_entity, operation)``. Payloads for kinds this build does not know
are kept as ``UnknownMutation`` so they survive until a worker that knows
them drains the queue.
"""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

OrderType = Literal["dine_in", "takeaway", "retail"]


class OrderItemIn(BaseModel):
    product_id: Optional[str] = None
    name: Optional[str] = None
    qty: int = Field(default=1, ge=1)
    price_cents: int = Field(default=0, ge=0)
    note: Optional[str] = None


class CreateOrder(BaseModel):
    model_config = ConfigDict(extra="ignore")
    kind: Literal["orders.create"] = "orders.create"
    table_id: Optional[str] = None
    table_session_id: Optional[str] = None
    customer_id: Optional[str] = None
    order_type: OrderType = "dine_in"
    note: Optional[str] = None
    items: List[OrderItemIn] = Field(default_factory=list)


class UpdateOrder(BaseModel):
    model_config = ConfigDict(extra="ignore")
    kind: Literal["orders.update"] = "orders.update"
    order_id: str
    note: Optional[str] = None
    customer_id: Optional[str] = None
    order_type: Optional[OrderType] = None


class CancelOrder(BaseModel):
    model_config = ConfigDict(extra="ignore")
    kind: Literal["orders.delete"] = "orders.delete"
    order_id: str
    reason: Optional[str] = None


class UnknownMutation(BaseModel):
    kind: Literal["unknown"] = "unknown"
    target_entity: str
    operation: str
    data: Dict[str, Any] = Field(default_factory=dict)


Mutation = Union[CreateOrder, UpdateOrder, CancelOrder, UnknownMutation]

_KNOWN = {
    ("orders", "create"): CreateOrder,
    ("orders", "update"): UpdateOrder,
    ("orders", "delete"): CancelOrder,
}

OPERATIONS = ("create", "update", "delete")


def is_known(target_entity: str, operation: str) -> bool:
    return (target_entity, operation) in _KNOWN


def parse_mutation(target_entity: str, operation: str, payload: Any) -> Mutation:
    """
    Raises pydantic.ValidationError when a known kind carries a payload of
    the wrong shape.
    """
    model = _KNOWN.get((target_entity, operation))
    data = payload if isinstance(payload, dict) else {"value": payload}
    if model is None:
        return UnknownMutation(target_entity=target_entity, operation=operation, data=data)
    return model.model_validate(data)


def table_id_of(mutation: Mutation) -> Optional[str]:
    if isinstance(mutation, CreateOrder):
        return mutation.table_id
    if isinstance(mutation, UnknownMutation):
        raw = mutation.data.get("table_id")
        return str(raw) if raw else None
    return None
