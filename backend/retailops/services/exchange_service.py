# Overview: Parent/child order relationships for exchanges and refunds.

"""
Exchange / Refund Linking

A child order points at its parent through parent_order_id and carries signed
lines: negative quantity = item coming back, positive = new item going out.

    refund    child has returned lines and no new lines
    exchange  anything else (swap, or swap with a paid upcharge)

Only one level of nesting exists; order_service refuses to hang a child off
another child.
"""

from __future__ import annotations

from typing import Iterable

from ..extensions import db
from ..models import Order
from ..time_utils import to_utc_z
from ..validation import NotFoundError, ValidationError
from .activity_service import write_exchange_link_notes


EXCHANGE_TYPE_REFUND = "refund"
EXCHANGE_TYPE_EXCHANGE = "exchange"
EXCHANGE_TYPES = {EXCHANGE_TYPE_REFUND, EXCHANGE_TYPE_EXCHANGE}


def _lines(items) -> list[tuple[int, int]]:
    """(quantity, unit_price_cents) pairs from OrderItem rows or plain dicts."""
    pairs = []
    for item in items:
        if isinstance(item, dict):
            pairs.append((int(item["quantity"]), int(item.get("unit_price_cents", 0) or 0)))
        else:
            pairs.append((item.quantity, item.unit_price_cents or 0))
    return pairs


def classify_exchange_type(items: Iterable) -> str:
    lines = _lines(items)
    has_returned = any(qty < 0 for qty, _ in lines)
    has_new = any(qty > 0 for qty, _ in lines)
    if has_returned and not has_new:
        return EXCHANGE_TYPE_REFUND
    return EXCHANGE_TYPE_EXCHANGE


def summarize_exchange(parent_total_items: int, children_items: Iterable[Iterable]) -> dict:
    """
    Fold every child's lines into one summary for the parent.

    Returned units and amounts come from negative lines, new ones from
    positive lines.
    """
    returned_items = 0
    new_items = 0
    return_amount = 0
    new_amount = 0
    for items in children_items:
        for qty, unit_price in _lines(items):
            if qty < 0:
                returned_items += -qty
                return_amount += -qty * unit_price
            elif qty > 0:
                new_items += qty
                new_amount += qty * unit_price

    return {
        "parent_total_items": parent_total_items,
        "returned_items_count": returned_items,
        "new_items_count": new_items,
        "return_amount_cents": return_amount,
        "new_amount_cents": new_amount,
        "net_amount_cents": new_amount - return_amount,
        "is_full_return": returned_items >= parent_total_items,
        "is_partial_return": 0 < returned_items < parent_total_items,
        "has_new_items": new_items > 0,
    }


def _child_summary(child: Order) -> dict:
    lines = _lines(child.items)
    return {
        "id": child.id,
        "order_number": child.order_number,
        "status": child.status,
        "total_amount_cents": child.total_amount_cents,
        "created_at": to_utc_z(child.created_at),
        "exchange_type": classify_exchange_type(child.items),
        "return_items_count": sum(-qty for qty, _ in lines if qty < 0),
        "new_items_count": sum(qty for qty, _ in lines if qty > 0),
    }


def get_related_orders(order_id: int) -> dict:
    """
    Parent and direct children of an order, plus the exchange summary when
    the order has children.
    """
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order", order_id)

    parent = None
    if order.parent_order_id is not None:
        parent_row = db.session.get(Order, order.parent_order_id)
        if parent_row is not None:
            parent = parent_row.to_dict(include_items=True)
            parent["item_count"] = parent_row.total_item_count

    children = (
        db.session.query(Order)
        .filter(Order.parent_order_id == order_id)
        .order_by(Order.id.desc())
        .all()
    )

    returned_items = []
    for child in children:
        for item in child.items:
            if item.quantity < 0:
                returned_items.append({**item.to_dict(), "child_order_id": child.id,
                                       "child_order_number": child.order_number})

    summary = None
    if children:
        summary = summarize_exchange(order.total_item_count, [child.items for child in children])

    return {
        "order_id": order.id,
        "parent_order": parent,
        "child_orders": [_child_summary(child) for child in children],
        "returned_items": returned_items,
        "exchange_summary": summary,
        "has_parent": parent is not None,
        "has_children": bool(children),
    }


def log_exchange_link(parent_id: int, child_id: int, exchange_type: str, *, actor_name: str | None = None) -> list[dict]:
    """Write the linked note on both orders; returns one result per side."""
    if exchange_type not in EXCHANGE_TYPES:
        raise ValidationError(f"Invalid exchange_type '{exchange_type}'")
    parent = db.session.get(Order, parent_id)
    if parent is None:
        raise NotFoundError("Order", parent_id)
    child = db.session.get(Order, child_id)
    if child is None:
        raise NotFoundError("Order", child_id)
    return write_exchange_link_notes(parent, child, exchange_type, actor_name=actor_name)
