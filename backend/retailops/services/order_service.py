# Overview: Order orchestration; creation, status transitions and exchange/refund children.

"""
Order Service

One status transition, in order:
    1. load the order (NotFoundError)
    2. order_state_machine.validate_transition (no writes)
    3. stock action implied by the move (stock_service)
    4. persist status, prerequisite fields, timestamps and a timeline entry
    5. publish order_status_changed; subscribers' hook outcomes are collected

Steps 3 and 4 are separate commits. A crash between them leaves stock moved
for an order whose status did not change; that is a reconciliation concern
and is not prevented here.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field

from flask import current_app

from ..extensions import db
from ..models import Order, OrderActivity, OrderItem, ProductVariant
from ..signals import StatusTransition, order_status_changed
from ..time_utils import parse_iso_date, utcnow
from ..validation import ConflictError, NotFoundError, ValidationError, coerce_int, is_blank, parse_stock_items
from . import activity_service, exchange_service, stock_service
from . import order_state_machine as sm
from .concurrency import run_with_retry
from .document_service import next_document_number
from .stock_service import InsufficientStockError


# Fields a transition may write onto the order.
UPDATABLE_FIELDS = (
    "assigned_rider_id",
    "courier_partner",
    "courier_tracking_id",
    "followup_date",
    "followup_reason",
    "cancellation_reason",
    "rejection_reason",
    "return_reason",
)

_STATUS_TIMESTAMPS = {
    sm.DELIVERED: "delivered_at",
    sm.CANCELLED: "cancelled_at",
    sm.RETURN_INITIATED: "return_initiated_at",
}

_REASON_FIELDS = {
    sm.CANCELLED: "cancellation_reason",
    sm.REJECTED: "rejection_reason",
    sm.RETURN_INITIATED: "return_reason",
    sm.FOLLOW_UP: "followup_reason",
}


@dataclass
class TransitionResult:
    """Outcome of one status move. hook_outcomes never affect the other fields."""
    order: Order
    old_status: str
    new_status: str
    stock_action: str
    stock_results: list = field(default_factory=list)
    hook_outcomes: list = field(default_factory=list)

    @property
    def allowed_next_statuses(self) -> frozenset[str]:
        return sm.get_allowed_next_statuses(self.new_status, self.order.fulfillment_type)

    def to_dict(self) -> dict:
        return {
            "order": self.order.to_dict(),
            "old_status": self.old_status,
            "new_status": self.new_status,
            "stock_action": self.stock_action,
            "stock_results": self.stock_results,
            "hook_outcomes": [outcome.to_dict() for outcome in self.hook_outcomes],
            "allowed_next_statuses": sorted(self.allowed_next_statuses),
        }


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order", order_id)
    return order


def _stock_lines(order: Order, state: str = stock_service.LINE_NONE) -> list[dict]:
    return [
        {"variant_id": item.variant_id, "quantity": item.quantity, "order_item_id": item.id}
        for item in order.items
        if item.quantity > 0 and item.stock_state == state
    ]


def _load_variants(variant_ids) -> dict[int, ProductVariant]:
    variants = db.session.query(ProductVariant).filter(ProductVariant.id.in_(list(variant_ids))).all()
    by_id = {variant.id: variant for variant in variants}
    missing = sorted(set(variant_ids) - set(by_id))
    if missing:
        raise NotFoundError("ProductVariant", missing[0])
    return by_id


def _build_items(lines: list[dict]) -> tuple[list[OrderItem], int]:
    variants = _load_variants({line["variant_id"] for line in lines})
    items = []
    total = 0
    for line in lines:
        price = line.get("unit_price_cents")
        if price is None:
            price = variants[line["variant_id"]].price_cents or 0
        price = coerce_int(price, field="unit_price_cents")
        if price < 0:
            raise ValidationError("unit_price_cents cannot be negative")
        items.append(OrderItem(variant_id=line["variant_id"], quantity=line["quantity"], unit_price_cents=price))
        total += line["quantity"] * price
    return items, total


def _apply_stock_action(order: Order, action: str, *, reason: str | None = None) -> list[dict]:
    if action == sm.STOCK_ACTION_RESERVE:
        lines = _stock_lines(order)
        return stock_service.deduct_stock_batch_atomic(lines, order.id) if lines else []
    if action == sm.STOCK_ACTION_RESERVE_AND_CONFIRM:
        lines = _stock_lines(order)
        if lines:
            stock_service.deduct_stock_batch_atomic(lines, order.id)
        return stock_service.confirm_stock_deduction(order.id)
    if action == sm.STOCK_ACTION_CONFIRM:
        return stock_service.confirm_stock_deduction(order.id)
    if action == sm.STOCK_ACTION_RESTORE:
        return stock_service.restore_stock_for_order_atomic(order.id, reason)
    return []


def _create(lines: list[dict], *, source: str, fulfillment_type: str, parent: Order | None = None,
            customer_name=None, customer_phone=None, shipping_city=None, actor_name=None) -> Order:
    items, total = _build_items(lines)
    status = sm.get_initial_status(source, fulfillment_type)

    order = Order(
        order_number=next_document_number(document_type="order", prefix="ORD"),
        source=source,
        fulfillment_type=fulfillment_type,
        status=status,
        parent_order_id=parent.id if parent is not None else None,
        total_amount_cents=total,
        customer_name=customer_name,
        customer_phone=customer_phone,
        shipping_city=shipping_city,
    )
    order.items.extend(items)
    db.session.add(order)
    db.session.flush()
    activity_service.add_activity(
        order.id,
        activity_service.ACTIVITY_ORDER_CREATED,
        f"Order created via {source} ({fulfillment_type}) in {status}",
        metadata={"source": source, "fulfillment_type": fulfillment_type, "status": status},
        actor_name=actor_name,
        commit=False,
    )
    db.session.commit()

    action = sm.get_stock_action(sm.INTAKE, status)
    if action != sm.STOCK_ACTION_NONE:
        try:
            _apply_stock_action(order, action)
        except InsufficientStockError:
            db.session.rollback()
            db.session.query(OrderActivity).filter(OrderActivity.order_id == order.id).delete()
            db.session.delete(db.session.get(Order, order.id))
            db.session.commit()
            raise
    return order


def create_order(
    items,
    *,
    source: str = "web",
    fulfillment_type: str | None = None,
    shipping_city: str | None = None,
    customer_name: str | None = None,
    customer_phone: str | None = None,
    actor_name: str | None = None,
) -> Order:
    """
    Create an order in its initial status.

    Without an explicit fulfillment_type the channel comes from the shipping
    city; point-of-sale orders are always store orders. Direct store sales
    reserve and consume their stock immediately; if that fails the order is
    removed again and InsufficientStockError propagates.
    """
    lines = parse_stock_items(items)
    source = (source or "web").strip().lower()
    if source in ("store", "pos"):
        source = sm.STORE
        fulfillment_type = sm.STORE
    if fulfillment_type is None:
        fulfillment_type = sm.determine_fulfillment_type(shipping_city)
    fulfillment_type = sm.normalize_fulfillment_type(fulfillment_type)

    order = _create(
        lines, source=source, fulfillment_type=fulfillment_type,
        customer_name=customer_name, customer_phone=customer_phone,
        shipping_city=shipping_city, actor_name=actor_name,
    )
    current_app.logger.info("Created order %s (%s, %s)", order.order_number, fulfillment_type, order.status)
    return order


def _returnable_by_variant(parent: Order) -> dict[int, int]:
    sold: dict[int, int] = defaultdict(int)
    for item in parent.items:
        if item.quantity > 0:
            sold[item.variant_id] += item.quantity
    for child in parent.children:
        if child.status in sm.TERMINAL_STATUSES and child.status != sm.RETURNED:
            continue
        for item in child.items:
            if item.quantity < 0:
                sold[item.variant_id] += item.quantity
    return dict(sold)


def create_child_order(
    parent_order_id: int,
    items,
    *,
    source: str = "exchange",
    actor_name: str | None = None,
) -> tuple[Order, list[dict]]:
    """
    Create an exchange/refund child of ``parent_order_id``.

    Negative lines are items coming back and must have been sold on the
    parent (net of earlier children); positive lines are new items. Children
    cannot have children. Returns the child and the per-side link results.
    """
    parent = get_order(parent_order_id)
    if parent.parent_order_id is not None:
        raise ValidationError(
            f"Order {parent.order_number} is itself a child order; exchanges nest one level only"
        )

    lines = parse_stock_items(items, allow_negative=True)
    returnable = _returnable_by_variant(parent)
    returned: dict[int, int] = defaultdict(int)
    for line in lines:
        if line["quantity"] < 0:
            returned[line["variant_id"]] += -line["quantity"]
    for variant_id, quantity in returned.items():
        available = returnable.get(variant_id, 0)
        if quantity > available:
            raise ValidationError(
                f"Cannot return {quantity} of variant {variant_id} from order {parent.order_number}; "
                f"{available} returnable"
            )

    child = _create(
        lines, source=source, fulfillment_type=parent.fulfillment_type, parent=parent,
        customer_name=parent.customer_name, customer_phone=parent.customer_phone,
        shipping_city=parent.shipping_city, actor_name=actor_name,
    )
    exchange_type = exchange_service.classify_exchange_type(lines)
    link_results = exchange_service.log_exchange_link(parent.id, child.id, exchange_type, actor_name=actor_name)
    current_app.logger.info(
        "Created %s order %s under %s", exchange_type, child.order_number, parent.order_number
    )
    return child, link_results


def _normalize_update_data(update_data: dict | None) -> dict:
    data = {}
    for key, value in (update_data or {}).items():
        if key not in UPDATABLE_FIELDS or is_blank(value):
            continue
        if key == "assigned_rider_id":
            value = coerce_int(value, field="assigned_rider_id")
        elif key == "followup_date":
            try:
                value = parse_iso_date(value)
            except ValueError:
                raise ValidationError("followup_date must be YYYY-MM-DD")
        elif isinstance(value, str):
            value = value.strip()
        data[key] = value
    return data


def transition_order_status(
    order_id: int,
    new_status: str,
    update_data: dict | None = None,
    *,
    actor_name: str | None = None,
) -> TransitionResult:
    """
    Move an order to ``new_status``.

    Validation errors are raised before anything is written. Stock errors
    (InsufficientStockError) are raised before the status is written. Hook
    failures never raise; they show up in ``hook_outcomes``.
    """
    order = get_order(order_id)
    old_status = order.status
    data = _normalize_update_data(update_data)

    sm.validate_transition(order, new_status, data)

    action = sm.get_stock_action(old_status, new_status)
    reason_field = _REASON_FIELDS.get(new_status)
    reason = data.get(reason_field) if reason_field else None
    stock_results = _apply_stock_action(
        order, action, reason=reason or f"Order {order.order_number} {new_status}"
    )

    def _persist() -> Order:
        current = get_order(order_id)
        if current.status != old_status:
            raise ConflictError(
                f"Order {current.order_number} moved to '{current.status}' while changing to '{new_status}'"
            )
        for key, value in data.items():
            setattr(current, key, value)
        current.status = new_status
        stamp = _STATUS_TIMESTAMPS.get(new_status)
        if stamp:
            setattr(current, stamp, utcnow())
        activity_service.log_status_change(
            current, old_status, new_status, reason=reason, actor_name=actor_name, commit=False,
        )
        db.session.commit()
        return current

    try:
        order = run_with_retry(_persist)
    except ConflictError:
        db.session.rollback()
        if action != sm.STOCK_ACTION_NONE:
            current_app.logger.error(
                "Order %s: stock action '%s' applied but status write lost; needs reconciliation",
                order_id, action,
            )
        raise

    current_app.logger.info(
        "Order %s: %s -> %s (stock: %s)", order.order_number, old_status, new_status, action
    )

    transition = StatusTransition(
        order_id=order.id,
        order_number=order.order_number,
        fulfillment_type=order.fulfillment_type,
        old_status=old_status,
        new_status=new_status,
        customer_phone=order.customer_phone,
        update_data={k: (v.isoformat() if hasattr(v, "isoformat") else v) for k, v in data.items()},
    )
    hook_outcomes = []
    for _receiver, outcomes in order_status_changed.send(__name__, transition=transition):
        if outcomes:
            hook_outcomes.extend(outcomes)

    return TransitionResult(
        order=order,
        old_status=old_status,
        new_status=new_status,
        stock_action=action,
        stock_results=stock_results,
        hook_outcomes=hook_outcomes,
    )


def bulk_update_status(order_ids, new_status: str, update_data: dict | None = None,
                       *, actor_name: str | None = None) -> dict:
    """Apply one transition to many orders; each order succeeds or fails on its own."""
    succeeded = []
    failed = []
    for raw_id in order_ids:
        try:
            order_id = coerce_int(raw_id, field="order_id")
            result = transition_order_status(order_id, new_status, update_data, actor_name=actor_name)
        except (ValidationError, NotFoundError, ConflictError, InsufficientStockError) as exc:
            db.session.rollback()
            failed.append({"order_id": raw_id, "error": str(exc), "error_type": type(exc).__name__})
            continue
        succeeded.append({"order_id": order_id, "order_number": result.order.order_number,
                          "old_status": result.old_status, "new_status": result.new_status})
    return {"success": succeeded, "failed": failed, "total": len(succeeded) + len(failed)}
