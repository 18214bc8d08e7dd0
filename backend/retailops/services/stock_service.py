# Overview: Service-layer operations for variant stock; the only writer of stock counters.

"""
RetailOps Stock Ledger

Counters on ProductVariant:
    current_stock   physical units on hand
    reserved_stock  part of current_stock promised to open orders
    available       current_stock - reserved_stock   (never negative)

Order line lifecycle (OrderItem.stock_state):
    none --reserve--> reserved --confirm--> consumed
    reserved --restore--> restored   (reservation released)
    consumed --restore--> restored   (goods back on the shelf)

    reserve   reserved += q            only if available >= q
    confirm   current -= q, reserved -= q   (available unchanged)
    release   reserved -= q
    restore   current += q

CONCURRENCY:
Every mutation is one conditional UPDATE whose WHERE clause carries the
sufficiency check, so the read-verify-write happens in a single statement and
two callers racing for the last unit cannot both win. Before/after values are
read back inside the same transaction. Nothing here holds in-process locks.

KNOWN GAP:
deduct_stock_atomic() commits line by line. When a later line is short, the
earlier lines stay reserved. Use deduct_stock_batch_atomic() when all lines
must succeed or fail together; order_service always does.
"""

from __future__ import annotations

from typing import Iterable

from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..models import OrderItem, ProductVariant, StockMovement
from ..validation import NotFoundError, ValidationError, coerce_int, is_blank, parse_stock_items
from .concurrency import run_with_retry


MOVEMENT_RESERVED = "reserved"
MOVEMENT_CONFIRMED = "confirmed"
MOVEMENT_RELEASED = "released"
MOVEMENT_RESTORED = "restored"
MOVEMENT_INWARD = "inward"
MOVEMENT_OUTWARD = "outward"
MOVEMENT_DAMAGE = "damage"
MOVEMENT_ADJUSTMENT = "adjustment"
MOVEMENT_PURCHASE = "purchase"
MOVEMENT_PURCHASE_RETURN = "purchase_return"

# Manual movement types accepted by adjust_stock and their direction.
ADJUSTMENT_DIRECTIONS = {
    MOVEMENT_INWARD: 1,
    MOVEMENT_PURCHASE: 1,
    MOVEMENT_OUTWARD: -1,
    MOVEMENT_DAMAGE: -1,
    MOVEMENT_PURCHASE_RETURN: -1,
    MOVEMENT_ADJUSTMENT: 0,  # signed quantity
}

LINE_NONE = "none"
LINE_RESERVED = "reserved"
LINE_CONSUMED = "consumed"
LINE_RESTORED = "restored"


class InsufficientStockError(Exception):
    """
    Raised when a variant cannot cover the requested quantity.

    sku/requested/available describe the first failing line; ``failures``
    lists every failing line when the caller asked for a batch.
    """

    def __init__(self, sku, requested: int, available: int, *, variant_id: int | None = None, failures=None):
        self.sku = sku
        self.requested = requested
        self.available = available
        self.variant_id = variant_id
        self.failures = list(failures) if failures else [{
            "variant_id": variant_id,
            "sku": sku,
            "requested": requested,
            "available": available,
        }]
        message = f"Insufficient stock for {sku or variant_id}: requested {requested}, available {available}"
        if len(self.failures) > 1:
            message += f" ({len(self.failures)} lines failed)"
        super().__init__(message)


# =============================================================================
# INTERNAL PRIMITIVES
# =============================================================================

def _read_counters(variant_id: int):
    """Fresh (sku, current_stock, reserved_stock) straight from the row, bypassing the identity map."""
    return (
        db.session.query(ProductVariant.sku, ProductVariant.current_stock, ProductVariant.reserved_stock)
        .filter(ProductVariant.id == variant_id)
        .one_or_none()
    )


def _conditional_update(variant_id: int, *, current_delta: int, reserved_delta: int, guard) -> bool:
    """
    Apply counter deltas in one UPDATE guarded by ``guard`` (extra WHERE clauses).

    Returns True when the row matched and was changed.
    """
    stmt = (
        update(ProductVariant)
        .where(ProductVariant.id == variant_id, *guard)
        .values(
            current_stock=ProductVariant.current_stock + current_delta,
            reserved_stock=ProductVariant.reserved_stock + reserved_delta,
            updated_at=db.func.now(),
        )
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    return result.rowcount == 1


def _record_movement(
    variant_id: int,
    movement_type: str,
    quantity: int,
    *,
    current_delta: int,
    reserved_delta: int,
    order_id: int | None = None,
    transaction_id: int | None = None,
    reason: str | None = None,
) -> dict:
    """Read back the row after an UPDATE and append the matching StockMovement."""
    sku, stock_after, reserved_after = _read_counters(variant_id)
    stock_before = stock_after - current_delta
    reserved_before = reserved_after - reserved_delta

    db.session.add(StockMovement(
        variant_id=variant_id,
        order_id=order_id,
        transaction_id=transaction_id,
        movement_type=movement_type,
        quantity=quantity,
        stock_before=stock_before,
        stock_after=stock_after,
        reserved_before=reserved_before,
        reserved_after=reserved_after,
        reason=reason,
    ))

    return {
        "success": True,
        "variant_id": variant_id,
        "sku": sku,
        "movement_type": movement_type,
        "quantity": quantity,
        "stock_before": stock_before,
        "stock_after": stock_after,
        "reserved_before": reserved_before,
        "reserved_after": reserved_after,
        "available_stock": stock_after - reserved_after,
    }


def _insufficiency(variant_id: int, quantity: int) -> dict:
    row = _read_counters(variant_id)
    if row is None:
        return {
            "variant_id": variant_id,
            "sku": None,
            "requested": quantity,
            "available": 0,
            "error": "Variant not found",
        }
    sku, current, reserved = row
    return {
        "variant_id": variant_id,
        "sku": sku,
        "requested": quantity,
        "available": (current or 0) - (reserved or 0),
        "error": "Insufficient stock",
    }


def _reserve_line(variant_id: int, quantity: int, order_id: int | None, reason: str | None) -> dict | None:
    """
    Compare-and-reserve one variant. Returns the movement result, or None when
    the row is missing or short (nothing written in that case).
    """
    available = ProductVariant.current_stock - ProductVariant.reserved_stock
    if not _conditional_update(
        variant_id,
        current_delta=0,
        reserved_delta=quantity,
        guard=(available >= quantity,),
    ):
        return None
    return _record_movement(
        variant_id, MOVEMENT_RESERVED, quantity,
        current_delta=0, reserved_delta=quantity,
        order_id=order_id, reason=reason or "Order reservation",
    )


def _claim_order_line(order_id: int | None, line: dict, from_state: str, to_state: str) -> int | None:
    """
    Move the single order line covered by ``line`` to ``to_state``.

    The line is keyed by ``order_item_id`` when the caller supplies it,
    otherwise by the lowest-id line of the same variant and quantity still
    in ``from_state``. Other lines of the same variant are never touched.
    """
    if order_id is None:
        return None
    item_id = line.get("order_item_id")
    if item_id is None:
        match = (
            db.session.query(OrderItem.id)
            .filter(
                OrderItem.order_id == order_id,
                OrderItem.variant_id == line["variant_id"],
                OrderItem.quantity == line["quantity"],
                OrderItem.stock_state == from_state,
            )
            .order_by(OrderItem.id)
            .first()
        )
        if match is None:
            current_app.logger.warning(
                "No %s line of variant %s x%s on order %s to mark %s",
                from_state, line["variant_id"], line["quantity"], order_id, to_state,
            )
            return None
        item_id = match[0]
    (
        db.session.query(OrderItem)
        .filter(
            OrderItem.id == item_id,
            OrderItem.order_id == order_id,
            OrderItem.stock_state == from_state,
        )
        .update({OrderItem.stock_state: to_state}, synchronize_session=False)
    )
    return item_id


def _merge_lines(items: list[dict]) -> list[dict]:
    """Collapse duplicate variant lines so each variant is reserved once."""
    merged: dict[int, int] = {}
    for item in items:
        merged[item["variant_id"]] = merged.get(item["variant_id"], 0) + item["quantity"]
    return [{"variant_id": vid, "quantity": qty} for vid, qty in merged.items()]


# =============================================================================
# READS
# =============================================================================

def get_available_stock(variant_id: int) -> int:
    row = _read_counters(variant_id)
    if row is None:
        raise NotFoundError("ProductVariant", variant_id)
    _, current, reserved = row
    return (current or 0) - (reserved or 0)


def check_stock(items: Iterable[dict]) -> dict:
    """
    Read-only availability check.

    Reports every insufficient (or unknown) line instead of stopping at the
    first one, so a caller can show the whole problem at once.
    """
    lines = _merge_lines(parse_stock_items(items))
    unavailable = []
    variants = []
    for line in lines:
        row = _read_counters(line["variant_id"])
        if row is None:
            unavailable.append({
                "variant_id": line["variant_id"],
                "sku": None,
                "requested": line["quantity"],
                "available": 0,
                "error": "Variant not found",
            })
            continue
        sku, current, reserved = row
        available = (current or 0) - (reserved or 0)
        variants.append({
            "variant_id": line["variant_id"],
            "sku": sku,
            "current_stock": current,
            "reserved_stock": reserved,
            "available_stock": available,
            "requested": line["quantity"],
        })
        if available < line["quantity"]:
            unavailable.append({
                "variant_id": line["variant_id"],
                "sku": sku,
                "requested": line["quantity"],
                "available": available,
                "error": "Insufficient stock",
            })
    return {
        "is_available": not unavailable,
        "unavailable": unavailable,
        "variants": variants,
    }


def get_stock_movements(variant_id: int, *, limit: int = 50, order_id: int | None = None) -> list[StockMovement]:
    query = db.session.query(StockMovement).filter(StockMovement.variant_id == variant_id)
    if order_id is not None:
        query = query.filter(StockMovement.order_id == order_id)
    return query.order_by(StockMovement.id.desc()).limit(limit).all()


# =============================================================================
# RESERVATION
# =============================================================================

def deduct_stock_atomic(items: Iterable[dict], order_id: int | None = None, *, reason: str | None = None) -> list[dict]:
    """
    Reserve stock line by line, committing each line on its own.

    Raises InsufficientStockError on the first short line. Lines reserved
    earlier in the same call are NOT rolled back. With ``order_id`` each
    reserved line marks exactly one OrderItem, so a short line leaves its
    own item in state none even when an earlier line shares its variant.
    """
    lines = parse_stock_items(items)
    results = []
    for line in lines:
        variant_id, quantity = line["variant_id"], line["quantity"]

        def _op():
            result = _reserve_line(variant_id, quantity, order_id, reason)
            if result is None:
                db.session.rollback()
                return None
            item_id = _claim_order_line(order_id, line, LINE_NONE, LINE_RESERVED)
            if item_id is not None:
                result["order_item_id"] = item_id
            db.session.commit()
            return result

        result = run_with_retry(_op)
        if result is None:
            failure = _insufficiency(variant_id, quantity)
            if failure["sku"] is None:
                raise NotFoundError("ProductVariant", variant_id)
            current_app.logger.warning(
                "Stock reservation stopped at %s for order %s after %s committed line(s)",
                failure["sku"], order_id, len(results),
            )
            raise InsufficientStockError(
                failure["sku"], quantity, failure["available"], variant_id=variant_id,
            )
        results.append(result)
    return results


def deduct_stock_batch_atomic(items: Iterable[dict], order_id: int | None = None, *, reason: str | None = None) -> list[dict]:
    """
    Reserve every line or none.

    All conditional UPDATEs run in one database transaction. If any line is
    short (or unknown) the transaction is rolled back and
    InsufficientStockError is raised listing every failing line.
    """
    parsed = parse_stock_items(items)
    lines = _merge_lines(parsed)

    def _op():
        results = []
        failures = []
        for line in lines:
            result = _reserve_line(line["variant_id"], line["quantity"], order_id, reason)
            if result is None:
                failures.append(_insufficiency(line["variant_id"], line["quantity"]))
                continue
            results.append(result)

        if failures:
            db.session.rollback()
            first = failures[0]
            raise InsufficientStockError(
                first["sku"], first["requested"], first["available"],
                variant_id=first["variant_id"], failures=failures,
            )

        for line in parsed:
            _claim_order_line(order_id, line, LINE_NONE, LINE_RESERVED)
        db.session.commit()
        return results

    results = run_with_retry(_op)
    current_app.logger.info("Reserved %s line(s) for order %s", len(results), order_id)
    return results


# =============================================================================
# ORDER-LEVEL TRANSITIONS
# =============================================================================

def _order_lines(order_id: int, state: str) -> list[OrderItem]:
    return (
        db.session.query(OrderItem)
        .filter(
            OrderItem.order_id == order_id,
            OrderItem.quantity > 0,
            OrderItem.stock_state == state,
        )
        .order_by(OrderItem.id)
        .all()
    )


def confirm_stock_deduction(order_id: int) -> list[dict]:
    """
    Move an order's reserved lines to consumed.

    The units leave both counters in one UPDATE, so available stock does not
    change and nothing is counted twice. Lines already consumed are skipped.

    A confirm that only clears reserved_stock fits a ledger where reserving
    already took the units off current_stock. Here reserving only raises
    reserved_stock, so confirm is where current_stock drops; clearing
    reserved_stock alone would leave the shipped units counted on hand.
    """
    def _op():
        results = []
        for item in _order_lines(order_id, LINE_RESERVED):
            qty = item.quantity
            matched = _conditional_update(
                item.variant_id,
                current_delta=-qty,
                reserved_delta=-qty,
                guard=(ProductVariant.reserved_stock >= qty, ProductVariant.current_stock >= qty),
            )
            if not matched:
                current_app.logger.warning(
                    "Reserved stock drifted for variant %s on order %s; line %s left reserved",
                    item.variant_id, order_id, item.id,
                )
                results.append({"success": False, "variant_id": item.variant_id, "order_item_id": item.id,
                                "error": "Reserved stock lower than order quantity"})
                continue
            result = _record_movement(
                item.variant_id, MOVEMENT_CONFIRMED, qty,
                current_delta=-qty, reserved_delta=-qty,
                order_id=order_id, reason="Order packed",
            )
            item.stock_state = LINE_CONSUMED
            result["order_item_id"] = item.id
            results.append(result)
        db.session.commit()
        return results

    return run_with_retry(_op)


def reserve_and_confirm(items: Iterable[dict], order_id: int, *, reason: str | None = None) -> list[dict]:
    """Direct sale: reserve all lines (all-or-none), then consume them."""
    deduct_stock_batch_atomic(items, order_id, reason=reason or "Direct sale")
    return confirm_stock_deduction(order_id)


def restore_stock_for_order_atomic(order_id: int, reason: str | None = None) -> list[dict]:
    """
    Give back every committed line of an order.

    Reserved lines release their reservation; consumed lines put the units
    back on the shelf. Each line commits on its own and a failing line is
    logged and reported, never raised, so one bad row cannot block a
    cancellation or return.
    """
    reason = reason or "Order cancelled"
    items = (
        db.session.query(OrderItem)
        .filter(
            OrderItem.order_id == order_id,
            OrderItem.quantity > 0,
            OrderItem.stock_state.in_((LINE_RESERVED, LINE_CONSUMED)),
        )
        .order_by(OrderItem.id)
        .all()
    )
    lines = [(item.id, item.variant_id, item.quantity, item.stock_state) for item in items]

    results = []
    for item_id, variant_id, qty, state in lines:
        def _op():
            if state == LINE_RESERVED:
                matched = _conditional_update(
                    variant_id, current_delta=0, reserved_delta=-qty,
                    guard=(ProductVariant.reserved_stock >= qty,),
                )
                movement_type, current_delta, reserved_delta = MOVEMENT_RELEASED, 0, -qty
            else:
                matched = _conditional_update(variant_id, current_delta=qty, reserved_delta=0, guard=())
                movement_type, current_delta, reserved_delta = MOVEMENT_RESTORED, qty, 0
            if not matched:
                db.session.rollback()
                raise ValidationError(
                    f"Variant {variant_id} cannot take back {qty} unit(s) ({state})"
                )
            result = _record_movement(
                variant_id, movement_type, qty,
                current_delta=current_delta, reserved_delta=reserved_delta,
                order_id=order_id, reason=reason,
            )
            db.session.query(OrderItem).filter(OrderItem.id == item_id).update(
                {OrderItem.stock_state: LINE_RESTORED}, synchronize_session=False
            )
            db.session.commit()
            return result

        try:
            result = run_with_retry(_op)
        except Exception as exc:
            db.session.rollback()
            current_app.logger.exception(
                "Failed to restore stock for order %s line %s (variant %s)", order_id, item_id, variant_id
            )
            results.append({
                "success": False,
                "variant_id": variant_id,
                "order_item_id": item_id,
                "quantity": qty,
                "error": str(exc),
            })
            continue
        result["order_item_id"] = item_id
        results.append(result)

    db.session.expire_all()
    restored = sum(1 for r in results if r["success"])
    current_app.logger.info("Restored %s/%s line(s) for order %s: %s", restored, len(results), order_id, reason)
    return results


# =============================================================================
# MANUAL ADJUSTMENTS
# =============================================================================

def adjust_stock(
    variant_id: int,
    movement_type: str,
    quantity,
    reason: str | None = None,
    *,
    transaction_id: int | None = None,
    commit: bool = True,
) -> dict:
    """
    Manual correction of current_stock.

    inward/purchase add, outward/damage/purchase_return remove, adjustment is
    signed. A removal that would leave available stock negative raises
    InsufficientStockError and writes nothing. With ``commit=False`` the
    caller owns the transaction (used by inventory transaction approval).
    """
    if movement_type not in ADJUSTMENT_DIRECTIONS:
        raise ValidationError(
            f"Invalid movement_type '{movement_type}'. Must be one of: {', '.join(sorted(ADJUSTMENT_DIRECTIONS))}"
        )
    quantity = coerce_int(quantity, field="quantity")
    if quantity == 0:
        raise ValidationError("quantity cannot be zero")

    direction = ADJUSTMENT_DIRECTIONS[movement_type]
    if direction == 0:
        delta = quantity
    else:
        if quantity < 0:
            raise ValidationError(f"quantity must be positive for {movement_type}")
        delta = direction * quantity

    if movement_type in (MOVEMENT_DAMAGE, MOVEMENT_ADJUSTMENT) and is_blank(reason):
        raise ValidationError(f"reason is required for {movement_type}")

    def _apply() -> dict:
        guard = ()
        if delta < 0:
            guard = ((ProductVariant.current_stock - ProductVariant.reserved_stock) >= -delta,)
        if not _conditional_update(variant_id, current_delta=delta, reserved_delta=0, guard=guard):
            failure = _insufficiency(variant_id, abs(delta))
            if failure["sku"] is None:
                raise NotFoundError("ProductVariant", variant_id)
            raise InsufficientStockError(
                failure["sku"], abs(delta), failure["available"], variant_id=variant_id,
            )
        return _record_movement(
            variant_id, movement_type, delta,
            current_delta=delta, reserved_delta=0,
            transaction_id=transaction_id, reason=reason,
        )

    if not commit:
        return _apply()

    def _op():
        try:
            result = _apply()
        except (InsufficientStockError, NotFoundError):
            db.session.rollback()
            raise
        db.session.commit()
        return result

    result = run_with_retry(_op)
    current_app.logger.info(
        "Stock %s of %s on variant %s: %s -> %s", movement_type, delta, variant_id,
        result["stock_before"], result["stock_after"],
    )
    return result
