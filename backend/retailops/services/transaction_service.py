# Overview: Maker-checker inventory transactions (purchase, purchase_return, damage, adjustment).

"""
Inventory Transaction Service

LIFECYCLE:
    pending -> approved   checker approves, stock is applied
    pending -> rejected   checker rejects, nothing happens to stock
    pending|approved -> voided   approved stock effect is reversed

Makers whose role is listed in PRIVILEGED_ROLES skip the checker step and
their transactions are approved on creation.

STOCK EFFECT (applied only on approval):
    purchase          current_stock += qty
    purchase_return   current_stock -= qty   (bounded by return_validation_service)
    damage            current_stock -= qty
    adjustment        current_stock += signed qty

Stored line quantities are signed the same way, so summing a transaction's
lines gives its net stock effect.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import InventoryTransaction, InventoryTransactionItem, ProductVariant
from ..time_utils import parse_iso_date, utcnow
from ..validation import NotFoundError, ValidationError, coerce_int, is_blank, parse_stock_items
from . import stock_service
from .concurrency import lock_for_update, run_with_retry
from .document_service import next_document_number
from .return_validation_service import (
    TYPE_PURCHASE,
    TYPE_PURCHASE_RETURN,
    validate_purchase_return,
)


TYPE_DAMAGE = "damage"
TYPE_ADJUSTMENT = "adjustment"
TRANSACTION_TYPES = {TYPE_PURCHASE, TYPE_PURCHASE_RETURN, TYPE_DAMAGE, TYPE_ADJUSTMENT}

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_VOIDED = "voided"

INVOICE_PREFIXES = {
    TYPE_PURCHASE: "PUR",
    TYPE_PURCHASE_RETURN: "PRT",
    TYPE_DAMAGE: "DMG",
    TYPE_ADJUSTMENT: "ADJ",
}

# Stock movement applied per line on approval.
_MOVEMENT_TYPES = {
    TYPE_PURCHASE: stock_service.MOVEMENT_PURCHASE,
    TYPE_PURCHASE_RETURN: stock_service.MOVEMENT_PURCHASE_RETURN,
    TYPE_DAMAGE: stock_service.MOVEMENT_DAMAGE,
    TYPE_ADJUSTMENT: stock_service.MOVEMENT_ADJUSTMENT,
}


class TransactionError(Exception):
    """Raised for invalid inventory transaction lifecycle operations."""
    pass


def is_privileged(role: str | None) -> bool:
    if is_blank(role):
        return False
    return role.strip().lower() in current_app.config.get("PRIVILEGED_ROLES", ())


def _signed_quantity(transaction_type: str, quantity: int) -> int:
    if transaction_type == TYPE_PURCHASE:
        return abs(quantity)
    if transaction_type in (TYPE_PURCHASE_RETURN, TYPE_DAMAGE):
        return -abs(quantity)
    return quantity


def _get_transaction(transaction_id: int, *, lock: bool = False) -> InventoryTransaction:
    if lock:
        query = db.session.query(InventoryTransaction).filter_by(id=transaction_id).populate_existing()
        tx = lock_for_update(query).first()
    else:
        tx = db.session.get(InventoryTransaction, transaction_id)
    if tx is None:
        raise NotFoundError("InventoryTransaction", transaction_id)
    return tx


def _apply_stock(tx: InventoryTransaction, *, reverse: bool = False) -> list[dict]:
    """Push each line's stock effect through the stock ledger inside the caller's transaction."""
    results = []
    for item in tx.items:
        if reverse:
            movement_type, quantity = stock_service.MOVEMENT_ADJUSTMENT, -item.quantity
            reason = f"Void of {tx.invoice_no}"
        elif tx.transaction_type == TYPE_ADJUSTMENT:
            movement_type, quantity = stock_service.MOVEMENT_ADJUSTMENT, item.quantity
            reason = tx.reason
        else:
            movement_type, quantity = _MOVEMENT_TYPES[tx.transaction_type], abs(item.quantity)
            reason = tx.reason or f"{tx.transaction_type} {tx.invoice_no}"
        results.append(stock_service.adjust_stock(
            item.variant_id, movement_type, quantity, reason,
            transaction_id=tx.id, commit=False,
        ))
    return results


def create_transaction(
    transaction_type: str,
    items,
    *,
    performed_by: str | None = None,
    role: str | None = None,
    vendor_id: int | None = None,
    reference_transaction_id: int | None = None,
    reason: str | None = None,
    notes: str | None = None,
    transaction_date=None,
) -> InventoryTransaction:
    """
    Record an inventory transaction.

    Returns are validated against their purchase up front. Privileged makers
    get the transaction approved (and stock applied) immediately; everyone
    else leaves it pending for a checker.
    """
    if transaction_type not in TRANSACTION_TYPES:
        raise ValidationError(
            f"Invalid transaction_type '{transaction_type}'. Must be one of: {', '.join(sorted(TRANSACTION_TYPES))}"
        )
    lines = parse_stock_items(items, allow_negative=transaction_type == TYPE_ADJUSTMENT)

    if transaction_type in (TYPE_DAMAGE, TYPE_ADJUSTMENT) and is_blank(reason):
        raise ValidationError(f"reason is required for {transaction_type}")
    if transaction_type != TYPE_PURCHASE_RETURN and reference_transaction_id is not None:
        raise ValidationError("reference_transaction_id is only allowed on purchase_return")

    if transaction_type == TYPE_PURCHASE_RETURN:
        validate_purchase_return({
            "reference_transaction_id": reference_transaction_id,
            "items": lines,
        })
        if vendor_id is None:
            vendor_id = db.session.get(InventoryTransaction, reference_transaction_id).vendor_id

    variant_ids = {line["variant_id"] for line in lines}
    found = {
        vid for (vid,) in db.session.query(ProductVariant.id).filter(ProductVariant.id.in_(variant_ids)).all()
    }
    missing = sorted(variant_ids - found)
    if missing:
        raise NotFoundError("ProductVariant", missing[0])

    invoice_no = next_document_number(
        document_type=f"inventory_{transaction_type}",
        prefix=INVOICE_PREFIXES[transaction_type],
    )

    tx = InventoryTransaction(
        invoice_no=invoice_no,
        transaction_type=transaction_type,
        status=STATUS_PENDING,
        reference_transaction_id=reference_transaction_id,
        vendor_id=vendor_id,
        transaction_date=parse_iso_date(transaction_date) or utcnow().date(),
        reason=reason,
        notes=notes,
        performed_by=performed_by,
    )
    total_cost = 0
    total_qty = 0
    for line in lines:
        unit_cost = coerce_int(line.get("unit_cost_cents", 0) or 0, field="unit_cost_cents")
        if unit_cost < 0:
            raise ValidationError("unit_cost_cents cannot be negative")
        quantity = _signed_quantity(transaction_type, line["quantity"])
        tx.items.append(InventoryTransactionItem(
            variant_id=line["variant_id"],
            quantity=quantity,
            unit_cost_cents=unit_cost,
            notes=line.get("notes"),
        ))
        total_cost += abs(quantity) * unit_cost
        total_qty += abs(quantity)
    tx.total_cost_cents = total_cost
    tx.total_quantity = total_qty

    db.session.add(tx)
    db.session.commit()
    current_app.logger.info("Created %s %s (%s line(s))", transaction_type, invoice_no, len(lines))

    if is_privileged(role):
        return approve_transaction(tx.id, approved_by=performed_by or role)
    return tx


def approve_transaction(transaction_id: int, *, approved_by: str | None = None) -> InventoryTransaction:
    """
    Checker approval: pending -> approved, stock applied in the same commit.

    Returns are validated again here against the approved returns that exist
    now. The referenced purchase row is locked first, so approvals of two
    returns against the same purchase run one after the other and the second
    sees the first one's quantities.
    """
    def _op():
        tx = _get_transaction(transaction_id, lock=True)
        if tx.status != STATUS_PENDING:
            raise TransactionError(
                f"Cannot approve transaction {transaction_id}: current status is '{tx.status}', must be 'pending'"
            )

        if tx.transaction_type == TYPE_PURCHASE_RETURN:
            if tx.reference_transaction_id is not None:
                _get_transaction(tx.reference_transaction_id, lock=True)
            validate_purchase_return(
                {
                    "reference_transaction_id": tx.reference_transaction_id,
                    "items": [{"variant_id": i.variant_id, "quantity": i.quantity} for i in tx.items],
                },
                exclude_transaction_id=tx.id,
            )

        try:
            _apply_stock(tx)
        except Exception:
            db.session.rollback()
            raise

        tx.status = STATUS_APPROVED
        tx.approved_by = approved_by
        tx.approved_at = utcnow()
        db.session.commit()
        return tx

    try:
        tx = run_with_retry(_op)
    except (TransactionError, ValidationError, NotFoundError):
        db.session.rollback()
        raise
    current_app.logger.info("Approved %s %s by %s", tx.transaction_type, tx.invoice_no, approved_by)
    return tx


def reject_transaction(transaction_id: int, *, rejected_by: str | None = None, reason: str | None = None) -> InventoryTransaction:
    if is_blank(reason):
        raise ValidationError("rejection reason is required")
    tx = _get_transaction(transaction_id)
    if tx.status != STATUS_PENDING:
        raise TransactionError(
            f"Cannot reject transaction {transaction_id}: current status is '{tx.status}', must be 'pending'"
        )
    tx.status = STATUS_REJECTED
    tx.rejected_by = rejected_by
    tx.rejected_at = utcnow()
    tx.rejection_reason = reason
    db.session.commit()
    return tx


def void_transaction(transaction_id: int, *, voided_by: str | None = None, reason: str | None = None) -> InventoryTransaction:
    """
    Void a pending or approved transaction.

    Voiding an approved transaction reverses its stock effect; if that would
    drive available stock negative (goods already sold) the void is refused.
    A purchase with pending or approved returns against it cannot be voided;
    the returns must be rejected or voided first.
    """
    if is_blank(reason):
        raise ValidationError("void reason is required")

    def _op():
        tx = _get_transaction(transaction_id, lock=True)
        if tx.status not in (STATUS_PENDING, STATUS_APPROVED):
            raise TransactionError(f"Cannot void transaction {transaction_id}: status is '{tx.status}'")

        if tx.transaction_type == TYPE_PURCHASE:
            has_returns = (
                db.session.query(InventoryTransaction.id)
                .filter(
                    InventoryTransaction.reference_transaction_id == tx.id,
                    InventoryTransaction.status.in_((STATUS_PENDING, STATUS_APPROVED)),
                )
                .first()
            )
            if has_returns:
                raise TransactionError(
                    f"Cannot void purchase {tx.invoice_no}: pending or approved returns reference it"
                )

        if tx.status == STATUS_APPROVED:
            try:
                _apply_stock(tx, reverse=True)
            except Exception:
                db.session.rollback()
                raise

        tx.status = STATUS_VOIDED
        tx.voided_by = voided_by
        tx.voided_at = utcnow()
        tx.void_reason = reason
        db.session.commit()
        return tx

    try:
        tx = run_with_retry(_op)
    except (TransactionError, ValidationError, NotFoundError):
        db.session.rollback()
        raise
    current_app.logger.info("Voided %s %s by %s", tx.transaction_type, tx.invoice_no, voided_by)
    return tx


def list_pending_approvals(*, transaction_type: str | None = None, limit: int = 100) -> list[InventoryTransaction]:
    query = db.session.query(InventoryTransaction).filter(InventoryTransaction.status == STATUS_PENDING)
    if transaction_type:
        query = query.filter(InventoryTransaction.transaction_type == transaction_type)
    return query.order_by(InventoryTransaction.id.asc()).limit(limit).all()
