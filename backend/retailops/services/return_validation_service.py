# Overview: Purchase-return validation; bounds returnable quantity against the original purchase.

"""
Purchase Return Validation

A purchase_return sends stock back to a vendor and must reference the
purchase it came from. For any purchase P and variant V:

    SUM(|qty| over APPROVED returns referencing P for V) <= qty of V in P

Only approved returns count. Pending returns have no economic effect yet and
rejected/voided ones never will; counting them would block legitimate
returns. The bound is re-checked at approval time (transaction_service), so
two pending returns that each fit on their own cannot both be approved when
together they exceed the purchase. The referenced purchase must itself be
approved, both when the return is recorded and when it is approved, so a
return never outlives a voided purchase.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Mapping

from sqlalchemy import func

from ..extensions import db
from ..models import InventoryTransaction, InventoryTransactionItem
from ..validation import ValidationError, coerce_int, is_blank


TYPE_PURCHASE = "purchase"
TYPE_PURCHASE_RETURN = "purchase_return"
STATUS_APPROVED = "approved"


class MissingReferenceError(ValidationError):
    """Return request has no reference_transaction_id."""


class InvalidReferenceError(ValidationError):
    """Referenced transaction does not exist or is not an approved purchase."""


class InvalidReferenceTypeError(ValidationError):
    """Referenced transaction is not a purchase."""


class ReturnQuantityExceededError(ValidationError):
    """
    One or more lines ask for more than can still be returned.

    ``violations`` holds every offending line so a multi-line request can be
    fixed in one round trip.
    """

    def __init__(self, violations: list[dict]):
        self.violations = violations
        parts = []
        for v in violations:
            label = v.get("sku") or f"variant {v['variant_id']}"
            if v["original_quantity"] == 0:
                parts.append(f"{label} was not part of the original purchase")
            else:
                parts.append(f"{label}: requested {v['requested']}, max returnable {v['max_returnable']}")
        super().__init__("Return quantity exceeded: " + "; ".join(parts))


def _original_quantities(purchase_id: int) -> dict[int, int]:
    rows = (
        db.session.query(InventoryTransactionItem.variant_id, InventoryTransactionItem.quantity)
        .filter(InventoryTransactionItem.transaction_id == purchase_id)
        .all()
    )
    totals: dict[int, int] = defaultdict(int)
    for variant_id, quantity in rows:
        totals[variant_id] += abs(quantity)
    return dict(totals)


def get_approved_return_quantities(purchase_id: int, *, exclude_transaction_id: int | None = None) -> dict[int, int]:
    """Units already returned per variant, counting approved returns only."""
    query = (
        db.session.query(
            InventoryTransactionItem.variant_id,
            func.sum(func.abs(InventoryTransactionItem.quantity)),
        )
        .join(InventoryTransaction, InventoryTransaction.id == InventoryTransactionItem.transaction_id)
        .filter(
            InventoryTransaction.reference_transaction_id == purchase_id,
            InventoryTransaction.transaction_type == TYPE_PURCHASE_RETURN,
            InventoryTransaction.status == STATUS_APPROVED,
        )
    )
    if exclude_transaction_id is not None:
        query = query.filter(InventoryTransaction.id != exclude_transaction_id)
    rows = query.group_by(InventoryTransactionItem.variant_id).all()
    return {variant_id: int(total or 0) for variant_id, total in rows}


def _request_lines(items) -> dict[int, int]:
    if not items:
        raise ValidationError("At least one item is required")
    requested: dict[int, int] = defaultdict(int)
    for idx, item in enumerate(items):
        if item.get("variant_id") is None:
            raise ValidationError(f"items[{idx}].variant_id is required")
        variant_id = coerce_int(item["variant_id"], field=f"items[{idx}].variant_id")
        quantity = abs(coerce_int(item.get("quantity"), field=f"items[{idx}].quantity"))
        if quantity == 0:
            raise ValidationError(f"items[{idx}].quantity cannot be zero")
        requested[variant_id] += quantity
    return dict(requested)


def validate_purchase_return(return_request: Mapping, *, exclude_transaction_id: int | None = None) -> dict:
    """
    Check a purchase-return request against its original purchase.

    ``return_request`` carries ``reference_transaction_id`` and ``items``
    ([{variant_id, quantity}], sign ignored). ``exclude_transaction_id`` keeps
    a return from counting against itself when it is re-validated during
    approval.

    Returns a summary per variant on success; raises MissingReferenceError,
    InvalidReferenceError, InvalidReferenceTypeError or
    ReturnQuantityExceededError otherwise.
    """
    reference_id = return_request.get("reference_transaction_id")
    if is_blank(reference_id):
        raise MissingReferenceError("Purchase return requires reference_transaction_id")
    reference_id = coerce_int(reference_id, field="reference_transaction_id")

    original = db.session.get(InventoryTransaction, reference_id)
    if original is None:
        raise InvalidReferenceError(f"Referenced transaction {reference_id} not found")
    if original.transaction_type != TYPE_PURCHASE:
        raise InvalidReferenceTypeError(
            f"Referenced transaction {reference_id} is a {original.transaction_type}, not a purchase"
        )
    if original.status != STATUS_APPROVED:
        raise InvalidReferenceError(
            f"Referenced purchase {original.invoice_no} is {original.status}; only approved purchases can be returned"
        )

    requested = _request_lines(return_request.get("items"))
    original_qty = _original_quantities(reference_id)
    already_returned = get_approved_return_quantities(reference_id, exclude_transaction_id=exclude_transaction_id)
    skus = {item.variant_id: item.variant.sku for item in original.items if item.variant is not None}

    violations = []
    summary = []
    for variant_id, quantity in requested.items():
        purchased = original_qty.get(variant_id, 0)
        returned = already_returned.get(variant_id, 0)
        max_returnable = max(0, purchased - returned)
        line = {
            "variant_id": variant_id,
            "sku": skus.get(variant_id),
            "requested": quantity,
            "original_quantity": purchased,
            "already_returned": returned,
            "max_returnable": max_returnable,
        }
        if purchased == 0 or quantity > max_returnable:
            violations.append(line)
        else:
            summary.append(line)

    if violations:
        raise ReturnQuantityExceededError(violations)

    return {
        "reference_transaction_id": reference_id,
        "vendor_id": original.vendor_id,
        "items": summary,
    }
