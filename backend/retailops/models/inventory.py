from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class ProductVariant(db.Model):
    """
    Sellable variant with physical and reserved stock counters.

    INVARIANT:
        available_stock = current_stock - reserved_stock >= 0

    current_stock is the physical count on the shelf; reserved_stock is the
    part of it promised to open orders. Both counters are only written by
    stock_service through conditional UPDATE statements, never by assigning
    attributes on a loaded instance.
    """
    __tablename__ = "product_variants"
    __table_args__ = (
        db.CheckConstraint("current_stock >= 0", name="ck_variants_current_nonneg"),
        db.CheckConstraint("reserved_stock >= 0", name="ck_variants_reserved_nonneg"),
        db.CheckConstraint("current_stock - reserved_stock >= 0", name="ck_variants_available_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)

    price_cents = db.Column(db.Integer, nullable=True)
    cost_price_cents = db.Column(db.Integer, nullable=True)

    current_stock = db.Column(db.Integer, nullable=False, default=0)
    reserved_stock = db.Column(db.Integer, nullable=False, default=0)
    reorder_level = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    @property
    def available_stock(self) -> int:
        return (self.current_stock or 0) - (self.reserved_stock or 0)

    def __repr__(self) -> str:
        return f"<ProductVariant id={self.id} sku={self.sku!r} current={self.current_stock} reserved={self.reserved_stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "price_cents": self.price_cents,
            "cost_price_cents": self.cost_price_cents,
            "current_stock": self.current_stock,
            "reserved_stock": self.reserved_stock,
            "available_stock": self.available_stock,
            "reorder_level": self.reorder_level,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """Append-only audit row for every stock counter change."""
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_variant_created", "variant_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("inventory_transactions.id"), nullable=True, index=True)

    # reserved, confirmed, released, restored, inward, outward, damage, adjustment,
    # purchase, purchase_return
    movement_type = db.Column(db.String(32), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)

    stock_before = db.Column(db.Integer, nullable=False)
    stock_after = db.Column(db.Integer, nullable=False)
    reserved_before = db.Column(db.Integer, nullable=False)
    reserved_after = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "variant_id": self.variant_id,
            "order_id": self.order_id,
            "transaction_id": self.transaction_id,
            "movement_type": self.movement_type,
            "quantity": self.quantity,
            "stock_before": self.stock_before,
            "stock_after": self.stock_after,
            "reserved_before": self.reserved_before,
            "reserved_after": self.reserved_after,
            "reason": self.reason,
            "created_at": to_utc_z(self.created_at),
        }


class InventoryTransaction(db.Model):
    """
    Vendor-facing stock document (maker-checker).

    TYPES:
        purchase          stock in from vendor
        purchase_return   stock back to vendor; references the original purchase
        damage            stock written off
        adjustment        manual correction

    STATUS:
        pending -> approved | rejected
        pending | approved -> voided

    Only approved transactions have economic effect. ReturnValidator reads
    approved purchase_return rows to bound what can still be returned.
    """
    __tablename__ = "inventory_transactions"
    __table_args__ = (
        db.Index("ix_invtx_reference_status", "reference_transaction_id", "status"),
        db.Index("ix_invtx_type_status", "transaction_type", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_no = db.Column(db.String(32), nullable=False, unique=True)

    transaction_type = db.Column(db.String(32), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    reference_transaction_id = db.Column(
        db.Integer, db.ForeignKey("inventory_transactions.id"), nullable=True
    )
    vendor_id = db.Column(db.Integer, nullable=True, index=True)

    transaction_date = db.Column(db.Date, nullable=True)
    total_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    total_quantity = db.Column(db.Integer, nullable=False, default=0)

    reason = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    performed_by = db.Column(db.String(128), nullable=True)
    approved_by = db.Column(db.String(128), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_by = db.Column(db.String(128), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    voided_by = db.Column(db.String(128), nullable=True)
    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    void_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "InventoryTransactionItem",
        backref="transaction",
        lazy=True,
        order_by="InventoryTransactionItem.id",
        cascade="all, delete-orphan",
    )
    reference_transaction = db.relationship("InventoryTransaction", remote_side=[id])
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_no": self.invoice_no,
            "transaction_type": self.transaction_type,
            "status": self.status,
            "reference_transaction_id": self.reference_transaction_id,
            "vendor_id": self.vendor_id,
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
            "total_cost_cents": self.total_cost_cents,
            "total_quantity": self.total_quantity,
            "reason": self.reason,
            "notes": self.notes,
            "performed_by": self.performed_by,
            "approved_by": self.approved_by,
            "approved_at": to_utc_z(self.approved_at),
            "rejected_by": self.rejected_by,
            "rejected_at": to_utc_z(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "voided_by": self.voided_by,
            "voided_at": to_utc_z(self.voided_at),
            "void_reason": self.void_reason,
            "created_at": to_utc_z(self.created_at),
            "items": [item.to_dict() for item in self.items],
        }


class InventoryTransactionItem(db.Model):
    """
    Transaction line. quantity is positive for stock in (purchase) and
    negative for stock out (purchase_return, damage, outbound adjustment).
    """
    __tablename__ = "inventory_transaction_items"
    __table_args__ = (
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(
        db.Integer, db.ForeignKey("inventory_transactions.id"), nullable=False, index=True
    )
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.String(255), nullable=True)

    variant = db.relationship("ProductVariant")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "variant_id": self.variant_id,
            "sku": self.variant.sku if self.variant is not None else None,
            "quantity": self.quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "notes": self.notes,
        }
