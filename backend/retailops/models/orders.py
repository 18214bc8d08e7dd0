from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Order(db.Model):
    """
    Customer order moving through a fulfillment channel.

    STATUS:
    Status values are nodes of the transition graph selected by
    fulfillment_type (see services/order_state_machine.py). The column is only
    written by order_service after the state machine approved the move.

    EXCHANGES / REFUNDS:
    A child order carries parent_order_id. Children hold signed lines:
    negative quantity = returned item, positive = new item. A child is never
    itself a parent (one level of nesting).
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_fulfillment", "status", "fulfillment_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False, unique=True)

    source = db.Column(db.String(32), nullable=False, default="web")
    fulfillment_type = db.Column(db.String(32), nullable=False, index=True)
    status = db.Column(db.String(32), nullable=False, index=True)

    parent_order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=True)
    shipping_city = db.Column(db.String(128), nullable=True)

    # Own-rider delivery
    assigned_rider_id = db.Column(db.Integer, nullable=True, index=True)

    # Courier delivery
    courier_partner = db.Column(db.String(64), nullable=True)
    courier_tracking_id = db.Column(db.String(128), nullable=True)

    # Status prerequisites
    followup_date = db.Column(db.Date, nullable=True)
    followup_reason = db.Column(db.Text, nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    return_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    return_initiated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )
    parent = db.relationship("Order", remote_side=[id], backref=db.backref("children", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def total_item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status={self.status!r} type={self.fulfillment_type!r}>"

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "source": self.source,
            "fulfillment_type": self.fulfillment_type,
            "status": self.status,
            "parent_order_id": self.parent_order_id,
            "total_amount_cents": self.total_amount_cents,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "shipping_city": self.shipping_city,
            "assigned_rider_id": self.assigned_rider_id,
            "courier_partner": self.courier_partner,
            "courier_tracking_id": self.courier_tracking_id,
            "followup_date": self.followup_date.isoformat() if self.followup_date else None,
            "followup_reason": self.followup_reason,
            "cancellation_reason": self.cancellation_reason,
            "rejection_reason": self.rejection_reason,
            "return_reason": self.return_reason,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "return_initiated_at": to_utc_z(self.return_initiated_at),
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """
    Order line.

    quantity is signed: negative = returned (exchange/refund child orders),
    positive = new/sold.

    stock_state tracks what StockLedger has done for this line:
        none -> reserved -> consumed -> restored
    Only positive lines ever leave 'none'.
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity <> 0", name="ck_order_items_quantity_nonzero"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)

    stock_state = db.Column(db.String(16), nullable=False, default="none", index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    variant = db.relationship("ProductVariant")

    @property
    def line_total_cents(self) -> int:
        return self.quantity * self.unit_price_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "variant_id": self.variant_id,
            "sku": self.variant.sku if self.variant is not None else None,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "stock_state": self.stock_state,
        }


class OrderActivity(db.Model):
    """
    Order timeline entry (status changes, exchange links, stock notes).

    Append-only. Written by activity_service.
    """
    __tablename__ = "order_activities"
    __table_args__ = (
        db.Index("ix_order_activities_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)

    activity_type = db.Column(db.String(32), nullable=False, index=True)
    message = db.Column(db.Text, nullable=False)
    metadata_json = db.Column(db.JSON, nullable=True)

    actor_name = db.Column(db.String(128), nullable=False, default="System")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "activity_type": self.activity_type,
            "message": self.message,
            "metadata": self.metadata_json or {},
            "actor_name": self.actor_name,
            "created_at": to_utc_z(self.created_at),
        }
