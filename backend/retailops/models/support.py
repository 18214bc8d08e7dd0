from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Ticket(db.Model):
    """
    Customer-care ticket raised by order hooks or by staff.

    Types: feedback, return_request, complaint, inquiry.
    """
    __tablename__ = "tickets"
    __table_args__ = (
        db.Index("ix_tickets_order_type", "related_order_id", "ticket_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    ticket_number = db.Column(db.String(32), nullable=False, unique=True)

    ticket_type = db.Column(db.String(32), nullable=False)
    priority = db.Column(db.String(16), nullable=False, default="medium")  # low, medium, high, urgent
    status = db.Column(db.String(16), nullable=False, default="open", index=True)  # open, in_progress, resolved, closed

    subject = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    tags = db.Column(db.JSON, nullable=True)

    related_order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "ticket_number": self.ticket_number,
            "ticket_type": self.ticket_type,
            "priority": self.priority,
            "status": self.status,
            "subject": self.subject,
            "description": self.description,
            "tags": self.tags or [],
            "related_order_id": self.related_order_id,
            "customer_phone": self.customer_phone,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class NotificationLog(db.Model):
    """
    Outbound customer notification, rendered and recorded.

    Provider delivery happens outside this system; rows start 'queued'.
    """
    __tablename__ = "notification_logs"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    destination = db.Column(db.String(64), nullable=False, index=True)
    template = db.Column(db.String(64), nullable=False)
    message = db.Column(db.Text, nullable=False)
    payload = db.Column(db.JSON, nullable=True)

    related_order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    status = db.Column(db.String(16), nullable=False, default="queued")  # queued, sent, failed

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "destination": self.destination,
            "template": self.template,
            "message": self.message,
            "payload": self.payload or {},
            "related_order_id": self.related_order_id,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
        }


class DocumentSequence(db.Model):
    """
    Atomic per-type document sequences.

    Backs order, invoice and ticket numbers so concurrent creators never
    allocate the same number.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", name="uq_doc_sequences_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_type": self.document_type,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
