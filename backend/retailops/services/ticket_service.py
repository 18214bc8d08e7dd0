# Overview: Ticketing Service collaborator; customer-care tickets linked to orders.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Order, Ticket
from ..validation import NotFoundError, ValidationError, is_blank
from .document_service import next_document_number


TICKET_TYPE_FEEDBACK = "feedback"
TICKET_TYPE_RETURN_REQUEST = "return_request"
TICKET_TYPE_COMPLAINT = "complaint"
TICKET_TYPE_INQUIRY = "inquiry"
TICKET_TYPES = {TICKET_TYPE_FEEDBACK, TICKET_TYPE_RETURN_REQUEST, TICKET_TYPE_COMPLAINT, TICKET_TYPE_INQUIRY}

PRIORITIES = {"low", "medium", "high", "urgent"}


def create_ticket(
    ticket_type: str,
    subject: str,
    *,
    related_order_id: int | None = None,
    description: str | None = None,
    priority: str = "medium",
    customer_phone: str | None = None,
    tags: list[str] | None = None,
) -> Ticket:
    """Create an open ticket. Raises on bad input or a missing order."""
    if ticket_type not in TICKET_TYPES:
        raise ValidationError(f"Invalid ticket_type '{ticket_type}'")
    if priority not in PRIORITIES:
        raise ValidationError(f"Invalid priority '{priority}'")
    if is_blank(subject):
        raise ValidationError("subject is required")
    if related_order_id is not None and db.session.get(Order, related_order_id) is None:
        raise NotFoundError("Order", related_order_id)

    ticket = Ticket(
        ticket_number=next_document_number(document_type="ticket", prefix="TKT"),
        ticket_type=ticket_type,
        priority=priority,
        subject=subject.strip(),
        description=description,
        related_order_id=related_order_id,
        customer_phone=customer_phone,
        tags=tags or [],
    )
    db.session.add(ticket)
    db.session.commit()
    current_app.logger.info("Created %s ticket %s for order %s", ticket_type, ticket.ticket_number, related_order_id)
    return ticket


def find_ticket(related_order_id: int, ticket_type: str) -> Ticket | None:
    return (
        db.session.query(Ticket)
        .filter(Ticket.related_order_id == related_order_id, Ticket.ticket_type == ticket_type)
        .order_by(Ticket.id.asc())
        .first()
    )


def auto_create_feedback_ticket(order_id: int, order_number: str, customer_phone: str | None = None) -> Ticket:
    """Feedback ticket after delivery; returns the existing one if the order already has it."""
    existing = find_ticket(order_id, TICKET_TYPE_FEEDBACK)
    if existing is not None:
        return existing
    return create_ticket(
        TICKET_TYPE_FEEDBACK,
        f"Delivery feedback for order {order_number}",
        related_order_id=order_id,
        priority="low",
        customer_phone=customer_phone,
        tags=["auto", "post-delivery"],
    )


def create_return_ticket(order_id: int, order_number: str, reason: str | None, customer_phone: str | None = None) -> Ticket:
    return create_ticket(
        TICKET_TYPE_RETURN_REQUEST,
        f"Return requested for order {order_number}",
        related_order_id=order_id,
        description=reason,
        priority="high",
        customer_phone=customer_phone,
        tags=["auto", "return"],
    )
