# Overview: Notification Sender collaborator; renders customer templates and records them.

"""
Outbound customer notifications.

Actual SMS/push delivery belongs to an external provider. The default sender
here renders the template and queues a NotificationLog row for that provider
to pick up. Senders never raise past their boundary: every outcome comes back
as a NotificationResult.
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from ..extensions import db
from ..models import NotificationLog
from ..validation import is_blank


TEMPLATE_ORDER_DELIVERED = "order_delivered"
TEMPLATE_ORDER_CANCELLED = "order_cancelled"
TEMPLATE_ORDER_OUT_FOR_DELIVERY = "order_out_for_delivery"
TEMPLATE_ORDER_HANDOVER_TO_COURIER = "order_handover_to_courier"

TEMPLATES = {
    TEMPLATE_ORDER_DELIVERED: "Your order {order_number} has been delivered. Thank you for shopping with us!",
    TEMPLATE_ORDER_CANCELLED: "Your order {order_number} has been cancelled. Reason: {reason}",
    TEMPLATE_ORDER_OUT_FOR_DELIVERY: "Your order {order_number} is out for delivery.",
    TEMPLATE_ORDER_HANDOVER_TO_COURIER: (
        "Your order {order_number} has been handed to {courier_partner}. Tracking ID: {courier_tracking_id}"
    ),
}


@dataclass
class NotificationResult:
    success: bool
    notification_id: int | None = None
    error: str | None = None


class _Defaults(dict):
    def __missing__(self, key):
        return ""


def render_template(template: str, payload: dict) -> str:
    try:
        text = TEMPLATES[template]
    except KeyError:
        raise ValueError(f"Unknown notification template '{template}'")
    values = {key: ("" if value is None else value) for key, value in payload.items()}
    return text.format_map(_Defaults(values))


class NotificationLogSender:
    """Default sender: renders and queues a NotificationLog row."""

    def send(self, destination: str | None, template: str, payload: dict) -> NotificationResult:
        if is_blank(destination):
            return NotificationResult(success=False, error="No destination")
        try:
            message = render_template(template, payload)
            log = NotificationLog(
                destination=destination,
                template=template,
                message=message,
                payload=payload,
                related_order_id=payload.get("order_id"),
                status="queued",
            )
            db.session.add(log)
            db.session.commit()
        except Exception as exc:
            db.session.rollback()
            current_app.logger.warning("Notification %s to %s failed: %s", template, destination, exc)
            return NotificationResult(success=False, error=str(exc))
        return NotificationResult(success=True, notification_id=log.id)


def get_sender():
    """Sender registered in ``app.extensions["notification_sender"]``, else the default."""
    return current_app.extensions.get("notification_sender") or NotificationLogSender()
