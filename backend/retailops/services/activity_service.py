# Overview: Order timeline entries (status changes, exchange links, system notes).

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import OrderActivity
from .concurrency import commit_with_retry


ACTIVITY_STATUS_CHANGE = "status_change"
ACTIVITY_EXCHANGE_LINK = "exchange_link"
ACTIVITY_ORDER_CREATED = "order_created"
ACTIVITY_SYSTEM = "system_log"


def add_activity(
    order_id: int,
    activity_type: str,
    message: str,
    *,
    metadata: dict | None = None,
    actor_name: str | None = None,
    commit: bool = True,
) -> OrderActivity:
    """Append one timeline entry. With ``commit=False`` the caller owns the transaction."""
    activity = OrderActivity(
        order_id=order_id,
        activity_type=activity_type,
        message=message,
        metadata_json=metadata or {},
        actor_name=actor_name or "System",
    )
    db.session.add(activity)
    if commit:
        commit_with_retry()
    return activity


def log_status_change(order, old_status: str, new_status: str, *, reason: str | None = None,
                      actor_name: str | None = None, commit: bool = True) -> OrderActivity:
    message = f"Status changed from {old_status} to {new_status}"
    if reason:
        message += f": {reason}"
    return add_activity(
        order.id,
        ACTIVITY_STATUS_CHANGE,
        message,
        metadata={"old_status": old_status, "new_status": new_status, "reason": reason},
        actor_name=actor_name,
        commit=commit,
    )


def _write_link_note(order_id: int, message: str, metadata: dict, actor_name: str | None) -> dict:
    try:
        activity = add_activity(order_id, ACTIVITY_EXCHANGE_LINK, message, metadata=metadata, actor_name=actor_name)
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to write exchange link note on order %s", order_id)
        return {"order_id": order_id, "success": False, "error": str(exc)}
    return {"order_id": order_id, "success": True, "activity_id": activity.id}


def write_exchange_link_notes(parent, child, exchange_type: str, *, actor_name: str | None = None) -> list[dict]:
    """
    Write one linked note on each side of a parent/child relationship.

    Each side commits on its own and is reported independently; a failure on
    one side neither blocks nor rolls back the other.
    """
    is_refund = exchange_type == "refund"
    kind = "Refund" if is_refund else "Exchange"

    results = []
    child_result = _write_link_note(
        child.id,
        f"{kind} order created from parent #{parent.order_number}",
        {"parent_order_id": parent.id, "parent_order_number": parent.order_number,
         "exchange_type": exchange_type, "link_type": "child"},
        actor_name,
    )
    results.append({"target": "child", **child_result})

    parent_result = _write_link_note(
        parent.id,
        f"Items {'refunded' if is_refund else 'exchanged'}. Created {kind} order #{child.order_number}",
        {"child_order_id": child.id, "child_order_number": child.order_number,
         "exchange_type": exchange_type, "link_type": "parent"},
        actor_name,
    )
    results.append({"target": "parent", **parent_result})
    return results


def get_order_activities(order_id: int, *, activity_types=None, limit: int = 50, offset: int = 0) -> list[OrderActivity]:
    query = db.session.query(OrderActivity).filter(OrderActivity.order_id == order_id)
    if activity_types:
        query = query.filter(OrderActivity.activity_type.in_(list(activity_types)))
    return query.order_by(OrderActivity.id.desc()).offset(offset).limit(limit).all()
