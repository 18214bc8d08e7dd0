# Overview: Post-transition side effects (tickets, notifications) subscribed to order_status_changed.

"""
Transition Hook Dispatcher

Runs strictly after a status write is committed:

    delivered            feedback ticket + delivery notification
    cancelled            cancellation notification
    return_initiated     return ticket
    out_for_delivery     progress notification
    handover_to_courier  progress notification

Hooks are advisory. Each one runs in its own try block; a failure is logged
and reported as a HookOutcome, never raised to the transition caller and never
undoing the committed transition. Hooks run once per transition and are not
retried here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType

from flask import current_app

from ..extensions import db
from ..signals import StatusTransition, order_status_changed
from . import notification_service, ticket_service
from . import order_state_machine as sm


HOOK_FEEDBACK_TICKET = "feedback_ticket"
HOOK_RETURN_TICKET = "return_ticket"
HOOK_DELIVERY_NOTIFICATION = "delivery_notification"
HOOK_CANCELLATION_NOTIFICATION = "cancellation_notification"
HOOK_PROGRESS_NOTIFICATION = "progress_notification"

STATUS_HOOKS = MappingProxyType({
    sm.DELIVERED: (HOOK_FEEDBACK_TICKET, HOOK_DELIVERY_NOTIFICATION),
    sm.CANCELLED: (HOOK_CANCELLATION_NOTIFICATION,),
    sm.RETURN_INITIATED: (HOOK_RETURN_TICKET,),
    sm.OUT_FOR_DELIVERY: (HOOK_PROGRESS_NOTIFICATION,),
    sm.HANDOVER_TO_COURIER: (HOOK_PROGRESS_NOTIFICATION,),
})


class ExternalCollaboratorError(Exception):
    """A ticketing or notification call failed. Always caught at the dispatcher."""


@dataclass
class HookOutcome:
    hook: str
    success: bool
    detail: dict = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict:
        return {"hook": self.hook, "success": self.success, "detail": self.detail, "error": self.error}


# =============================================================================
# HOOKS
# =============================================================================

def _notify(sender, transition: StatusTransition, template: str, extra: dict | None = None) -> dict:
    payload = {
        "order_id": transition.order_id,
        "order_number": transition.order_number,
        "status": transition.new_status,
        **(extra or {}),
    }
    result = sender.send(transition.customer_phone, template, payload)
    if not result.success:
        raise ExternalCollaboratorError(result.error or f"Notification {template} failed")
    return {"notification_id": result.notification_id, "template": template}


def _feedback_ticket(transition: StatusTransition, sender) -> dict:
    ticket = ticket_service.auto_create_feedback_ticket(
        transition.order_id, transition.order_number, transition.customer_phone
    )
    return {"ticket_id": ticket.id, "ticket_number": ticket.ticket_number}


def _return_ticket(transition: StatusTransition, sender) -> dict:
    ticket = ticket_service.create_return_ticket(
        transition.order_id,
        transition.order_number,
        transition.update_data.get("return_reason"),
        transition.customer_phone,
    )
    return {"ticket_id": ticket.id, "ticket_number": ticket.ticket_number}


def _delivery_notification(transition: StatusTransition, sender) -> dict:
    return _notify(sender, transition, notification_service.TEMPLATE_ORDER_DELIVERED)


def _cancellation_notification(transition: StatusTransition, sender) -> dict:
    return _notify(
        sender, transition, notification_service.TEMPLATE_ORDER_CANCELLED,
        {"reason": transition.update_data.get("cancellation_reason")},
    )


def _progress_notification(transition: StatusTransition, sender) -> dict:
    if transition.new_status == sm.HANDOVER_TO_COURIER:
        return _notify(
            sender, transition, notification_service.TEMPLATE_ORDER_HANDOVER_TO_COURIER,
            {
                "courier_partner": transition.update_data.get("courier_partner"),
                "courier_tracking_id": transition.update_data.get("courier_tracking_id"),
            },
        )
    return _notify(sender, transition, notification_service.TEMPLATE_ORDER_OUT_FOR_DELIVERY)


_HOOK_FUNCS = MappingProxyType({
    HOOK_FEEDBACK_TICKET: _feedback_ticket,
    HOOK_RETURN_TICKET: _return_ticket,
    HOOK_DELIVERY_NOTIFICATION: _delivery_notification,
    HOOK_CANCELLATION_NOTIFICATION: _cancellation_notification,
    HOOK_PROGRESS_NOTIFICATION: _progress_notification,
})


# =============================================================================
# DISPATCH
# =============================================================================

def dispatch(transition: StatusTransition, *, sender=None) -> list[HookOutcome]:
    """Run every hook mapped to the new status and collect outcomes."""
    hooks = STATUS_HOOKS.get(transition.new_status, ())
    if not hooks:
        return []
    if sender is None:
        sender = notification_service.get_sender()

    outcomes = []
    for hook in hooks:
        try:
            detail = _HOOK_FUNCS[hook](transition, sender)
        except Exception as exc:
            db.session.rollback()
            current_app.logger.warning(
                "Hook %s failed for order %s (%s -> %s): %s",
                hook, transition.order_id, transition.old_status, transition.new_status, exc,
            )
            outcomes.append(HookOutcome(hook=hook, success=False, error=str(exc)))
            continue
        outcomes.append(HookOutcome(hook=hook, success=True, detail=detail or {}))
    return outcomes


def execute_post_transition_hooks(order, old_status: str, new_status: str, *,
                                  update_data: dict | None = None, sender=None) -> list[HookOutcome]:
    """Run hooks for an order whose move to ``new_status`` is already committed."""
    transition = StatusTransition(
        order_id=order.id,
        order_number=order.order_number,
        fulfillment_type=order.fulfillment_type,
        old_status=old_status,
        new_status=new_status,
        customer_phone=order.customer_phone,
        update_data=dict(update_data or {}),
    )
    return dispatch(transition, sender=sender)


def _on_status_changed(sender, transition: StatusTransition = None, **extra):
    if transition is None or not current_app.config.get("HOOKS_ENABLED", True):
        return []
    return dispatch(transition)


def connect_hooks() -> None:
    """Subscribe the dispatcher to order_status_changed (idempotent)."""
    order_status_changed.connect(_on_status_changed)
