# Overview: Application signals; order_service publishes, subscribers react.

from __future__ import annotations

from dataclasses import dataclass, field

from blinker import Namespace


_signals = Namespace()

# Sent with sender=order_service module name and transition=StatusTransition,
# strictly after the new status is committed.
order_status_changed = _signals.signal("order-status-changed")


@dataclass(frozen=True)
class StatusTransition:
    """A committed status move, as seen by subscribers."""
    order_id: int
    order_number: str
    fulfillment_type: str
    old_status: str
    new_status: str
    customer_phone: str | None = None
    update_data: dict = field(default_factory=dict)
