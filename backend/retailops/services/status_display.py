# Overview: Display metadata (labels, icons, colors, action buttons) for order statuses.

"""
Lookup tables used by front ends to render order badges and next-step
buttons. Nothing in the decision logic reads these.
"""

from __future__ import annotations

from types import MappingProxyType

from . import order_state_machine as sm


_UNKNOWN = MappingProxyType({"label": None, "icon": "help-circle", "color": "gray"})

STATUS_DISPLAY = MappingProxyType({
    sm.INTAKE: MappingProxyType({"label": "Intake", "icon": "inbox", "color": "blue"}),
    sm.FOLLOW_UP: MappingProxyType({"label": "Follow Up", "icon": "phone", "color": "yellow"}),
    sm.CONVERTED: MappingProxyType({"label": "Converted", "icon": "check-circle", "color": "green"}),
    sm.PACKED: MappingProxyType({"label": "Packed", "icon": "package", "color": "indigo"}),
    sm.ASSIGNED: MappingProxyType({"label": "Assigned", "icon": "user", "color": "blue"}),
    sm.OUT_FOR_DELIVERY: MappingProxyType({"label": "Out for Delivery", "icon": "truck", "color": "orange"}),
    sm.HANDOVER_TO_COURIER: MappingProxyType({"label": "Handover to Courier", "icon": "external-link", "color": "purple"}),
    sm.IN_TRANSIT: MappingProxyType({"label": "In Transit", "icon": "navigation", "color": "cyan"}),
    sm.STORE_SALE: MappingProxyType({"label": "Store Sale", "icon": "store", "color": "teal"}),
    sm.DELIVERED: MappingProxyType({"label": "Delivered", "icon": "check", "color": "emerald"}),
    sm.CANCELLED: MappingProxyType({"label": "Cancelled", "icon": "x-circle", "color": "red"}),
    sm.REJECTED: MappingProxyType({"label": "Rejected", "icon": "x", "color": "red"}),
    sm.RETURN_INITIATED: MappingProxyType({"label": "Return Initiated", "icon": "rotate-ccw", "color": "pink"}),
    sm.RETURNED: MappingProxyType({"label": "Returned", "icon": "undo", "color": "gray"}),
})

# requires_modal: the button collects prerequisite fields before submitting.
ACTION_BUTTONS = MappingProxyType({
    sm.FOLLOW_UP: MappingProxyType({"label": "Schedule Follow-up", "icon": "phone", "color": "yellow", "requires_modal": True}),
    sm.CONVERTED: MappingProxyType({"label": "Mark Converted", "icon": "check-circle", "color": "green", "requires_modal": False}),
    sm.PACKED: MappingProxyType({"label": "Mark Packed", "icon": "package", "color": "indigo", "requires_modal": False}),
    sm.ASSIGNED: MappingProxyType({"label": "Assign Rider", "icon": "user", "color": "blue", "requires_modal": True}),
    sm.OUT_FOR_DELIVERY: MappingProxyType({"label": "Out for Delivery", "icon": "truck", "color": "orange", "requires_modal": False}),
    sm.HANDOVER_TO_COURIER: MappingProxyType({"label": "Handover to Courier", "icon": "external-link", "color": "purple", "requires_modal": True}),
    sm.IN_TRANSIT: MappingProxyType({"label": "Mark In Transit", "icon": "navigation", "color": "cyan", "requires_modal": False}),
    sm.STORE_SALE: MappingProxyType({"label": "Complete Store Sale", "icon": "store", "color": "teal", "requires_modal": False}),
    sm.DELIVERED: MappingProxyType({"label": "Mark Delivered", "icon": "check", "color": "emerald", "requires_modal": False}),
    sm.CANCELLED: MappingProxyType({"label": "Cancel Order", "icon": "x-circle", "color": "red", "requires_modal": True}),
    sm.REJECTED: MappingProxyType({"label": "Reject Order", "icon": "x", "color": "red", "requires_modal": True}),
    sm.RETURN_INITIATED: MappingProxyType({"label": "Initiate Return", "icon": "rotate-ccw", "color": "pink", "requires_modal": True}),
    sm.RETURNED: MappingProxyType({"label": "Mark Returned", "icon": "undo", "color": "gray", "requires_modal": False}),
})


def get_status_display(status: str) -> dict:
    info = STATUS_DISPLAY.get(status)
    if info is None:
        return {**_UNKNOWN, "label": status}
    return dict(info)


def get_action_buttons(status: str, fulfillment_type: str) -> list[dict]:
    """Buttons for every legal next status, sorted by target status name."""
    buttons = []
    for target in sorted(sm.get_allowed_next_statuses(status, fulfillment_type)):
        config = ACTION_BUTTONS.get(target)
        if config is None:
            continue
        buttons.append({"status": target, **config})
    return buttons
