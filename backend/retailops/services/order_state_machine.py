# Overview: Fulfillment state machine; decides which order status moves are legal per channel.

"""
RetailOps Fulfillment State Machine

================================================================================
PURPOSE: Decide whether an order may move from one status to another
================================================================================

Three channels, three graphs:

    inside_channel   own riders inside the metro area
        intake -> follow_up -> converted -> packed -> assigned
               -> out_for_delivery -> delivered

    outside_channel  third-party courier
        intake -> follow_up -> converted -> packed -> handover_to_courier
               -> in_transit -> delivered

    store            walk-in / point of sale
        intake -> converted -> packed -> store_sale -> delivered

Every channel can reach cancelled/rejected early, and delivered can still move
to return_initiated -> returned.

RULES:
1. The graphs are built once at import and are read-only (MappingProxyType of
   frozensets). Nothing mutates them per request.
2. validate_transition() performs no I/O and writes nothing. The caller
   (order_service) persists the status and runs stock actions.
3. Checks run in a fixed order and fail fast: graph membership, channel
   leakage, field prerequisites.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Mapping

from flask import current_app

from ..validation import ValidationError, is_blank


# =============================================================================
# FULFILLMENT TYPES
# =============================================================================

INSIDE_CHANNEL = "inside_channel"
OUTSIDE_CHANNEL = "outside_channel"
STORE = "store"

FULFILLMENT_TYPES = frozenset({INSIDE_CHANNEL, OUTSIDE_CHANNEL, STORE})

_FULFILLMENT_ALIASES = MappingProxyType({
    "inside": INSIDE_CHANNEL,
    "inside_channel": INSIDE_CHANNEL,
    "inside_valley": INSIDE_CHANNEL,
    "metro": INSIDE_CHANNEL,
    "rider": INSIDE_CHANNEL,
    "outside": OUTSIDE_CHANNEL,
    "outside_channel": OUTSIDE_CHANNEL,
    "outside_valley": OUTSIDE_CHANNEL,
    "courier": OUTSIDE_CHANNEL,
    "store": STORE,
    "pos": STORE,
    "store_pickup": STORE,
    "pickup": STORE,
    "walk_in": STORE,
})


# =============================================================================
# ORDER STATUSES
# =============================================================================

INTAKE = "intake"
FOLLOW_UP = "follow_up"
CONVERTED = "converted"
PACKED = "packed"
ASSIGNED = "assigned"
OUT_FOR_DELIVERY = "out_for_delivery"
HANDOVER_TO_COURIER = "handover_to_courier"
IN_TRANSIT = "in_transit"
STORE_SALE = "store_sale"
DELIVERED = "delivered"
CANCELLED = "cancelled"
REJECTED = "rejected"
RETURN_INITIATED = "return_initiated"
RETURNED = "returned"

ALL_STATUSES = frozenset({
    INTAKE, FOLLOW_UP, CONVERTED, PACKED, ASSIGNED, OUT_FOR_DELIVERY,
    HANDOVER_TO_COURIER, IN_TRANSIT, STORE_SALE, DELIVERED, CANCELLED,
    REJECTED, RETURN_INITIATED, RETURNED,
})

# Delivered is not terminal: it can still reach return_initiated.
TERMINAL_STATUSES = frozenset({CANCELLED, REJECTED, RETURNED})

RIDER_ONLY_STATUSES = frozenset({ASSIGNED, OUT_FOR_DELIVERY})
COURIER_ONLY_STATUSES = frozenset({HANDOVER_TO_COURIER, IN_TRANSIT})

# Kanban / funnel grouping
STATUS_CATEGORIES = MappingProxyType({
    "intake": frozenset({INTAKE, FOLLOW_UP}),
    "processing": frozenset({CONVERTED, PACKED}),
    "dispatch": frozenset({ASSIGNED, OUT_FOR_DELIVERY, HANDOVER_TO_COURIER, IN_TRANSIT, STORE_SALE}),
    "completed": frozenset({DELIVERED}),
    "cancelled": frozenset({CANCELLED, REJECTED}),
    "returns": frozenset({RETURN_INITIATED, RETURNED}),
})


# =============================================================================
# TRANSITION GRAPHS
# =============================================================================

def _freeze(graph: dict[str, set[str]]) -> Mapping[str, frozenset[str]]:
    return MappingProxyType({status: frozenset(targets) for status, targets in graph.items()})


INSIDE_CHANNEL_TRANSITIONS = _freeze({
    INTAKE: {FOLLOW_UP, CONVERTED, CANCELLED, REJECTED},
    FOLLOW_UP: {FOLLOW_UP, CONVERTED, CANCELLED, REJECTED},
    CONVERTED: {PACKED, CANCELLED},
    PACKED: {ASSIGNED, CANCELLED},
    ASSIGNED: {OUT_FOR_DELIVERY, PACKED, CANCELLED},
    OUT_FOR_DELIVERY: {DELIVERED, RETURN_INITIATED, ASSIGNED},
    DELIVERED: {RETURN_INITIATED},
    RETURN_INITIATED: {RETURNED},
    RETURNED: set(),
    CANCELLED: set(),
    REJECTED: set(),
})

OUTSIDE_CHANNEL_TRANSITIONS = _freeze({
    INTAKE: {FOLLOW_UP, CONVERTED, CANCELLED, REJECTED},
    FOLLOW_UP: {FOLLOW_UP, CONVERTED, CANCELLED, REJECTED},
    CONVERTED: {PACKED, CANCELLED},
    PACKED: {HANDOVER_TO_COURIER, CANCELLED},
    HANDOVER_TO_COURIER: {IN_TRANSIT, DELIVERED, RETURN_INITIATED},
    IN_TRANSIT: {DELIVERED, RETURN_INITIATED},
    DELIVERED: {RETURN_INITIATED},
    RETURN_INITIATED: {RETURNED},
    RETURNED: set(),
    CANCELLED: set(),
    REJECTED: set(),
})

STORE_TRANSITIONS = _freeze({
    INTAKE: {CONVERTED, STORE_SALE, CANCELLED, REJECTED},
    CONVERTED: {PACKED, STORE_SALE, CANCELLED},
    PACKED: {STORE_SALE, CANCELLED},
    STORE_SALE: {DELIVERED},
    DELIVERED: {RETURN_INITIATED},
    RETURN_INITIATED: {RETURNED},
    RETURNED: set(),
    CANCELLED: set(),
    REJECTED: set(),
})

TRANSITIONS = MappingProxyType({
    INSIDE_CHANNEL: INSIDE_CHANNEL_TRANSITIONS,
    OUTSIDE_CHANNEL: OUTSIDE_CHANNEL_TRANSITIONS,
    STORE: STORE_TRANSITIONS,
})


# =============================================================================
# FIELD PREREQUISITES
# =============================================================================

# Fields that must be present in update_data or already on the order.
STATUS_REQUIRED_FIELDS = MappingProxyType({
    FOLLOW_UP: ("followup_date", "followup_reason"),
    ASSIGNED: ("assigned_rider_id",),
    HANDOVER_TO_COURIER: ("courier_partner", "courier_tracking_id"),
    CANCELLED: ("cancellation_reason",),
    REJECTED: ("rejection_reason",),
    RETURN_INITIATED: ("return_reason",),
})

# Fields that must already be stored on the order (update_data does not count).
STATUS_EXISTING_FIELDS = MappingProxyType({
    OUT_FOR_DELIVERY: ("assigned_rider_id",),
})


# =============================================================================
# STOCK STAGES
# =============================================================================

STOCK_STAGE_NONE = "none"
STOCK_STAGE_RESERVED = "reserved"
STOCK_STAGE_CONSUMED = "consumed"
STOCK_STAGE_RESTORED = "restored"

STOCK_STAGES = MappingProxyType({
    INTAKE: STOCK_STAGE_NONE,
    FOLLOW_UP: STOCK_STAGE_NONE,
    CONVERTED: STOCK_STAGE_RESERVED,
    PACKED: STOCK_STAGE_CONSUMED,
    ASSIGNED: STOCK_STAGE_CONSUMED,
    OUT_FOR_DELIVERY: STOCK_STAGE_CONSUMED,
    HANDOVER_TO_COURIER: STOCK_STAGE_CONSUMED,
    IN_TRANSIT: STOCK_STAGE_CONSUMED,
    STORE_SALE: STOCK_STAGE_CONSUMED,
    DELIVERED: STOCK_STAGE_CONSUMED,
    RETURN_INITIATED: STOCK_STAGE_CONSUMED,
    CANCELLED: STOCK_STAGE_RESTORED,
    REJECTED: STOCK_STAGE_RESTORED,
    RETURNED: STOCK_STAGE_RESTORED,
})

STOCK_ACTION_NONE = "none"
STOCK_ACTION_RESERVE = "reserve"
STOCK_ACTION_CONFIRM = "confirm"
STOCK_ACTION_RESERVE_AND_CONFIRM = "reserve_and_confirm"
STOCK_ACTION_RESTORE = "restore"

_STOCK_ACTIONS = MappingProxyType({
    (STOCK_STAGE_NONE, STOCK_STAGE_RESERVED): STOCK_ACTION_RESERVE,
    (STOCK_STAGE_NONE, STOCK_STAGE_CONSUMED): STOCK_ACTION_RESERVE_AND_CONFIRM,
    (STOCK_STAGE_RESERVED, STOCK_STAGE_CONSUMED): STOCK_ACTION_CONFIRM,
    (STOCK_STAGE_RESERVED, STOCK_STAGE_RESTORED): STOCK_ACTION_RESTORE,
    (STOCK_STAGE_CONSUMED, STOCK_STAGE_RESTORED): STOCK_ACTION_RESTORE,
})


# =============================================================================
# ERRORS
# =============================================================================

class InvalidTransitionError(ValidationError):
    """Target status is not reachable from the current status in this channel's graph."""

    def __init__(self, current: str, new: str, fulfillment_type: str, allowed):
        self.current_status = current
        self.new_status = new
        self.fulfillment_type = fulfillment_type
        self.allowed = sorted(allowed)
        allowed_text = ", ".join(self.allowed) if self.allowed else "none (terminal status)"
        super().__init__(
            f"Cannot transition {fulfillment_type} order from '{current}' to '{new}'. "
            f"Allowed: {allowed_text}"
        )


class InvalidTransitionForChannelError(ValidationError):
    """Target status belongs to another fulfillment channel."""

    def __init__(self, fulfillment_type: str, new: str, hint: str):
        self.fulfillment_type = fulfillment_type
        self.new_status = new
        super().__init__(f"Status '{new}' is not valid for {fulfillment_type} orders. {hint}")


class PrerequisiteError(ValidationError):
    """A field required to enter the target status is missing."""

    def __init__(self, new: str, field: str, message: str | None = None):
        self.new_status = new
        self.field = field
        super().__init__(message or f"Status '{new}' requires '{field}'")


# =============================================================================
# LOOKUPS
# =============================================================================

def normalize_fulfillment_type(value: str | None) -> str:
    """Map channel aliases ('inside', 'POS', 'store_pickup', ...) onto a canonical type."""
    if is_blank(value):
        raise ValidationError("fulfillment_type is required")
    key = str(value).strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return _FULFILLMENT_ALIASES[key]
    except KeyError:
        raise ValidationError(
            f"Invalid fulfillment_type '{value}'. Must be one of: {', '.join(sorted(FULFILLMENT_TYPES))}"
        )


def determine_fulfillment_type(city: str | None, metro_cities=None) -> str:
    """
    Pick the delivery channel for a shipping city.

    Cities inside the configured metro area go to own riders; everything
    else goes to courier. A missing city defaults to own riders.
    """
    if metro_cities is None:
        metro_cities = current_app.config.get("METRO_CITIES", ())
    if is_blank(city):
        return INSIDE_CHANNEL
    normalized = city.strip().lower()
    if any(metro in normalized for metro in metro_cities):
        return INSIDE_CHANNEL
    return OUTSIDE_CHANNEL


def get_transitions(fulfillment_type: str) -> Mapping[str, frozenset[str]]:
    try:
        return TRANSITIONS[fulfillment_type]
    except KeyError:
        raise ValidationError(
            f"Invalid fulfillment_type '{fulfillment_type}'. "
            f"Must be one of: {', '.join(sorted(FULFILLMENT_TYPES))}"
        )


def get_allowed_next_statuses(status: str, fulfillment_type: str) -> frozenset[str]:
    """Legal next statuses; empty for terminal statuses and nodes outside the graph."""
    return get_transitions(fulfillment_type).get(status, frozenset())


def is_valid_transition(current: str, new: str, fulfillment_type: str) -> bool:
    return new in get_allowed_next_statuses(current, fulfillment_type)


def is_terminal_status(status: str) -> bool:
    return status in TERMINAL_STATUSES


def get_initial_status(source: str | None, fulfillment_type: str | None) -> str:
    """Point-of-sale orders start as store_sale, everything else at intake."""
    if source == STORE or fulfillment_type == STORE:
        return STORE_SALE
    return INTAKE


def get_funnel_category(status: str) -> str:
    for category, statuses in STATUS_CATEGORIES.items():
        if status in statuses:
            return category
    return "other"


def get_stock_stage(status: str) -> str:
    return STOCK_STAGES.get(status, STOCK_STAGE_NONE)


def get_stock_action(old_status: str, new_status: str) -> str:
    """
    Stock work implied by a status move.

    none -> reserved          reserve
    none -> consumed          reserve_and_confirm (direct store sale)
    reserved -> consumed      confirm
    reserved|consumed -> restored   restore
    anything else             none
    """
    key = (get_stock_stage(old_status), get_stock_stage(new_status))
    return _STOCK_ACTIONS.get(key, STOCK_ACTION_NONE)


# =============================================================================
# VALIDATION
# =============================================================================

def _field(obj: Any, name: str):
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def validate_fulfillment_restrictions(fulfillment_type: str, new_status: str) -> None:
    """Reject statuses that belong to another channel's hand-off."""
    if fulfillment_type == INSIDE_CHANNEL and new_status in COURIER_ONLY_STATUSES:
        raise InvalidTransitionForChannelError(
            fulfillment_type, new_status,
            "Use 'assigned' -> 'out_for_delivery' -> 'delivered' instead.",
        )
    if fulfillment_type == OUTSIDE_CHANNEL and new_status in RIDER_ONLY_STATUSES:
        raise InvalidTransitionForChannelError(
            fulfillment_type, new_status,
            "Use 'handover_to_courier' -> 'in_transit' -> 'delivered' instead.",
        )
    if fulfillment_type == STORE and new_status in (RIDER_ONLY_STATUSES | COURIER_ONLY_STATUSES):
        raise InvalidTransitionForChannelError(
            fulfillment_type, new_status,
            "Use 'store_sale' -> 'delivered' instead.",
        )


def validate_status_requirements(order, new_status: str, update_data: Mapping | None = None) -> None:
    update_data = update_data or {}

    for field in STATUS_REQUIRED_FIELDS.get(new_status, ()):
        value = update_data.get(field)
        if is_blank(value):
            value = _field(order, field)
        if is_blank(value):
            raise PrerequisiteError(new_status, field)

    for field in STATUS_EXISTING_FIELDS.get(new_status, ()):
        if is_blank(_field(order, field)):
            raise PrerequisiteError(
                new_status, field, f"Order must have '{field}' set before '{new_status}'"
            )


def validate_transition(order, new_status: str, update_data: Mapping | None = None) -> None:
    """
    Authorize moving ``order`` to ``new_status``.

    ``order`` may be an Order row or any mapping with ``status`` and
    ``fulfillment_type``. Raises InvalidTransitionError,
    InvalidTransitionForChannelError or PrerequisiteError; returns None when
    the move is legal.
    """
    current = _field(order, "status")
    fulfillment_type = _field(order, "fulfillment_type")

    allowed = get_allowed_next_statuses(current, fulfillment_type)
    if new_status not in allowed:
        raise InvalidTransitionError(current, new_status, fulfillment_type, allowed)

    validate_fulfillment_restrictions(fulfillment_type, new_status)
    validate_status_requirements(order, new_status, update_data)
