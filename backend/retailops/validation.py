from __future__ import annotations

from typing import Any, Iterable


# Largest quantity accepted on a single order or transaction line.
MAX_LINE_QUANTITY = 100_000


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate invoice number)."""


class NotFoundError(LookupError):
    """404-level missing entity."""

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


def coerce_int(value: Any, *, field: str) -> int:
    """
    Strict integer coercion for external input.

    Rejects bools, floats, decimals and scientific notation so that
    "2.5" units of stock can never be silently truncated.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def parse_stock_items(items: Iterable[dict] | None, *, allow_negative: bool = False) -> list[dict]:
    """
    Normalize a list of ``{"variant_id", "quantity"}`` lines.

    Quantities must be non-zero integers; negative quantities are only
    accepted when ``allow_negative`` is set (signed order lines).
    """
    if items is None:
        raise ValidationError("items are required")
    if isinstance(items, (str, bytes, dict)):
        raise ValidationError("items must be a list")

    parsed = []
    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{idx}] must be an object")
        if item.get("variant_id") is None:
            raise ValidationError(f"items[{idx}].variant_id is required")
        variant_id = coerce_int(item["variant_id"], field=f"items[{idx}].variant_id")
        quantity = coerce_int(item.get("quantity"), field=f"items[{idx}].quantity")
        if quantity == 0:
            raise ValidationError(f"items[{idx}].quantity cannot be zero")
        if quantity < 0 and not allow_negative:
            raise ValidationError(f"items[{idx}].quantity must be positive")
        if abs(quantity) > MAX_LINE_QUANTITY:
            raise ValidationError(f"items[{idx}].quantity exceeds {MAX_LINE_QUANTITY}")

        line = dict(item)
        line["variant_id"] = variant_id
        line["quantity"] = quantity
        parsed.append(line)

    if not parsed:
        raise ValidationError("At least one item is required")
    return parsed


def is_blank(value: Any) -> bool:
    """Missing-field test shared by prerequisite checks: None and '' are blank."""
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False
