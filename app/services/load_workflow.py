"""Load status machine: allowed transitions and the fields each target status requires."""

from __future__ import annotations

from typing import Any, Mapping


STATUS_ORDER = ("quoted", "needs_carrier", "dispatched", "in_transit", "delivered", "completed")

TRANSITIONS: dict[str, tuple[str, ...]] = {
    "quoted": ("needs_carrier",),
    "needs_carrier": ("booked", "dispatched"),
    "booked": ("dispatched",),
    "dispatched": ("in_transit",),
    "in_transit": ("delivered",),
    "delivered": ("completed",),
    "completed": (),
    "cancelled": (),
}
ALL_STATUSES = frozenset(TRANSITIONS)
TERMINAL_STATUSES = frozenset({"completed", "cancelled"})
MISSING_FIELDS_MESSAGE = "Missing required fields for this transition"

REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    "needs_carrier": ("rate_to_shipper", "pickup_date", "delivery_date"),
    "booked": ("carrier_id", "rate_to_carrier"),
    "dispatched": ("carrier_id", "rate_to_carrier"),
    "in_transit": ("pickup_date",),
    "delivered": ("delivery_date",),
    "completed": ("rate_to_shipper", "rate_to_carrier"),
}

STATUS_LABELS = {
    "quoted": "Quoted",
    "needs_carrier": "Needs Carrier",
    "booked": "Booked",
    "dispatched": "Dispatched",
    "in_transit": "In Transit",
    "delivered": "Delivered",
    "completed": "Completed",
    "cancelled": "Cancelled",
}


class InvalidTransition(ValueError):
    def __init__(self, message: str, missing_fields: list[str] | None = None):
        super().__init__(message)
        self.missing_fields = missing_fields or []


def allowed_transitions(current: str) -> list[str]:
    targets = list(TRANSITIONS.get(current, ()))
    # Completed loads can still be cancelled; cancelled is final.
    if current != "cancelled" and current in ALL_STATUSES:
        targets.append("cancelled")
    return targets


def can_transition(current: str, target: str) -> bool:
    return target in allowed_transitions(current)


def missing_fields(load: Mapping[str, Any], target: str) -> list[str]:
    return [name for name in REQUIRED_FIELDS.get(target, ()) if not load.get(name)]


def validate_transition(load: Mapping[str, Any], target: str) -> None:
    current = load.get("status") or "quoted"
    if target not in ALL_STATUSES:
        raise InvalidTransition(f"Unknown status: {target}")
    if not can_transition(current, target):
        raise InvalidTransition(f"Cannot transition from {current} to {target}")
    missing = missing_fields(load, target)
    if missing:
        raise InvalidTransition(MISSING_FIELDS_MESSAGE, missing_fields=missing)


def status_progress(status: str) -> int:
    """Percent through the delivery lifecycle; booked counts as needs_carrier, cancelled as 0."""
    lookup = "needs_carrier" if status == "booked" else status
    if lookup not in STATUS_ORDER:
        return 0
    return round((STATUS_ORDER.index(lookup) + 1) / len(STATUS_ORDER) * 100)


def is_terminal_status(status: str) -> bool:
    return status in TERMINAL_STATUSES


def previous_status(status: str) -> str | None:
    """Status to fall back to when undoing the last forward step."""
    if status == "booked":
        return "needs_carrier"
    if status == "dispatched":
        return "needs_carrier"
    if status not in STATUS_ORDER:
        return None
    index = STATUS_ORDER.index(status)
    return STATUS_ORDER[index - 1] if index > 0 else None
