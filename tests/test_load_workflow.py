import pytest

from app.services.load_workflow import (
    InvalidTransition,
    allowed_transitions,
    can_transition,
    is_terminal_status,
    previous_status,
    status_progress,
    validate_transition,
)


READY_LOAD = {
    "rate_to_shipper": 2500,
    "rate_to_carrier": 2000,
    "pickup_date": "2026-03-02",
    "delivery_date": "2026-03-04",
    "carrier_id": 7,
}


@pytest.mark.parametrize(
    "current, target, allowed",
    [
        ("quoted", "needs_carrier", True),
        ("quoted", "dispatched", False),
        ("needs_carrier", "booked", True),
        ("needs_carrier", "dispatched", True),
        ("booked", "dispatched", True),
        ("dispatched", "in_transit", True),
        ("in_transit", "delivered", True),
        ("delivered", "completed", True),
        ("delivered", "quoted", False),
        ("completed", "cancelled", True),
        ("in_transit", "cancelled", True),
        ("cancelled", "quoted", False),
        ("cancelled", "cancelled", False),
    ],
)
def test_transition_table(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_cancelled_is_final():
    assert allowed_transitions("cancelled") == []
    assert is_terminal_status("cancelled")
    assert is_terminal_status("completed")
    assert not is_terminal_status("in_transit")


@pytest.mark.parametrize(
    "target, missing",
    [
        ("needs_carrier", ["rate_to_shipper", "pickup_date", "delivery_date"]),
        ("dispatched", ["carrier_id", "rate_to_carrier"]),
    ],
)
def test_missing_fields_are_reported(target, missing):
    current = "quoted" if target == "needs_carrier" else "needs_carrier"

    with pytest.raises(InvalidTransition) as excinfo:
        validate_transition({"status": current}, target)

    assert excinfo.value.missing_fields == missing


def test_unknown_and_illegal_targets():
    with pytest.raises(InvalidTransition, match="Unknown status"):
        validate_transition({"status": "quoted"}, "teleported")
    with pytest.raises(InvalidTransition, match="Cannot transition from quoted to delivered"):
        validate_transition({"status": "quoted", **READY_LOAD}, "delivered")


def test_complete_load_passes_validation():
    validate_transition({"status": "needs_carrier", **READY_LOAD}, "dispatched")


@pytest.mark.parametrize(
    "status, progress",
    [("quoted", 17), ("needs_carrier", 33), ("booked", 33), ("dispatched", 50), ("completed", 100), ("cancelled", 0)],
)
def test_status_progress(status, progress):
    assert status_progress(status) == progress


@pytest.mark.parametrize(
    "status, previous",
    [
        ("quoted", None),
        ("needs_carrier", "quoted"),
        ("booked", "needs_carrier"),
        ("dispatched", "needs_carrier"),
        ("in_transit", "dispatched"),
        ("completed", "delivered"),
        ("cancelled", None),
    ],
)
def test_previous_status(status, previous):
    assert previous_status(status) == previous
