import pytest
from cryptography.fernet import Fernet

from app.core.config import settings as core_settings
from app.repositories.org_scope import OrgScope
from app.services import crm
from app.services.load_workflow import InvalidTransition


@pytest.fixture
def scope(make_org, make_user):
    org_id = make_org("Acme Freight")
    user_id = make_user("dispatch@acme.test", organization_id=org_id)
    return OrgScope(organization_id=org_id, user_id=user_id, role="owner")


@pytest.fixture
def other_scope(make_org, make_user):
    org_id = make_org("Rival Logistics")
    user_id = make_user("ops@rival.test", organization_id=org_id)
    return OrgScope(organization_id=org_id, user_id=user_id, role="owner")


def _ready_load(db, scope, **overrides):
    carrier = crm.create_carrier(db, scope, {"carrier_name": "Blue Line Trucking", "mc_number": "MC123456"})
    data = {
        "shipper_name": "Great Lakes Foods",
        "origin_city": "Chicago",
        "origin_state": "il",
        "destination_city": "Dallas",
        "destination_state": "TX",
        "pickup_date": "2026-03-02",
        "delivery_date": "2026-03-04",
        "rate_to_shipper": "$2,500.00",
        "rate_to_carrier": "2100",
        "carrier_id": carrier["id"],
    }
    data.update(overrides)
    return crm.create_load(db, scope, data)


def test_create_carrier_defaults(db, scope):
    carrier = crm.create_carrier(
        db,
        scope,
        {"carrier_name": "  Blue Line Trucking ", "mc_number": "MC123456", "equipment_types": ["reefer", "Dry_Van"]},
    )

    assert carrier["carrier_name"] == "Blue Line Trucking"
    assert carrier["status"] == "active"
    assert carrier["equipment_types"] == ["reefer", "dry_van"]
    assert carrier["has_payment_details"] is False


def test_carrier_requires_name(db, scope):
    with pytest.raises(ValueError, match="Carrier name is required"):
        crm.create_carrier(db, scope, {"carrier_name": "   "})


def test_duplicate_mc_number_rejected_within_org(db, scope, other_scope):
    crm.create_carrier(db, scope, {"carrier_name": "Blue Line", "mc_number": "MC555"})

    with pytest.raises(ValueError, match="MC number already exists"):
        crm.create_carrier(db, scope, {"carrier_name": "Blue Line Again", "mc_number": "MC555"})

    # Another organization may track the same carrier.
    assert crm.create_carrier(db, other_scope, {"carrier_name": "Blue Line", "mc_number": "MC555"})["id"]


def test_unknown_equipment_type_rejected(db, scope):
    with pytest.raises(ValueError, match="Unknown equipment types"):
        crm.create_carrier(db, scope, {"carrier_name": "Odd Rigs", "equipment_types": ["spaceship"]})


def test_rating_bounds(db, scope):
    with pytest.raises(ValueError, match="Rating"):
        crm.create_carrier(db, scope, {"carrier_name": "Odd Rigs", "internal_rating": 7})


def test_list_carriers_filters(db, scope):
    crm.create_carrier(db, scope, {"carrier_name": "Cold Chain", "equipment_types": ["reefer"]})
    crm.create_carrier(db, scope, {"carrier_name": "Flat Out", "equipment_types": ["flatbed"], "status": "inactive"})

    by_equipment = crm.list_carriers(db, scope, equipment="reefer")
    assert [c["carrier_name"] for c in by_equipment["carriers"]] == ["Cold Chain"]

    by_search = crm.list_carriers(db, scope, search="flat")
    assert [c["carrier_name"] for c in by_search["carriers"]] == ["Flat Out"]

    everything = crm.list_carriers(db, scope)
    assert everything["pagination"]["total"] == 2
    assert everything["stats"]["active_carriers"] == 1


def test_other_organization_sees_not_found(db, scope, other_scope):
    carrier = crm.create_carrier(db, scope, {"carrier_name": "Blue Line"})

    with pytest.raises(LookupError):
        crm.get_carrier(db, other_scope, carrier["id"])
    with pytest.raises(LookupError):
        crm.update_carrier(db, other_scope, carrier["id"], {"notes": "mine now"})
    assert crm.list_carriers(db, other_scope)["carriers"] == []


def test_payment_details_are_encrypted(db, scope, monkeypatch):
    monkeypatch.setattr(core_settings, "ENCRYPTION_KEY", Fernet.generate_key().decode("utf-8"))
    carrier = crm.create_carrier(db, scope, {"carrier_name": "Blue Line"})

    result = crm.set_carrier_payment_details(db, scope, carrier["id"], "ACH 021000021 000123456789")

    assert result["payment_details"] == "****6789"
    stored = scope.get_owned(db, "carriers", carrier["id"])["payment_details_encrypted"]
    assert stored.startswith("enc:v1:")
    assert "000123456789" not in stored
    assert crm.get_carrier(db, scope, carrier["id"])["has_payment_details"] is True
    assert crm.get_carrier_payment_details(db, scope, carrier["id"]) == "ACH 021000021 000123456789"


def test_create_load_starts_quoted(db, scope):
    load = _ready_load(db, scope)

    assert load["status"] == "quoted"
    assert load["load_number"].startswith("LD-")
    assert load["origin_state"] == "IL"
    assert load["margin"] == 400.0
    assert load["allowed_transitions"] == ["needs_carrier", "cancelled"]
    assert load["carrier"]["carrier_name"] == "Blue Line Trucking"

    detail = crm.get_load(db, scope, load["id"], include_activity=True)
    assert [a["activity_type"] for a in detail["activities"]] == ["created"]


def test_load_cannot_reference_foreign_carrier(db, scope, other_scope):
    foreign = crm.create_carrier(db, other_scope, {"carrier_name": "Not Yours"})

    with pytest.raises(LookupError):
        crm.create_load(db, scope, {"shipper_name": "Great Lakes Foods", "carrier_id": foreign["id"]})


def test_update_load_rejects_status(db, scope):
    load = _ready_load(db, scope)

    with pytest.raises(ValueError, match="status endpoint"):
        crm.update_load(db, scope, load["id"], {"status": "completed"})


def test_status_change_requires_fields(db, scope):
    load = crm.create_load(db, scope, {"shipper_name": "Great Lakes Foods"})

    with pytest.raises(InvalidTransition) as excinfo:
        crm.change_load_status(db, scope, load["id"], "needs_carrier")

    assert set(excinfo.value.missing_fields) == {"rate_to_shipper", "pickup_date", "delivery_date"}


def test_status_change_and_undo(db, scope):
    load = _ready_load(db, scope)

    load = crm.change_load_status(db, scope, load["id"], "needs_carrier")
    load = crm.change_load_status(db, scope, load["id"], "dispatched")
    assert load["status"] == "dispatched"
    assert scope.get_owned(db, "carriers", load["carrier_id"])["last_used_date"] is not None

    with pytest.raises(InvalidTransition):
        crm.change_load_status(db, scope, load["id"], "completed")

    load = crm.undo_load_status(db, scope, load["id"])
    assert load["status"] == "needs_carrier"

    activities = crm.get_load(db, scope, load["id"], include_activity=True)["activities"]
    assert [a["activity_type"] for a in activities].count("status_reverted") == 1


def test_undo_quoted_load_is_rejected(db, scope):
    load = _ready_load(db, scope)

    with pytest.raises(ValueError, match="cannot be reversed"):
        crm.undo_load_status(db, scope, load["id"])


def test_load_listing_is_scoped(db, scope, other_scope):
    _ready_load(db, scope)

    assert crm.list_loads(db, scope)["pagination"]["total"] == 1
    assert crm.list_loads(db, other_scope)["loads"] == []
