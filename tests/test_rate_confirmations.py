from datetime import datetime, timezone
from pathlib import Path

import pytest
from sqlalchemy import text

from app.core.config import settings as core_settings
from app.repositories.org_scope import OrgScope
from app.services import crm
from app.services import rate_confirmations as rc
from app.services.rate_confirmation_pdf import decode_signature_data, format_currency, format_time


NOW = datetime(2026, 3, 1, 15, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def document_root(tmp_path, monkeypatch):
    monkeypatch.setattr(core_settings, "DOCUMENT_STORAGE_ROOT", str(tmp_path / "documents"))
    return tmp_path / "documents"


@pytest.fixture
def scope(db, make_org, make_user):
    org_id = make_org("Acme Freight")
    db.execute(text("UPDATE organizations SET mc_number = 'MC998877' WHERE id = :id"), {"id": org_id})
    user_id = make_user("broker@acme.test", organization_id=org_id)
    return OrgScope(organization_id=org_id, user_id=user_id, role="owner")


@pytest.fixture
def booked_load(db, scope):
    carrier = crm.create_carrier(
        db,
        scope,
        {"carrier_name": "Blue Line Trucking", "mc_number": "MC123456", "dispatch_email": "dispatch@blueline.test"},
    )
    load = crm.create_load(
        db,
        scope,
        {
            "shipper_name": "Great Lakes Foods",
            "origin_city": "Chicago",
            "origin_state": "IL",
            "destination_city": "Dallas",
            "destination_state": "TX",
            "pickup_date": "2026-03-02",
            "pickup_time": "08:00",
            "delivery_date": "2026-03-04",
            "rate_to_shipper": "2500",
            "rate_to_carrier": "2100",
            "carrier_id": carrier["id"],
        },
    )
    crm.change_load_status(db, scope, load["id"], "needs_carrier")
    return crm.change_load_status(db, scope, load["id"], "booked")


@pytest.mark.parametrize(
    "value,expected",
    [("14:30", "2:30 PM"), ("00:05", "12:05 AM"), ("12:00", "12:00 PM"), ("25:00", "TBD"), (None, "TBD")],
)
def test_format_time(value, expected):
    assert format_time(value) == expected


def test_format_currency():
    assert format_currency("2100") == "$2,100.00"
    assert format_currency("$1,250.5") == "$1,250.50"
    assert format_currency("n/a") == "$0.00"


def test_signature_payload_must_be_base64_data_url():
    assert decode_signature_data(None) is None
    assert decode_signature_data("data:image/png;base64,iVBORw0KGgo=") == b"\x89PNG\r\n\x1a\n"
    with pytest.raises(ValueError):
        decode_signature_data("not-a-data-url")
    with pytest.raises(ValueError):
        decode_signature_data("data:image/png;base64,@@@")


def test_validation_lists_every_problem():
    errors = rc.validate_for_generation(organization={"name": "Acme"}, carrier=None, load={})

    assert errors == [
        "Carrier information is required",
        "Organization MC or DOT number is required",
        "Carrier rate is required",
    ]


def test_generation_requires_carrier(db, scope):
    load = crm.create_load(db, scope, {"shipper_name": "Great Lakes Foods", "rate_to_carrier": "2100"})

    with pytest.raises(rc.RateConfirmationValidationError) as excinfo:
        rc.generate_rate_confirmation(db, scope, load_id=load["id"], now=NOW)

    assert excinfo.value.errors == ["Carrier information is required"]


def test_numbers_increment_per_day(db, scope, booked_load):
    first = rc.generate_rate_confirmation(db, scope, load_id=booked_load["id"], now=NOW)
    second = rc.generate_rate_confirmation(db, scope, load_id=booked_load["id"], now=NOW)

    assert first["rate_con_number"] == "RC-20260301-001"
    assert second["rate_con_number"] == "RC-20260301-002"
    assert (first["version"], second["version"]) == (1, 2)
    assert "signing_token" not in first
    assert rc.next_rate_con_number(db, organization_id=scope.organization_id, now=datetime(2026, 3, 2)) == "RC-20260302-001"


def test_generated_pdf_is_stored(db, scope, booked_load, document_root):
    record = rc.generate_rate_confirmation(db, scope, load_id=booked_load["id"], now=NOW)

    file_name, pdf_bytes = rc.get_rate_confirmation_pdf(db, scope, record["id"])

    assert file_name == "RC-20260301-001.pdf"
    assert pdf_bytes.startswith(b"%PDF")
    assert (document_root / f"documents/org_{scope.organization_id}" / file_name).exists()
    assert crm.get_load(db, scope, booked_load["id"])["rate_confirmation_id"] == record["id"]


def test_two_party_signing_dispatches_load(db, scope, booked_load):
    record = rc.generate_rate_confirmation(db, scope, load_id=booked_load["id"], now=NOW)
    token = db.execute(
        text("SELECT signing_token FROM rate_confirmations WHERE id = :id"), {"id": record["id"]}
    ).scalar()

    broker = rc.sign_rate_confirmation(db, rate_confirmation_id=record["id"], signer_name="Dana Broker", scope=scope)
    assert broker["status"] == "partially_signed"
    assert broker["fully_signed"] is False

    with pytest.raises(ValueError, match="already been signed by the broker"):
        rc.sign_rate_confirmation(db, rate_confirmation_id=record["id"], signer_name="Dana Broker", scope=scope)

    carrier = rc.sign_rate_confirmation(
        db,
        rate_confirmation_id=record["id"],
        signer_name="Sam Carrier",
        signing_token=token,
        ip_address="203.0.113.9",
    )
    assert carrier["status"] == "signed"
    assert carrier["fully_signed"] is True
    assert carrier["carrier_email"] == "dispatch@blueline.test"
    assert Path(carrier["pdf_path"]).read_bytes().startswith(b"%PDF")

    assert crm.get_load(db, scope, booked_load["id"])["status"] == "dispatched"
    audit_count = db.execute(
        text("SELECT COUNT(*) FROM signature_audit_logs WHERE rate_confirmation_id = :id"), {"id": record["id"]}
    ).scalar()
    assert audit_count == 2


def test_wrong_token_looks_missing(db, scope, booked_load):
    record = rc.generate_rate_confirmation(db, scope, load_id=booked_load["id"], now=NOW)

    with pytest.raises(LookupError):
        rc.sign_rate_confirmation(db, rate_confirmation_id=record["id"], signer_name="Sam", signing_token="guess")


def test_signing_needs_token_or_session(db, scope, booked_load):
    record = rc.generate_rate_confirmation(db, scope, load_id=booked_load["id"], now=NOW)

    with pytest.raises(PermissionError):
        rc.sign_rate_confirmation(db, rate_confirmation_id=record["id"], signer_name="Sam")
    with pytest.raises(ValueError, match="Signer name"):
        rc.sign_rate_confirmation(db, rate_confirmation_id=record["id"], signer_name="  ", scope=scope)


def test_other_organization_cannot_read(db, scope, booked_load, make_org, make_user):
    record = rc.generate_rate_confirmation(db, scope, load_id=booked_load["id"], now=NOW)
    other_org = make_org("Rival Logistics")
    other = OrgScope(organization_id=other_org, user_id=make_user("x@rival.test", organization_id=other_org))

    with pytest.raises(LookupError):
        rc.get_rate_confirmation(db, other, record["id"])
    assert rc.list_rate_confirmations(db, other) == []
    assert len(rc.list_rate_confirmations(db, scope, load_id=booked_load["id"])) == 1
