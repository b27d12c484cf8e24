from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import text

from app.services import overage_billing
from app.services.overage_billing import (
    OverageCheckoutError,
    calculate_overage_charge,
    can_upgrade_plan,
    check_overage_debt,
    create_overage_checkout,
    create_overage_invoice,
    get_overage_payment_options,
    handle_overage_payment,
    invoice_due_overages,
    reset_overage_minutes,
)


NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def checkout_calls(monkeypatch):
    calls = []

    def fake_checkout_session(**kwargs):
        calls.append(kwargs)
        return {"checkout_url": f"https://checkout.stripe.test/{kwargs['invoice_id']}", "session_id": "cs_test_1"}

    monkeypatch.setattr(overage_billing, "create_overage_checkout_session", fake_checkout_session)
    monkeypatch.setattr(overage_billing, "send_overage_invoice_email", lambda **kwargs: True)
    return calls


@pytest.mark.parametrize("minutes, charge", [(0, "0.00"), (1, "0.20"), (15, "3.00"), (100, "20.00"), (250, "20.00")])
def test_overage_charge_is_capped(minutes, charge):
    assert calculate_overage_charge(minutes) == Decimal(charge)


def test_payment_options_dedupe_equal_amounts():
    options = get_overage_payment_options(20.00)

    assert options["exact_amount"] == 20.00
    assert [option["amount"] for option in options["payment_options"]] == [20.00]


def test_payment_options_round_up_to_five():
    options = get_overage_payment_options(3.40)

    assert options["suggested_amount"] == 5.00
    assert [option["amount"] for option in options["payment_options"]] == [3.40, 5.00, 20.00]


def test_invoice_creates_debt_and_blocks_upgrade(db, make_org, make_user, checkout_calls):
    org_id = make_org(usage_minutes_current=75, usage_minutes_limit=60, usage_reset_date=date(2026, 3, 1))
    make_user("owner@acme.test", organization_id=org_id, role="owner")

    invoice = create_overage_invoice(db, organization_id=org_id, now=NOW)
    db.commit()

    assert invoice["created"] is True
    assert invoice["amount"] == pytest.approx(3.00)
    assert invoice["minutes"] == 15
    assert invoice["status"] == "sent"
    assert invoice["checkout_url"].endswith(str(invoice["invoice_id"]))
    assert checkout_calls[0]["customer_email"] == "owner@acme.test"

    debt = check_overage_debt(db, organization_id=org_id, now=NOW)
    assert debt.has_debt is True
    assert debt.must_pay_first is True
    assert debt.amount == pytest.approx(3.00)

    upgrade = can_upgrade_plan(db, organization_id=org_id)
    assert upgrade["allowed"] is False
    assert "$3.00" in upgrade["reason"]


def test_invoice_is_idempotent_per_period(db, make_org, checkout_calls):
    org_id = make_org(usage_minutes_current=75, usage_minutes_limit=60, usage_reset_date=date(2026, 3, 1))

    first = create_overage_invoice(db, organization_id=org_id, now=NOW)
    second = create_overage_invoice(db, organization_id=org_id, now=NOW)

    assert second["created"] is False
    assert second["invoice_id"] == first["invoice_id"]
    assert len(checkout_calls) == 1


def test_no_invoice_without_overage(db, make_org, checkout_calls):
    org_id = make_org(usage_minutes_current=30, usage_minutes_limit=60)

    assert create_overage_invoice(db, organization_id=org_id, now=NOW) is None


def test_checkout_failure_falls_back_to_pay_page(db, make_org, monkeypatch):
    def broken_checkout(**kwargs):
        raise RuntimeError("stripe down")

    monkeypatch.setattr(overage_billing, "create_overage_checkout_session", broken_checkout)
    monkeypatch.setattr(overage_billing, "send_overage_invoice_email", lambda **kwargs: False)
    org_id = make_org(usage_minutes_current=70, usage_minutes_limit=60, usage_reset_date=date(2026, 3, 1))

    invoice = create_overage_invoice(db, organization_id=org_id, now=NOW)

    assert "/pay-overage?" in invoice["checkout_url"]
    assert "amount=2.00" in invoice["checkout_url"]


def test_checkout_rejects_mismatched_amount(db, make_org, checkout_calls):
    org_id = make_org(usage_minutes_current=75, usage_minutes_limit=60)

    with pytest.raises(OverageCheckoutError) as excinfo:
        create_overage_checkout(db, organization_id=org_id, amount=5.00)

    assert excinfo.value.details == {"requested": 5.00, "actual": 3.00}


@pytest.mark.parametrize("amount", [0, -1, 20.01])
def test_checkout_rejects_out_of_range_amount(db, make_org, amount):
    org_id = make_org(usage_minutes_current=75, usage_minutes_limit=60)

    with pytest.raises(OverageCheckoutError):
        create_overage_checkout(db, organization_id=org_id, amount=amount)


def test_payment_clears_debt(db, make_org, checkout_calls):
    org_id = make_org(usage_minutes_current=75, usage_minutes_limit=60, usage_reset_date=date(2026, 3, 1))
    invoice = create_overage_invoice(db, organization_id=org_id, now=NOW)

    assert handle_overage_payment(db, invoice_id=invoice["invoice_id"], transaction_id="pi_123") is True
    assert handle_overage_payment(db, invoice_id=invoice["invoice_id"], transaction_id="pi_123") is True
    db.commit()

    debt = check_overage_debt(db, organization_id=org_id)
    assert debt.has_debt is False
    assert can_upgrade_plan(db, organization_id=org_id) == {"allowed": True}

    transactions = db.execute(
        text("SELECT COUNT(*) FROM overage_transactions WHERE organization_id = :id AND transaction_type = 'invoice_payment'"),
        {"id": org_id},
    ).scalar_one()
    assert transactions == 1


def test_payment_for_unknown_invoice(db):
    assert handle_overage_payment(db, invoice_id=12345, transaction_id=None) is False


def test_due_overages_are_invoiced_before_reset(db, make_org, checkout_calls):
    over = make_org("Over", usage_minutes_current=90, usage_minutes_limit=60, usage_reset_date=date(2026, 3, 1))
    make_org("Under", usage_minutes_current=20, usage_minutes_limit=60, usage_reset_date=date(2026, 3, 1))
    make_org("NotDue", usage_minutes_current=90, usage_minutes_limit=60, usage_reset_date=date(2026, 3, 15))

    invoices = invoice_due_overages(db, today=date(2026, 3, 1), now=NOW)

    assert [invoice["organization_id"] for invoice in invoices] == [over]
    assert invoices[0]["amount"] == pytest.approx(6.00)


def test_renewal_reset_keeps_unpaid_debt(db, make_org, checkout_calls):
    org_id = make_org(usage_minutes_current=75, usage_minutes_limit=60, usage_reset_date=date(2026, 3, 1))
    invoice = create_overage_invoice(db, organization_id=org_id, now=NOW)

    assert reset_overage_minutes(db, organization_id=org_id) is False
    assert check_overage_debt(db, organization_id=org_id, now=NOW).has_debt is True

    handle_overage_payment(db, invoice_id=invoice["invoice_id"], transaction_id="pi_123")
    assert reset_overage_minutes(db, organization_id=org_id) is True
    db.commit()

    org = db.execute(
        text("SELECT can_upgrade, overage_payment_status FROM organizations WHERE id = :id"), {"id": org_id}
    ).first()
    assert bool(org.can_upgrade) is True
    assert org.overage_payment_status == "none"
    resets = db.execute(
        text("SELECT COUNT(*) FROM overage_transactions WHERE organization_id = :id AND transaction_type = 'reset'"),
        {"id": org_id},
    ).scalar_one()
    assert resets == 1
