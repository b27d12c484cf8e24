from datetime import date, datetime, timezone

import pytest
from sqlalchemy import text

from app.services.partner_commissions import (
    apply_as_partner,
    calculate_commission,
    get_partner_earnings,
    next_payout_date,
    process_monthly_commissions,
    process_payouts,
    register_partner_referral,
    reverse_commission,
    review_partner_application,
)


MARCH_1 = datetime(2026, 3, 1, 6, 0, tzinfo=timezone.utc)
APRIL_1 = datetime(2026, 4, 1, 6, 0, tzinfo=timezone.utc)


@pytest.fixture
def partner(db, make_org):
    applied = apply_as_partner(db, user_id=None, company_name="Freight Friends", email="Partner@Friends.test")
    review_partner_application(db, partner_id=applied["partner_id"], approve=True)
    org_id = make_org("Referred Co", plan="starter")
    referral_id = register_partner_referral(
        db, partner_id=applied["partner_id"], organization_id=org_id, subscription_amount_cents=50000
    )
    db.commit()
    return {"partner_id": applied["partner_id"], "referral_id": referral_id, "organization_id": org_id}


def _commissions(db, partner_id):
    return db.execute(
        text(
            """
            SELECT id, amount_cents, month, status, commission_type, payout_id
            FROM partner_commissions WHERE partner_id = :partner_id ORDER BY id
            """
        ),
        {"partner_id": partner_id},
    ).all()


@pytest.mark.parametrize(
    "amount, rate, months, expected",
    [
        (10000, "0.25", 0, 2500),
        (10000, "0.25", 11, 2500),
        (10000, "0.25", 12, 0),
        (10000, "0.30", 3, 3000),
        (9999, "0.25", 0, 2500),
        (0, "0.25", 0, 0),
    ],
)
def test_calculate_commission(amount, rate, months, expected):
    assert calculate_commission(amount, rate, months) == expected


def test_next_payout_date_is_the_fifteenth_of_next_month():
    assert next_payout_date(date(2026, 1, 31)) == date(2026, 2, 15)
    assert next_payout_date(date(2026, 12, 3)) == date(2027, 1, 15)


def test_application_is_unique_per_email(db):
    apply_as_partner(db, user_id=None, company_name="Once", email="dup@partner.test")

    with pytest.raises(ValueError):
        apply_as_partner(db, user_id=None, company_name="Twice", email="DUP@partner.test")


def test_review_only_once(db):
    applied = apply_as_partner(db, user_id=None, company_name="Once", email="once@partner.test")
    review_partner_application(db, partner_id=applied["partner_id"], approve=False)

    with pytest.raises(ValueError):
        review_partner_application(db, partner_id=applied["partner_id"], approve=True)
    with pytest.raises(LookupError):
        review_partner_application(db, partner_id=9999, approve=True)


def test_monthly_commission_is_created_once_per_month(db, partner):
    first = process_monthly_commissions(db, today=MARCH_1.date(), now=MARCH_1)
    rerun = process_monthly_commissions(db, today=MARCH_1.date(), now=MARCH_1)

    assert first["month"] == "2026-02"
    assert first["created"] == 1
    assert rerun["created"] == 0
    assert rerun["skipped"] == 1

    rows = _commissions(db, partner["partner_id"])
    assert [(row.amount_cents, row.month, row.status) for row in rows] == [(12500, "2026-02", "pending")]


def test_no_commission_after_twelve_months(db, partner):
    db.execute(
        text("UPDATE partner_referrals SET months_active = 12 WHERE id = :id"),
        {"id": partner["referral_id"]},
    )
    db.commit()

    result = process_monthly_commissions(db, today=MARCH_1.date(), now=MARCH_1)

    assert result["created"] == 0
    assert _commissions(db, partner["partner_id"]) == []


def test_holding_period_then_payout(db, partner):
    process_monthly_commissions(db, today=MARCH_1.date(), now=MARCH_1)

    april = process_monthly_commissions(db, today=APRIL_1.date(), now=APRIL_1)

    assert april["created"] == 1
    assert [row["month"] for row in april["approved"]] == ["2026-02"]
    assert april["approved"][0]["email"] == "partner@friends.test"

    payouts = process_payouts(db, today=APRIL_1.date())

    assert payouts == [{"payout_id": payouts[0]["payout_id"], "partner_id": partner["partner_id"], "amount_cents": 12500}]
    statuses = {row.month: row.status for row in _commissions(db, partner["partner_id"])}
    assert statuses == {"2026-02": "paid", "2026-03": "pending"}


def test_payout_waits_for_minimum(db, make_org):
    applied = apply_as_partner(db, user_id=None, company_name="Small", email="small@partner.test")
    review_partner_application(db, partner_id=applied["partner_id"], approve=True)
    org_id = make_org("Tiny Co")
    register_partner_referral(db, partner_id=applied["partner_id"], organization_id=org_id, subscription_amount_cents=4900)
    db.commit()

    process_monthly_commissions(db, today=MARCH_1.date(), now=MARCH_1)
    process_monthly_commissions(db, today=APRIL_1.date(), now=APRIL_1)

    assert process_payouts(db, today=APRIL_1.date()) == []


def test_reversing_pending_and_paid_commissions(db, partner):
    process_monthly_commissions(db, today=MARCH_1.date(), now=MARCH_1)
    process_monthly_commissions(db, today=APRIL_1.date(), now=APRIL_1)
    process_payouts(db, today=APRIL_1.date())
    paid, pending = _commissions(db, partner["partner_id"])

    reversed_pending = reverse_commission(db, commission_id=pending.id, reason="refund")
    adjusted = reverse_commission(db, commission_id=paid.id, reason="chargeback")
    db.commit()

    assert reversed_pending == {"commission_id": pending.id, "status": "reversed"}
    assert adjusted["status"] == "adjusted"
    adjustment = [row for row in _commissions(db, partner["partner_id"]) if row.commission_type == "adjustment"]
    assert adjustment[0].amount_cents == -12500

    with pytest.raises(ValueError):
        reverse_commission(db, commission_id=pending.id, reason="again")
    with pytest.raises(LookupError):
        reverse_commission(db, commission_id=99999, reason="missing")


def test_earnings_summary(db, partner):
    process_monthly_commissions(db, today=MARCH_1.date(), now=MARCH_1)

    earnings = get_partner_earnings(db, partner_id=partner["partner_id"], today=date(2026, 3, 10))

    assert earnings["total_cents"] == 12500
    assert earnings["pending_cents"] == 12500
    assert earnings["this_month_cents"] == 12500
    assert earnings["last_month_cents"] == 12500
    assert earnings["next_payout_date"] == "2026-04-15"
