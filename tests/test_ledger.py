from datetime import date

import pytest
from sqlalchemy import text

from app.services.ledger import (
    get_plan_limit,
    get_usage_overview,
    minutes_from_seconds,
    record_call_usage,
    reset_monthly_usage,
    usage_warning_level,
)
from app.utils.dates import to_date


@pytest.mark.parametrize(
    "plan, expected",
    [
        ("free", 30),
        ("solo", 500),
        ("starter", 1500),
        ("professional", 4000),
        ("enterprise", 15000),
        ("custom", 999999),
        ("STARTER", 1500),
        (None, 30),
        ("unknown", 30),
    ],
)
def test_plan_limits(plan, expected):
    assert get_plan_limit(plan) == expected


@pytest.mark.parametrize("seconds, minutes", [(0, 0), (None, 0), (1, 1), (60, 1), (61, 2), (599.5, 10)])
def test_minutes_round_up(seconds, minutes):
    assert minutes_from_seconds(seconds) == minutes


@pytest.mark.parametrize(
    "percent, level",
    [(10, None), (70, "low"), (85, "medium"), (90, "high"), (100, "exceeded"), (150, "exceeded")],
)
def test_usage_warning_levels(percent, level):
    assert usage_warning_level(percent) == level


def _usage(db, org_id):
    return db.execute(
        text("SELECT usage_minutes_current, usage_reset_date FROM organizations WHERE id = :id"),
        {"id": org_id},
    ).first()


def test_record_call_usage_is_idempotent_per_call(db, make_org, make_call):
    org_id = make_org(usage_minutes_current=10, usage_minutes_limit=60)
    call_id = make_call(org_id, status="completed")

    first = record_call_usage(db, organization_id=org_id, call_id=call_id, minutes=7)
    second = record_call_usage(db, organization_id=org_id, call_id=call_id, minutes=7)
    db.commit()

    assert first["created"] is True
    assert first["usage_minutes_current"] == 17
    assert second["created"] is False
    assert second["usage_log_id"] == first["usage_log_id"]
    assert int(_usage(db, org_id).usage_minutes_current) == 17


def test_record_call_usage_flags_overage(db, make_org, make_call):
    org_id = make_org(usage_minutes_current=55, usage_minutes_limit=60)
    call_id = make_call(org_id, status="completed")

    result = record_call_usage(db, organization_id=org_id, call_id=call_id, minutes=10)

    assert result["is_overage"] is True


def test_record_call_usage_unknown_org(db):
    with pytest.raises(ValueError):
        record_call_usage(db, organization_id=404, call_id=1, minutes=1)


def test_usage_overview_reports_overage(db, make_org):
    org_id = make_org(usage_minutes_current=75, usage_minutes_limit=60, usage_reset_date=date(2026, 4, 1))

    overview = get_usage_overview(db, organization_id=org_id)

    assert overview["minutes_used"] == 75
    assert overview["minutes_remaining"] == 0
    assert overview["overage_minutes"] == 15
    assert overview["overage_charge"] == pytest.approx(3.00)
    assert overview["status"] == "overage"
    assert overview["warning_level"] == "exceeded"
    assert overview["reset_date"] == "2026-04-01"


def test_usage_overview_caps_overage_charge(db, make_org):
    org_id = make_org(usage_minutes_current=500, usage_minutes_limit=60)

    assert get_usage_overview(db, organization_id=org_id)["overage_charge"] == pytest.approx(20.00)


def test_monthly_reset_zeroes_due_organizations_once(db, make_org):
    due_org = make_org("Due", usage_minutes_current=45, usage_reset_date=date(2026, 3, 1))
    later_org = make_org("Later", usage_minutes_current=12, usage_reset_date=date(2026, 3, 20))

    result = reset_monthly_usage(db, today=date(2026, 3, 2))

    assert result["skipped"] is False
    assert result["reset_count"] == 1
    assert result["month"] == "2026-03"
    assert int(_usage(db, due_org).usage_minutes_current) == 0
    assert to_date(_usage(db, due_org).usage_reset_date) == date(2026, 4, 1)
    assert int(_usage(db, later_org).usage_minutes_current) == 12

    rerun = reset_monthly_usage(db, today=date(2026, 3, 3))

    assert rerun["skipped"] is True
    assert rerun["reason"] == "already_reset"


def test_monthly_reset_skips_after_day_five(db, make_org):
    org_id = make_org(usage_minutes_current=45, usage_reset_date=date(2026, 3, 1))

    result = reset_monthly_usage(db, today=date(2026, 3, 6))

    assert result["skipped"] is True
    assert result["reason"] == "outside_reset_window"
    assert int(_usage(db, org_id).usage_minutes_current) == 45


def test_monthly_reset_moves_stale_reset_date_past_today(db, make_org):
    org_id = make_org(usage_minutes_current=5, usage_reset_date=date(2025, 12, 1))

    reset_monthly_usage(db, today=date(2026, 3, 1))

    assert to_date(_usage(db, org_id).usage_reset_date) == date(2026, 4, 1)
