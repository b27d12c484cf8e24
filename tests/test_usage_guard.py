from datetime import datetime, timedelta, timezone

import pytest

from app.services.usage_guard import (
    acquire_processing_lock,
    check_usage_before_processing,
    estimate_minutes_from_file_size,
    get_pending_minutes,
    get_usage_summary_with_guard,
    reclaim_stale_locks,
    refresh_processing_lock,
    release_processing_lock,
)


MB = 1024 * 1024


@pytest.mark.parametrize(
    "file_size, expected",
    [
        (None, 1),
        (0, 1),
        (1, 1),
        (MB, 1),
        (MB + 1, 2),
        (10 * MB, 10),
    ],
)
def test_estimate_minutes_from_file_size(file_size, expected):
    assert estimate_minutes_from_file_size(file_size) == expected


def test_allows_usage_within_plan(db, make_org):
    org_id = make_org(usage_minutes_current=10, usage_minutes_limit=60)

    result = check_usage_before_processing(db, organization_id=org_id, estimated_minutes=5)

    assert result.allowed is True
    assert result.reason is None
    assert result.projected_total == 15
    assert result.projected_overage == 0
    assert result.projected_charge == 0.0


def test_denies_when_projected_charge_exceeds_cap(db, make_org):
    org_id = make_org(usage_minutes_current=60, usage_minutes_limit=60)

    result = check_usage_before_processing(db, organization_id=org_id, estimated_minutes=101)

    assert result.allowed is False
    assert result.projected_overage == 101
    assert result.projected_charge == pytest.approx(20.20)
    assert "$20 overage cap" in result.reason


def test_exactly_at_cap_is_still_allowed(db, make_org):
    org_id = make_org(usage_minutes_current=60, usage_minutes_limit=60)

    result = check_usage_before_processing(db, organization_id=org_id, estimated_minutes=100)

    assert result.allowed is True
    assert result.projected_charge == pytest.approx(20.00)


def test_pending_jobs_count_toward_projection(db, make_org, make_call):
    org_id = make_org(usage_minutes_current=50, usage_minutes_limit=60)
    make_call(org_id, status="uploaded", duration_minutes=90)
    make_call(org_id, status="transcribing", file_size=3 * MB)
    make_call(org_id, status="completed", duration_minutes=500)

    assert get_pending_minutes(db, organization_id=org_id) == 93

    result = check_usage_before_processing(db, organization_id=org_id, estimated_minutes=30)
    # 50 + 93 + 30 = 173 -> 113 overage minutes
    assert result.pending_minutes == 93
    assert result.allowed is False


def test_exclude_call_id_skips_the_call_being_processed(db, make_org, make_call):
    org_id = make_org(usage_minutes_current=0, usage_minutes_limit=60)
    call_id = make_call(org_id, status="processing", duration_minutes=40)

    result = check_usage_before_processing(
        db, organization_id=org_id, estimated_minutes=40, exclude_call_id=call_id
    )

    assert result.pending_minutes == 0
    assert result.projected_total == 40


def test_unknown_organization_is_denied(db):
    result = check_usage_before_processing(db, organization_id=999, estimated_minutes=1)

    assert result.allowed is False
    assert result.reason == "Organization not found"


@pytest.mark.parametrize("current", [0, 30, 60, 120, 159])
@pytest.mark.parametrize("estimate", [1, 10, 40, 100, 250])
def test_allowed_never_exceeds_cap(db, make_org, current, estimate):
    org_id = make_org(usage_minutes_current=current, usage_minutes_limit=60)

    result = check_usage_before_processing(db, organization_id=org_id, estimated_minutes=estimate)

    if result.allowed:
        assert result.projected_charge <= 20.00
        assert result.projected_overage <= 100


def test_second_lock_is_refused_until_release(db, make_org, make_call):
    org_id = make_org()
    call_id = make_call(org_id)

    assert acquire_processing_lock(db, organization_id=org_id, call_id=call_id, estimated_minutes=5) is not None
    assert acquire_processing_lock(db, organization_id=org_id, call_id=call_id, estimated_minutes=5) is None

    release_processing_lock(db, call_id=call_id)

    assert acquire_processing_lock(db, organization_id=org_id, call_id=call_id, estimated_minutes=5) is not None


def test_expired_lock_is_reclaimed(db, make_org, make_call):
    org_id = make_org()
    call_id = make_call(org_id)
    started = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    assert acquire_processing_lock(
        db, organization_id=org_id, call_id=call_id, estimated_minutes=5, ttl_minutes=30, now=started
    )
    assert not acquire_processing_lock(
        db,
        organization_id=org_id,
        call_id=call_id,
        estimated_minutes=5,
        ttl_minutes=30,
        now=started + timedelta(minutes=10),
    )
    assert acquire_processing_lock(
        db,
        organization_id=org_id,
        call_id=call_id,
        estimated_minutes=5,
        ttl_minutes=30,
        now=started + timedelta(minutes=31),
    )


def test_reclaim_stale_locks_only_removes_expired(db, make_org, make_call):
    org_id = make_org()
    stale_call = make_call(org_id)
    live_call = make_call(org_id)
    started = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    acquire_processing_lock(db, organization_id=org_id, call_id=stale_call, estimated_minutes=5, ttl_minutes=5, now=started)
    acquire_processing_lock(db, organization_id=org_id, call_id=live_call, estimated_minutes=5, ttl_minutes=60, now=started)

    assert reclaim_stale_locks(db, now=started + timedelta(minutes=10)) == 1
    assert not acquire_processing_lock(
        db, organization_id=org_id, call_id=live_call, estimated_minutes=5, now=started + timedelta(minutes=10)
    )


def test_live_lock_on_extracting_call_counts_as_pending(db, make_org, make_call):
    org_id = make_org()
    call_id = make_call(org_id, status="extracting", duration_minutes=12)

    assert get_pending_minutes(db, organization_id=org_id) == 0

    acquire_processing_lock(db, organization_id=org_id, call_id=call_id, estimated_minutes=12)

    assert get_pending_minutes(db, organization_id=org_id) == 12


def test_expired_holder_cannot_release_the_reclaimed_lock(db, make_org, make_call):
    org_id = make_org()
    call_id = make_call(org_id)
    started = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    first = acquire_processing_lock(
        db, organization_id=org_id, call_id=call_id, estimated_minutes=5, ttl_minutes=30, now=started
    )
    second = acquire_processing_lock(
        db,
        organization_id=org_id,
        call_id=call_id,
        estimated_minutes=5,
        ttl_minutes=30,
        now=started + timedelta(minutes=31),
    )
    assert first is not None
    assert second is not None and second != first

    # The first worker finishes late and releases what it believes is its lock.
    assert release_processing_lock(db, call_id=call_id, lock_id=first) is False

    assert (
        acquire_processing_lock(
            db,
            organization_id=org_id,
            call_id=call_id,
            estimated_minutes=5,
            ttl_minutes=30,
            now=started + timedelta(minutes=32),
        )
        is None
    )
    assert release_processing_lock(db, call_id=call_id, lock_id=second) is True


def test_refreshed_lock_outlives_its_original_ttl(db, make_org, make_call):
    org_id = make_org()
    call_id = make_call(org_id)
    started = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    lock_id = acquire_processing_lock(
        db, organization_id=org_id, call_id=call_id, estimated_minutes=5, ttl_minutes=30, now=started
    )
    assert refresh_processing_lock(db, lock_id=lock_id, ttl_minutes=30, now=started + timedelta(minutes=25))

    assert reclaim_stale_locks(db, now=started + timedelta(minutes=40)) == 0
    assert (
        acquire_processing_lock(
            db, organization_id=org_id, call_id=call_id, estimated_minutes=5, now=started + timedelta(minutes=40)
        )
        is None
    )
    assert refresh_processing_lock(db, lock_id=lock_id + 100) is False


def test_usage_summary_reports_room_left_under_the_cap(db, make_org):
    org_id = make_org(usage_minutes_current=110, usage_minutes_limit=60)

    summary = get_usage_summary_with_guard(db, organization_id=org_id)

    assert summary["overage_minutes"] == 50
    assert summary["overage_charge"] == 10.0
    assert summary["remaining_before_cap"] == 10.0
    assert summary["remaining_minutes_before_cap"] == 50
    assert summary["percent_of_cap"] == 50.0
    assert summary["is_at_cap"] is False


def test_usage_summary_at_cap(db, make_org):
    org_id = make_org(usage_minutes_current=160, usage_minutes_limit=60)

    summary = get_usage_summary_with_guard(db, organization_id=org_id)

    assert summary["is_at_cap"] is True
    assert summary["remaining_minutes_before_cap"] == 0
    assert summary["percent_of_cap"] == 100.0
    assert get_usage_summary_with_guard(db, organization_id=org_id + 999) is None
