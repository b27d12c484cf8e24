from datetime import datetime, timedelta, timezone

from sqlalchemy import text

from app.services.call_cleanup import cleanup_stuck_calls
from app.services.usage_guard import acquire_processing_lock


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _age(db, call_id, minutes):
    db.execute(
        text("UPDATE calls SET updated_at = :updated_at WHERE id = :id"),
        {"updated_at": NOW - timedelta(minutes=minutes), "id": call_id},
    )
    db.commit()


def test_stuck_calls_are_failed_and_unlocked(db, make_org, make_user, make_call):
    org_id = make_org()
    user_id = make_user("dispatch@acme.test", organization_id=org_id)
    stuck = make_call(org_id, status="transcribing", user_id=user_id, file_name="broker.mp3")
    fresh = make_call(org_id, status="extracting", user_id=user_id)
    done = make_call(org_id, status="completed", user_id=user_id)
    _age(db, stuck, 45)
    _age(db, fresh, 5)
    _age(db, done, 300)
    assert acquire_processing_lock(db, organization_id=org_id, call_id=stuck, estimated_minutes=4, now=NOW - timedelta(minutes=45))

    result = cleanup_stuck_calls(db, threshold_minutes=30, now=NOW)

    assert result.success is True
    assert result.cleaned == 1
    assert result.details[0]["call_id"] == stuck
    assert result.details[0]["stuck_minutes"] == 45

    rows = {row.id: row for row in db.execute(text("SELECT id, status, processing_error FROM calls")).all()}
    assert rows[stuck].status == "failed"
    assert "Stuck for 45 minutes" in rows[stuck].processing_error
    assert rows[fresh].status == "extracting"
    assert rows[done].status == "completed"

    assert db.execute(text("SELECT COUNT(*) FROM processing_locks WHERE call_id = :id"), {"id": stuck}).scalar() == 0
    notification = db.execute(text("SELECT user_id, notification_type, link FROM notifications")).first()
    assert notification.user_id == user_id
    assert notification.notification_type == "call_failed"
    assert notification.link == f"/calls/{stuck}"


def test_cleanup_run_is_logged(db, make_org):
    make_org()

    result = cleanup_stuck_calls(db, threshold_minutes=30, now=NOW)

    assert result.to_dict()["cleaned"] == 0
    log = db.execute(text("SELECT log_type, log_key FROM system_logs")).first()
    assert log.log_type == "scheduled_cleanup"
    assert log.log_key == "2026-03-01T12:00"
