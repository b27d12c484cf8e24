from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.core.config import settings as core_settings
from app.services.notifications import create_notification
from app.services.usage_guard import reclaim_stale_locks, release_processing_lock
from app.utils.dates import to_datetime, utc_now


logger = logging.getLogger(__name__)

STUCK_STATUSES = ("processing", "transcribing", "extracting")


@dataclass
class CleanupResult:
    success: bool = True
    cleaned: int = 0
    failed: int = 0
    reclaimed_locks: int = 0
    details: list[dict] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def find_stuck_calls(db: Session, *, threshold_minutes: int, now: datetime) -> list:
    cutoff = now - timedelta(minutes=threshold_minutes)
    return db.execute(
        text(
            """
            SELECT id, organization_id, user_id, file_name, status, updated_at, processing_attempts
            FROM calls
            WHERE status IN ('processing', 'transcribing', 'extracting')
              AND updated_at < :cutoff
            ORDER BY updated_at
            """
        ),
        {"cutoff": cutoff},
    ).all()


def cleanup_stuck_calls(
    db: Session,
    *,
    threshold_minutes: int | None = None,
    now: datetime | None = None,
) -> CleanupResult:
    now = now or utc_now()
    threshold = int(threshold_minutes or core_settings.STUCK_CALL_THRESHOLD_MINUTES)
    result = CleanupResult()

    for call in find_stuck_calls(db, threshold_minutes=threshold, now=now):
        updated_at = to_datetime(call.updated_at) or now
        stuck_minutes = int((now - updated_at).total_seconds() // 60)
        try:
            db.execute(
                text(
                    """
                    UPDATE calls
                    SET status = 'failed',
                        processing_error = :error,
                        processing_attempts = COALESCE(processing_attempts, 0) + 1,
                        updated_at = :now
                    WHERE id = :call_id
                    """
                ),
                {
                    "error": f"Auto-cleanup: Stuck for {stuck_minutes} minutes (threshold: {threshold} min)",
                    "now": now,
                    "call_id": call.id,
                },
            )
            release_processing_lock(db, call_id=call.id)
            if call.user_id:
                create_notification(
                    db,
                    notification_type="call_failed",
                    title="Call processing failed",
                    message=(
                        f'Your call "{call.file_name or call.id}" could not be processed and has been '
                        "marked as failed. Please try uploading again."
                    ),
                    user_id=call.user_id,
                    organization_id=call.organization_id,
                    link=f"/calls/{call.id}",
                )
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.exception("call_cleanup: failed to clean call=%s", call.id)
            result.failed += 1
            result.errors.append(f"call {call.id}: {exc}")
            continue

        result.cleaned += 1
        result.details.append(
            {
                "call_id": call.id,
                "organization_id": call.organization_id,
                "previous_status": call.status,
                "stuck_minutes": stuck_minutes,
            }
        )

    result.reclaimed_locks = reclaim_stale_locks(db, now=now)
    result.success = result.failed == 0

    db.execute(
        text(
            """
            INSERT INTO system_logs (log_type, log_key, message, details, created_at)
            VALUES ('scheduled_cleanup', :log_key, :message, :details, :now)
            """
        ),
        {
            "log_key": now.strftime("%Y-%m-%dT%H:%M"),
            "message": f"Cleaned {result.cleaned} stuck calls",
            "details": json.dumps(
                {
                    "cleaned": result.cleaned,
                    "failed": result.failed,
                    "reclaimed_locks": result.reclaimed_locks,
                    "threshold_minutes": threshold,
                }
            ),
            "now": now,
        },
    )
    db.commit()

    if result.cleaned or result.failed:
        logger.warning(
            "call_cleanup: cleaned=%s failed=%s reclaimed_locks=%s threshold=%s",
            result.cleaned,
            result.failed,
            result.reclaimed_locks,
            threshold,
        )
    return result
