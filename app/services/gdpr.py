"""
Account deletion with a grace period, and personal data export.

A deletion request waits GRACE_PERIOD_DAYS before the cron job processes it; the user can
cancel until then. Processing removes the user's calls and their derived data, memberships,
templates and consents, cancels subscriptions, and anonymizes (rather than deletes) audit logs.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.services.notifications import record_audit_log
from app.services.recording_storage import delete_local_file
from app.utils.dates import to_datetime, utc_now


logger = logging.getLogger(__name__)

GRACE_PERIOD_DAYS = 30
ANONYMIZED_MARKER = "deleted_user"
REDACTED = "redacted"


def _load_json(value):
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return {}
    return value or {}


def has_pending_deletion(db: Session, *, user_id: int) -> bool:
    row = db.execute(
        text(
            """
            SELECT id FROM data_deletion_requests
            WHERE user_id = :user_id AND status = 'pending'
            LIMIT 1
            """
        ),
        {"user_id": user_id},
    ).first()
    return row is not None


def request_data_deletion(
    db: Session,
    *,
    user_id: int,
    reason: str | None = None,
    now: datetime | None = None,
) -> dict:
    now = now or utc_now()
    user = db.execute(text("SELECT id, email FROM users WHERE id = :id"), {"id": user_id}).first()
    if not user:
        raise LookupError("User not found")
    if has_pending_deletion(db, user_id=user_id):
        raise ValueError("A deletion request is already pending")

    scheduled_for = now + timedelta(days=GRACE_PERIOD_DAYS)
    row = db.execute(
        text(
            """
            INSERT INTO data_deletion_requests (user_id, email, reason, status, requested_at, scheduled_for)
            VALUES (:user_id, :email, :reason, 'pending', :now, :scheduled_for)
            RETURNING id
            """
        ),
        {"user_id": user_id, "email": user.email, "reason": reason, "now": now, "scheduled_for": scheduled_for},
    ).first()
    record_audit_log(
        db,
        action="data_deletion_requested",
        user_id=user_id,
        resource_type="data_deletion_request",
        resource_id=row.id,
        details={"scheduled_for": scheduled_for.isoformat()},
    )
    logger.info("gdpr: deletion requested user=%s scheduled_for=%s", user_id, scheduled_for)
    return {"id": int(row.id), "status": "pending", "scheduled_for": scheduled_for}


def cancel_data_deletion(
    db: Session,
    *,
    user_id: int,
    request_id: int,
    now: datetime | None = None,
) -> dict:
    now = now or utc_now()
    request = db.execute(
        text(
            """
            SELECT id, status, scheduled_for FROM data_deletion_requests
            WHERE id = :id AND user_id = :user_id
            """
        ),
        {"id": request_id, "user_id": user_id},
    ).first()
    if not request:
        raise LookupError("Deletion request not found")
    if request.status != "pending":
        raise ValueError("Deletion has already been processed")
    if now >= to_datetime(request.scheduled_for):
        raise ValueError("Grace period has expired")

    db.execute(
        text(
            """
            UPDATE data_deletion_requests
            SET status = 'cancelled', cancelled_at = :now
            WHERE id = :id
            """
        ),
        {"now": now, "id": request_id},
    )
    record_audit_log(
        db,
        action="data_deletion_cancelled",
        user_id=user_id,
        resource_type="data_deletion_request",
        resource_id=request_id,
    )
    return {"id": request_id, "status": "cancelled"}


def get_pending_deletions(db: Session) -> list[dict]:
    rows = db.execute(
        text(
            """
            SELECT id, user_id, email, status, requested_at, scheduled_for
            FROM data_deletion_requests
            WHERE status = 'pending'
            ORDER BY scheduled_for ASC
            """
        )
    ).mappings().all()
    return [dict(row) for row in rows]


def _delete_user_data(db: Session, *, user_id: int, now: datetime) -> dict:
    summary = {
        "calls": 0,
        "transcripts": 0,
        "extractions": 0,
        "recordings": 0,
        "templates": 0,
        "memberships": 0,
        "subscriptions_cancelled": 0,
        "consents": 0,
        "audit_logs_anonymized": 0,
    }

    calls = db.execute(
        text("SELECT id, storage_path FROM calls WHERE user_id = :user_id"),
        {"user_id": user_id},
    ).all()
    call_ids = [int(call.id) for call in calls]
    for call in calls:
        try:
            if delete_local_file(call.storage_path):
                summary["recordings"] += 1
        except OSError:
            logger.warning("gdpr: could not remove recording %s", call.storage_path, exc_info=True)

    for call_id in call_ids:
        summary["transcripts"] += db.execute(
            text("DELETE FROM transcripts WHERE call_id = :call_id"), {"call_id": call_id}
        ).rowcount
        summary["extractions"] += db.execute(
            text("DELETE FROM call_fields WHERE call_id = :call_id"), {"call_id": call_id}
        ).rowcount
        db.execute(text("DELETE FROM processing_locks WHERE call_id = :call_id"), {"call_id": call_id})
        db.execute(text("UPDATE twilio_calls SET call_id = NULL WHERE call_id = :call_id"), {"call_id": call_id})
    summary["calls"] = db.execute(text("DELETE FROM calls WHERE user_id = :user_id"), {"user_id": user_id}).rowcount

    summary["templates"] = db.execute(
        text("DELETE FROM extraction_templates WHERE user_id = :user_id"), {"user_id": user_id}
    ).rowcount
    summary["memberships"] = db.execute(
        text("DELETE FROM user_organizations WHERE user_id = :user_id"), {"user_id": user_id}
    ).rowcount
    summary["subscriptions_cancelled"] = db.execute(
        text(
            """
            UPDATE subscriptions
            SET status = 'cancelled', cancelled_at = :now
            WHERE user_id = :user_id AND status <> 'cancelled'
            """
        ),
        {"user_id": user_id, "now": now},
    ).rowcount
    summary["consents"] = db.execute(
        text("DELETE FROM consents WHERE user_id = :user_id"), {"user_id": user_id}
    ).rowcount

    audit_rows = db.execute(
        text("SELECT id, details FROM audit_logs WHERE user_id = :user_id"),
        {"user_id": user_id},
    ).all()
    for audit in audit_rows:
        details = _load_json(audit.details)
        details["anonymized"] = ANONYMIZED_MARKER
        db.execute(
            text(
                """
                UPDATE audit_logs
                SET user_id = NULL, ip_address = :redacted, user_agent = :redacted, details = :details
                WHERE id = :id
                """
            ),
            {"redacted": REDACTED, "details": json.dumps(details, default=str), "id": audit.id},
        )
    summary["audit_logs_anonymized"] = len(audit_rows)

    db.execute(text("DELETE FROM referral_rewards WHERE user_id = :user_id"), {"user_id": user_id})
    db.execute(text("DELETE FROM referral_statistics WHERE user_id = :user_id"), {"user_id": user_id})
    db.execute(text("UPDATE referrals SET referred_user_id = NULL WHERE referred_user_id = :user_id"), {"user_id": user_id})
    db.execute(text("DELETE FROM referrals WHERE referrer_user_id = :user_id"), {"user_id": user_id})
    db.execute(text("DELETE FROM notifications WHERE user_id = :user_id"), {"user_id": user_id})
    db.execute(text("DELETE FROM users WHERE id = :user_id"), {"user_id": user_id})
    return summary


def process_data_deletion(db: Session, *, request_id: int, now: datetime | None = None) -> dict:
    """Commits its own work. Failures mark the request failed and re-raise."""
    now = now or utc_now()
    request = db.execute(
        text("SELECT id, user_id, status, scheduled_for FROM data_deletion_requests WHERE id = :id"),
        {"id": request_id},
    ).first()
    if not request:
        raise LookupError("Deletion request not found")
    if request.status != "pending":
        raise ValueError("Deletion request is not pending")
    if now < to_datetime(request.scheduled_for):
        raise ValueError("Grace period has not yet passed")

    db.execute(
        text("UPDATE data_deletion_requests SET status = 'processing' WHERE id = :id"),
        {"id": request_id},
    )
    db.commit()

    user_id = int(request.user_id)
    try:
        summary = _delete_user_data(db, user_id=user_id, now=now)
        db.execute(
            text(
                """
                UPDATE data_deletion_requests
                SET status = 'completed', processed_at = :now, deletion_summary = :summary
                WHERE id = :id
                """
            ),
            {"now": now, "summary": json.dumps(summary), "id": request_id},
        )
        record_audit_log(
            db,
            action="data_deletion_completed",
            resource_type="data_deletion_request",
            resource_id=request_id,
            details={"deleted_summary": summary},
        )
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.exception("gdpr: deletion failed request=%s user=%s", request_id, user_id)
        db.execute(
            text(
                """
                UPDATE data_deletion_requests
                SET status = 'failed', error_message = :error
                WHERE id = :id
                """
            ),
            {"error": str(exc)[:2000], "id": request_id},
        )
        db.commit()
        raise

    logger.info("gdpr: deletion completed request=%s summary=%s", request_id, summary)
    return summary


def process_due_deletions(db: Session, *, now: datetime | None = None) -> dict:
    now = now or utc_now()
    due = db.execute(
        text(
            """
            SELECT id FROM data_deletion_requests
            WHERE status = 'pending' AND scheduled_for <= :now
            ORDER BY scheduled_for ASC
            """
        ),
        {"now": now},
    ).all()

    processed, failed = [], []
    for row in due:
        try:
            process_data_deletion(db, request_id=int(row.id), now=now)
            processed.append(int(row.id))
        except Exception as exc:
            logger.exception("gdpr: deletion failed request=%s", row.id)
            failed.append({"request_id": int(row.id), "error": str(exc)})
    return {"processed": processed, "failed": failed}


def _rows(db: Session, sql: str, params: dict) -> list[dict]:
    return [dict(row) for row in db.execute(text(sql), params).mappings().all()]


def export_user_data(db: Session, *, user_id: int, now: datetime | None = None) -> dict:
    user = db.execute(
        text("SELECT id, email, full_name, referral_code, referred_by_code, email_verified_at, created_at FROM users WHERE id = :id"),
        {"id": user_id},
    ).mappings().first()
    if not user:
        raise LookupError("User not found")

    params = {"user_id": user_id}
    export = {
        "exported_at": (now or utc_now()).isoformat(),
        "profile": dict(user),
        "organizations": _rows(
            db,
            """
            SELECT o.id, o.name, o.plan, uo.role, uo.created_at AS joined_at
            FROM user_organizations uo
            JOIN organizations o ON o.id = uo.organization_id
            WHERE uo.user_id = :user_id
            """,
            params,
        ),
        "calls": _rows(
            db,
            """
            SELECT id, organization_id, source, file_name, duration_minutes, status, customer_name, created_at
            FROM calls WHERE user_id = :user_id ORDER BY created_at
            """,
            params,
        ),
        "transcripts": _rows(
            db,
            """
            SELECT t.call_id, t.text, t.language, t.created_at
            FROM transcripts t JOIN calls c ON c.id = t.call_id
            WHERE c.user_id = :user_id
            """,
            params,
        ),
        "call_fields": _rows(
            db,
            """
            SELECT f.call_id, f.field_name, f.field_value, f.source
            FROM call_fields f JOIN calls c ON c.id = f.call_id
            WHERE c.user_id = :user_id
            """,
            params,
        ),
        "consents": _rows(
            db,
            "SELECT consent_type, granted, created_at FROM consents WHERE user_id = :user_id",
            params,
        ),
        "audit_logs": _rows(
            db,
            "SELECT action, resource_type, resource_id, created_at FROM audit_logs WHERE user_id = :user_id ORDER BY created_at",
            params,
        ),
        "referrals": _rows(
            db,
            "SELECT referred_email, status, created_at, activated_at FROM referrals WHERE referrer_user_id = :user_id",
            params,
        ),
    }
    record_audit_log(db, action="data_exported", user_id=user_id, resource_type="user", resource_id=user_id)
    return export
