"""
Call processing pipeline: admission guard -> lock -> transcribe -> extract -> ledger.

Progress written to the calls row at each step:
    processing 0 -> transcribing 50 -> extracting 75 -> finalizing 95 -> completed 100
Failures leave the call in `failed` with processing_error set. The lock is always released.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.database import session_scope
from app.services.extraction import DEFAULT_CONFIDENCE, extract_freight_data, extraction_to_fields
from app.services.ledger import has_recorded_usage, minutes_from_seconds, record_call_usage
from app.services.notifications import create_notification
from app.services.transcription import TranscriptionResult, format_conversation, transcribe_file, transcribe_url
from app.services.usage_guard import (
    UsageCheckResult,
    acquire_processing_lock,
    check_usage_before_processing,
    estimate_minutes_from_file_size,
    refresh_processing_lock,
    release_processing_lock,
)
from app.utils.dates import utc_now


logger = logging.getLogger(__name__)

class UsageLimitExceeded(Exception):
    def __init__(self, check: UsageCheckResult):
        super().__init__(check.reason or "Usage limit exceeded")
        self.check = check


class ProcessingLockHeld(Exception):
    pass


class CallProcessingFailed(Exception):
    pass


def _load_call(db: Session, *, call_id: int, organization_id: int):
    return db.execute(
        text(
            """
            SELECT id, organization_id, user_id, file_name, file_url, storage_path, file_size,
                   duration_seconds, duration_minutes, status, template_id, customer_name
            FROM calls
            WHERE id = :call_id
              AND organization_id = :organization_id
            """
        ),
        {"call_id": call_id, "organization_id": organization_id},
    ).first()


def _set_progress(
    db: Session,
    *,
    call_id: int,
    lock_id: int,
    status: str,
    progress: int,
    message: str,
) -> None:
    refresh_processing_lock(db, lock_id=lock_id)
    db.execute(
        text(
            """
            UPDATE calls
            SET status = :status,
                processing_progress = :progress,
                processing_message = :message,
                updated_at = :now
            WHERE id = :call_id
            """
        ),
        {"status": status, "progress": progress, "message": message, "now": utc_now(), "call_id": call_id},
    )
    db.commit()


def _template_fields(db: Session, *, template_id: int | None, organization_id: int) -> list[dict]:
    if not template_id:
        return []
    row = db.execute(
        text(
            """
            SELECT fields
            FROM extraction_templates
            WHERE id = :template_id
              AND organization_id = :organization_id
            """
        ),
        {"template_id": template_id, "organization_id": organization_id},
    ).first()
    if not row or not row.fields:
        return []
    fields = json.loads(row.fields) if isinstance(row.fields, str) else row.fields
    return [field for field in fields or [] if isinstance(field, dict)]


def estimate_call_minutes(call) -> int:
    if call.duration_minutes:
        return int(call.duration_minutes)
    if call.duration_seconds:
        return minutes_from_seconds(call.duration_seconds)
    return estimate_minutes_from_file_size(call.file_size)


def transcribe_call_audio(call) -> TranscriptionResult:
    if call.storage_path:
        return transcribe_file(call.storage_path)
    if call.file_url:
        return transcribe_url(call.file_url, file_name=call.file_name or "recording.mp3")
    raise CallProcessingFailed("Call has no recording to transcribe")


def _save_transcript(db: Session, *, call, transcription: TranscriptionResult) -> None:
    db.execute(text("DELETE FROM transcripts WHERE call_id = :call_id"), {"call_id": call.id})
    db.execute(
        text(
            """
            INSERT INTO transcripts (call_id, organization_id, text, language, duration_seconds, segments, created_at)
            VALUES (:call_id, :organization_id, :text, :language, :duration_seconds, :segments, :created_at)
            """
        ),
        {
            "call_id": call.id,
            "organization_id": call.organization_id,
            "text": transcription.text,
            "language": transcription.language,
            "duration_seconds": transcription.duration_seconds,
            "segments": json.dumps(transcription.segments),
            "created_at": utc_now(),
        },
    )


def _save_fields(db: Session, *, call, extraction: dict[str, Any]) -> int:
    db.execute(text("DELETE FROM call_fields WHERE call_id = :call_id"), {"call_id": call.id})
    rows = extraction_to_fields(extraction)
    now = utc_now()
    for row in rows:
        db.execute(
            text(
                """
                INSERT INTO call_fields (call_id, organization_id, field_name, field_value, confidence_score, source, created_at)
                VALUES (:call_id, :organization_id, :field_name, :field_value, :confidence_score, :source, :created_at)
                """
            ),
            {
                "call_id": call.id,
                "organization_id": call.organization_id,
                "field_name": row["field_name"],
                "field_value": row["field_value"],
                "confidence_score": DEFAULT_CONFIDENCE,
                "source": row["source"],
                "created_at": now,
            },
        )
    return len(rows)


def process_call(
    db: Session,
    *,
    call_id: int,
    organization_id: int,
    user_id: int | None = None,
) -> dict[str, Any]:
    call = _load_call(db, call_id=call_id, organization_id=organization_id)
    if not call:
        raise LookupError("Call not found")

    # Twilio calls are billed on the status callback; their minutes are already in current usage.
    estimate = 0 if has_recorded_usage(db, call_id=call_id) else estimate_call_minutes(call)
    check = check_usage_before_processing(
        db,
        organization_id=organization_id,
        estimated_minutes=estimate,
        exclude_call_id=call_id,
    )
    if not check.allowed:
        raise UsageLimitExceeded(check)

    lock_id = acquire_processing_lock(
        db,
        organization_id=organization_id,
        call_id=call_id,
        estimated_minutes=estimate,
    )
    if lock_id is None:
        raise ProcessingLockHeld("Call is already being processed")
    db.commit()

    try:
        db.execute(
            text(
                """
                UPDATE calls
                SET processing_attempts = COALESCE(processing_attempts, 0) + 1,
                    last_processing_attempt = :now,
                    processing_error = NULL
                WHERE id = :call_id
                """
            ),
            {"now": utc_now(), "call_id": call_id},
        )
        _set_progress(db, call_id=call_id, lock_id=lock_id, status="processing", progress=0, message="Starting processing")

        _set_progress(db, call_id=call_id, lock_id=lock_id, status="transcribing", progress=50, message="Transcribing audio")
        transcription = transcribe_call_audio(call)
        _save_transcript(db, call=call, transcription=transcription)

        _set_progress(db, call_id=call_id, lock_id=lock_id, status="extracting", progress=75, message="Extracting freight data")
        conversation = format_conversation(transcription.segments) or transcription.text
        extraction = extract_freight_data(
            conversation,
            customer_name=call.customer_name,
            template_fields=_template_fields(db, template_id=call.template_id, organization_id=organization_id),
        )
        field_count = _save_fields(db, call=call, extraction=extraction)

        _set_progress(db, call_id=call_id, lock_id=lock_id, status="extracting", progress=95, message="Finalizing")
        duration_seconds = int(call.duration_seconds or transcription.duration_seconds or 0)
        duration_minutes = max(minutes_from_seconds(duration_seconds), 1)
        usage = record_call_usage(
            db,
            organization_id=organization_id,
            call_id=call_id,
            user_id=user_id or call.user_id,
            minutes=duration_minutes,
        )

        now = utc_now()
        db.execute(
            text(
                """
                UPDATE calls
                SET status = 'completed',
                    processing_progress = 100,
                    processing_message = 'Processing complete',
                    duration_seconds = :duration_seconds,
                    duration_minutes = :duration_minutes,
                    processed_at = :now,
                    updated_at = :now
                WHERE id = :call_id
                """
            ),
            {
                "duration_seconds": duration_seconds,
                "duration_minutes": duration_minutes,
                "now": now,
                "call_id": call_id,
            },
        )
        create_notification(
            db,
            notification_type="call_completed",
            title="Call processed",
            message=f'Your call "{call.file_name or call_id}" has been transcribed and analyzed.',
            user_id=user_id or call.user_id,
            organization_id=organization_id,
            link=f"/calls/{call_id}",
        )
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.exception("call_processing: failed call=%s org=%s", call_id, organization_id)
        db.execute(
            text(
                """
                UPDATE calls
                SET status = 'failed',
                    processing_error = :error,
                    processing_message = 'Processing failed',
                    updated_at = :now
                WHERE id = :call_id
                """
            ),
            {"error": str(exc)[:2000], "now": utc_now(), "call_id": call_id},
        )
        db.commit()
        raise CallProcessingFailed(str(exc)) from exc
    finally:
        release_processing_lock(db, call_id=call_id, lock_id=lock_id)
        db.commit()

    logger.info(
        "call_processing: completed call=%s org=%s minutes=%s fields=%s",
        call_id,
        organization_id,
        duration_minutes,
        field_count,
    )
    return {
        "success": True,
        "call_id": call_id,
        "status": "completed",
        "duration_minutes": duration_minutes,
        "fields_extracted": field_count,
        "call_type": extraction.get("call_type"),
        "is_overage": bool(usage.get("is_overage")),
    }


def run_call_processing_job(call_id: int, organization_id: int, user_id: int | None = None) -> None:
    """BackgroundTasks entry point: owns its session and never raises."""
    try:
        with session_scope() as db:
            process_call(db, call_id=call_id, organization_id=organization_id, user_id=user_id)
    except (UsageLimitExceeded, ProcessingLockHeld) as exc:
        logger.info("call_processing: background job skipped call=%s reason=%s", call_id, exc)
    except Exception:
        logger.exception("call_processing: background job failed call=%s", call_id)
