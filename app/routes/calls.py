import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.core.config import settings as core_settings
from app.database import get_db
from app.dependencies.auth import current_org
from app.repositories.org_scope import OrgScope
from app.services.call_processing import (
    CallProcessingFailed,
    ProcessingLockHeld,
    UsageLimitExceeded,
    process_call,
)
from app.services.rate_limiter import SlidingWindowRateLimiter, rate_limit_key
from app.services.recording_storage import save_recording
from app.services.transcription import TranscriptionConfigError
from app.services.usage_guard import check_usage_before_processing, estimate_minutes_from_file_size
from app.utils.dates import utc_now


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calls", tags=["calls"])

SUPPORTED_AUDIO_TYPES = {
    "audio/mpeg",
    "audio/mp4",
    "audio/wav",
    "audio/x-wav",
    "audio/webm",
    "audio/ogg",
    "audio/flac",
    "audio/x-m4a",
}
MIME_ALIASES = {"audio/x-m4a": "audio/mp4"}
RETRY_AFTER_SECONDS = 60

upload_limiter = SlidingWindowRateLimiter(
    core_settings.UPLOAD_RATE_LIMIT,
    core_settings.UPLOAD_RATE_WINDOW_SECONDS,
)


def normalize_mime_type(content_type: str | None) -> str | None:
    value = (content_type or "").split(";")[0].strip().lower()
    if value not in SUPPORTED_AUDIO_TYPES:
        return None
    return MIME_ALIASES.get(value, value)


@router.post("/upload")
async def upload_call(
    request: Request,
    file: UploadFile = File(...),
    customer_name: str | None = Form(default=None),
    template_id: int | None = Form(default=None),
    scope: OrgScope = Depends(current_org),
    db: Session = Depends(get_db),
):
    if not upload_limiter.hit(rate_limit_key(request, scope.user_id)):
        return JSONResponse(
            status_code=429,
            content={"error": "Too many uploads. Please wait a minute and try again."},
            headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
        )

    mime_type = normalize_mime_type(file.content_type)
    if not mime_type:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "Unsupported file type",
                "details": {"content_type": file.content_type, "supported": sorted(SUPPORTED_AUDIO_TYPES)},
            },
        )

    file_bytes = await file.read()
    if not file_bytes:
        raise HTTPException(status_code=400, detail="File is empty")
    if len(file_bytes) > core_settings.MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=400,
            detail=f"File too large. Maximum size is {core_settings.MAX_UPLOAD_BYTES // (1024 * 1024)}MB",
        )

    if template_id is not None and scope.get_owned(db, "extraction_templates", template_id) is None:
        raise HTTPException(status_code=404, detail="Template not found")

    estimate = estimate_minutes_from_file_size(len(file_bytes))
    check = check_usage_before_processing(db, organization_id=scope.organization_id, estimated_minutes=estimate)
    if not check.allowed:
        raise HTTPException(status_code=402, detail={"error": check.reason, "details": check.to_dict()})

    now = utc_now()
    row = db.execute(
        text(
            """
            INSERT INTO calls (organization_id, user_id, source, file_name, mime_type, file_size, status,
                               processing_progress, processing_attempts, template_id, customer_name,
                               created_at, updated_at)
            VALUES (:organization_id, :user_id, 'upload', :file_name, :mime_type, :file_size, 'uploaded',
                    0, 0, :template_id, :customer_name, :now, :now)
            RETURNING id
            """
        ),
        {
            "organization_id": scope.organization_id,
            "user_id": scope.user_id,
            "file_name": file.filename or "recording",
            "mime_type": mime_type,
            "file_size": len(file_bytes),
            "template_id": template_id,
            "customer_name": (customer_name or "").strip() or None,
            "now": now,
        },
    ).first()
    call_id = int(row.id)

    try:
        stored = save_recording(
            organization_id=scope.organization_id,
            call_id=call_id,
            file_name=file.filename or f"call-{call_id}",
            file_bytes=file_bytes,
            content_type=mime_type,
        )
    except (OSError, ValueError) as exc:
        db.rollback()
        logger.exception("calls: storing upload failed org=%s", scope.organization_id)
        raise HTTPException(status_code=500, detail={"error": "Failed to store file", "details": str(exc)}) from exc

    scope.update_owned(db, "calls", call_id, {"storage_path": stored["local_path"]})
    db.commit()
    logger.info("calls: uploaded call=%s org=%s bytes=%s", call_id, scope.organization_id, len(file_bytes))

    return {
        "success": True,
        "call_id": call_id,
        "status": "uploaded",
        "estimated_minutes": estimate,
        "usage": check.to_dict(),
    }


@router.get("")
def list_calls(
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    scope: OrgScope = Depends(current_org),
    db: Session = Depends(get_db),
):
    filters = {"status": status} if status else None
    calls = scope.list_owned(db, "calls", filters=filters, limit=limit, offset=offset)
    for call in calls:
        call.pop("storage_path", None)
    return {"calls": calls, "limit": limit, "offset": offset}


@router.get("/{call_id}")
def get_call(call_id: int, scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    call = scope.get_owned(db, "calls", call_id)
    if not call:
        raise HTTPException(status_code=404, detail="Call not found")
    call.pop("storage_path", None)

    transcript = db.execute(
        text(
            """
            SELECT text, language, duration_seconds, created_at
            FROM transcripts
            WHERE call_id = :call_id AND organization_id = :organization_id
            ORDER BY id DESC
            LIMIT 1
            """
        ),
        {"call_id": call_id, "organization_id": scope.organization_id},
    ).mappings().first()
    fields = db.execute(
        text(
            """
            SELECT field_name, field_value, confidence_score, source
            FROM call_fields
            WHERE call_id = :call_id AND organization_id = :organization_id
            ORDER BY id
            """
        ),
        {"call_id": call_id, "organization_id": scope.organization_id},
    ).mappings().all()
    return {
        "call": call,
        "transcript": dict(transcript) if transcript else None,
        "fields": [dict(field) for field in fields],
    }


@router.get("/{call_id}/poll")
def poll_call(call_id: int, scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    call = scope.get_owned(db, "calls", call_id)
    if not call:
        raise HTTPException(status_code=404, detail="Call not found")
    return {
        "call_id": call_id,
        "status": call["status"],
        "progress": int(call.get("processing_progress") or 0),
        "message": call.get("processing_message"),
        "error": call.get("processing_error"),
    }


@router.post("/{call_id}/process")
def process_call_route(call_id: int, scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    try:
        return process_call(db, call_id=call_id, organization_id=scope.organization_id, user_id=scope.user_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except UsageLimitExceeded as exc:
        raise HTTPException(status_code=402, detail={"error": str(exc), "details": exc.check.to_dict()}) from exc
    except ProcessingLockHeld as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except CallProcessingFailed as exc:
        if isinstance(exc.__cause__, TranscriptionConfigError):
            logger.error("calls: transcription is not configured")
        raise HTTPException(status_code=500, detail={"error": "Processing failed", "details": str(exc)}) from exc
