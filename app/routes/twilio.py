import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.config import settings as core_settings
from app.database import get_db
from app.dependencies.auth import current_org, require_org_admin
from app.repositories.org_scope import OrgScope
from app.services.call_processing import run_call_processing_job
from app.services.twilio_webhooks import (
    configure_forwarding,
    error_twiml,
    format_phone_number,
    handle_call_status,
    handle_incoming_call,
    handle_recording,
    validate_twilio_signature,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/twilio", tags=["twilio"])

TWIML_MEDIA_TYPE = "application/xml"


class ForwardingRequest(BaseModel):
    phone_number: str
    forward_to: str | None = None
    recording_disclosure_enabled: bool | None = None
    recording_disclosure_text: str | None = None
    auto_transcribe: bool | None = None


def _public_url(request: Request) -> str:
    """URL Twilio signed: the public base URL, not the one behind the proxy."""
    url = f"{core_settings.APP_BASE_URL.rstrip('/')}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


async def _verified_form(request: Request) -> dict:
    form = dict(await request.form())
    if not validate_twilio_signature(_public_url(request), form, request.headers.get("X-Twilio-Signature")):
        logger.warning("twilio: invalid signature path=%s", request.url.path)
        raise HTTPException(status_code=403, detail="Invalid signature")
    return form


def _queue_processing(background_tasks: BackgroundTasks, outcome: dict) -> None:
    try:
        background_tasks.add_task(
            run_call_processing_job,
            int(outcome["call_id"]),
            int(outcome["organization_id"]),
            outcome.get("user_id"),
        )
    except Exception:
        logger.exception("twilio: could not queue processing call=%s", outcome.get("call_id"))


@router.post("/voice")
async def twilio_voice(request: Request, db: Session = Depends(get_db)):
    form = await _verified_form(request)
    try:
        twiml = handle_incoming_call(db, form)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("twilio: voice webhook failed sid=%s", form.get("CallSid"))
        twiml = error_twiml()
    return Response(content=twiml, media_type=TWIML_MEDIA_TYPE)


@router.post("/status")
async def twilio_status(request: Request, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    form = await _verified_form(request)
    outcome = handle_call_status(db, form)
    db.commit()
    if outcome.get("process"):
        _queue_processing(background_tasks, outcome)
    return {"success": True, "found": outcome["found"], "minutes_billed": outcome.get("minutes_billed", 0)}


@router.post("/recording")
async def twilio_recording(request: Request, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    form = await _verified_form(request)
    try:
        outcome = handle_recording(db, form)
    except LookupError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    db.commit()

    if outcome.get("skipped"):
        return {"success": True, "skipped": True}
    if outcome.get("process"):
        _queue_processing(background_tasks, outcome)
    return {"success": True, "call_id": outcome["call_id"], "processing": bool(outcome.get("process"))}


@router.get("/numbers")
def list_numbers(scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    numbers = scope.list_owned(db, "twilio_phone_numbers", limit=100)
    for number in numbers:
        number["display_number"] = format_phone_number(number["phone_number"])
    return {"numbers": numbers}


@router.post("/configure-forwarding")
def configure_number_forwarding(
    payload: ForwardingRequest,
    scope: OrgScope = Depends(require_org_admin),
    db: Session = Depends(get_db),
):
    result = configure_forwarding(
        db,
        organization_id=scope.organization_id,
        phone_number=payload.phone_number.strip(),
        forward_to=payload.forward_to,
        recording_disclosure_enabled=payload.recording_disclosure_enabled,
        recording_disclosure_text=payload.recording_disclosure_text,
        auto_transcribe=payload.auto_transcribe,
    )
    if result is None:
        raise HTTPException(status_code=404, detail="Phone number not found")
    db.commit()
    return {"success": True, "number": result}
