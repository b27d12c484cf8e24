"""
Twilio voice, status and recording callbacks.

Inbound call: voice webhook answers with TwiML (disclosure, then dial/record) and opens a
calls row in `initiated`. The status callback bills minutes once the call completes. The
recording callback attaches the audio and moves the call to `uploaded` for processing.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Mapping

from sqlalchemy import text
from sqlalchemy.orm import Session
from twilio.request_validator import RequestValidator
from twilio.twiml.voice_response import VoiceResponse

from app.core.config import settings as core_settings
from app.services.ledger import minutes_from_seconds, record_call_usage
from app.utils.dates import utc_now


logger = logging.getLogger(__name__)

DEFAULT_DISCLOSURE = "This call is being recorded for quality assurance and documentation purposes."
NOT_CONFIGURED_MESSAGE = "This number is not configured. Please contact support."
ERROR_MESSAGE = "We're sorry, an error occurred. Please try again later."
MAX_RECORDING_SECONDS = 3600

_TEN_DIGITS = re.compile(r"^\d{10}$")


def format_phone_number(number: str | None) -> str:
    raw = number or ""
    digits = re.sub(r"\D", "", re.sub(r"^\+1", "", raw))
    if _TEN_DIGITS.match(digits):
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    return raw


def validate_twilio_signature(url: str, params: Mapping[str, Any], signature: str | None) -> bool:
    if core_settings.TWILIO_SKIP_SIGNATURE_VALIDATION and core_settings.is_development:
        return True
    auth_token = (core_settings.TWILIO_AUTH_TOKEN or "").strip()
    if not auth_token or not signature:
        return False
    return RequestValidator(auth_token).validate(url, dict(params), signature)


def recording_callback_url() -> str:
    return f"{core_settings.APP_BASE_URL.rstrip('/')}/api/twilio/recording"


def get_phone_number_config(db: Session, phone_number: str | None):
    if not phone_number:
        return None
    return db.execute(
        text(
            """
            SELECT id, organization_id, user_id, phone_number, forward_to, recording_enabled,
                   recording_disclosure_enabled, recording_disclosure_text, auto_transcribe
            FROM twilio_phone_numbers
            WHERE phone_number = :phone_number
              AND is_active = :active
            """
        ),
        {"phone_number": phone_number, "active": True},
    ).first()


def not_configured_twiml() -> str:
    response = VoiceResponse()
    response.say(NOT_CONFIGURED_MESSAGE)
    response.hangup()
    return str(response)


def error_twiml() -> str:
    response = VoiceResponse()
    response.say(ERROR_MESSAGE)
    response.hangup()
    return str(response)


def _enabled(flag) -> bool:
    """Unset flags default to on; SQLite returns 0/1."""
    return flag is None or bool(flag)


def build_voice_twiml(number_config) -> str:
    response = VoiceResponse()
    if _enabled(number_config.recording_disclosure_enabled):
        response.say(number_config.recording_disclosure_text or DEFAULT_DISCLOSURE)

    record = _enabled(number_config.recording_enabled)
    if number_config.forward_to:
        dial_kwargs: dict[str, Any] = {}
        if record:
            dial_kwargs.update(
                record="record-from-answer-dual",
                trim="trim-silence",
                recording_status_callback=recording_callback_url(),
                recording_status_callback_event="completed",
            )
        response.dial(number_config.forward_to, **dial_kwargs)
    elif record:
        response.record(
            max_length=MAX_RECORDING_SECONDS,
            recording_status_callback=recording_callback_url(),
            recording_status_callback_event="completed",
        )
        response.hangup()
    else:
        response.hangup()
    return str(response)


def handle_incoming_call(db: Session, form: Mapping[str, Any]) -> str:
    to_number = form.get("To")
    from_number = form.get("From")
    call_sid = form.get("CallSid")

    number_config = get_phone_number_config(db, to_number)
    if not number_config:
        logger.warning("twilio: voice webhook for unconfigured number to=%s", to_number)
        return not_configured_twiml()

    existing = db.execute(
        text("SELECT id FROM twilio_calls WHERE call_sid = :call_sid"),
        {"call_sid": call_sid},
    ).first()
    if not existing:
        now = utc_now()
        call_row = db.execute(
            text(
                """
                INSERT INTO calls (organization_id, user_id, source, file_name, status, twilio_call_sid,
                                   from_number, to_number, created_at, updated_at)
                VALUES (:organization_id, :user_id, 'twilio', :file_name, 'initiated', :call_sid,
                        :from_number, :to_number, :now, :now)
                RETURNING id
                """
            ),
            {
                "organization_id": number_config.organization_id,
                "user_id": number_config.user_id,
                "file_name": f"Call with {format_phone_number(from_number)}",
                "call_sid": call_sid,
                "from_number": from_number,
                "to_number": to_number,
                "now": now,
            },
        ).first()
        db.execute(
            text(
                """
                INSERT INTO twilio_calls (organization_id, call_id, phone_number_id, call_sid, from_number,
                                          to_number, direction, status, created_at, updated_at)
                VALUES (:organization_id, :call_id, :phone_number_id, :call_sid, :from_number,
                        :to_number, :direction, 'ringing', :now, :now)
                """
            ),
            {
                "organization_id": number_config.organization_id,
                "call_id": call_row.id,
                "phone_number_id": number_config.id,
                "call_sid": call_sid,
                "from_number": from_number,
                "to_number": to_number,
                "direction": form.get("Direction") or "inbound",
                "now": now,
            },
        )
        logger.info("twilio: inbound call sid=%s org=%s call=%s", call_sid, number_config.organization_id, call_row.id)

    return build_voice_twiml(number_config)


def _twilio_call(db: Session, call_sid: str | None):
    if not call_sid:
        return None
    return db.execute(
        text(
            """
            SELECT tc.id, tc.organization_id, tc.call_id, tc.phone_number_id, c.user_id, c.file_url
            FROM twilio_calls tc
            LEFT JOIN calls c ON c.id = tc.call_id
            WHERE tc.call_sid = :call_sid
            """
        ),
        {"call_sid": call_sid},
    ).first()


def handle_call_status(db: Session, form: Mapping[str, Any]) -> dict[str, Any]:
    """Returns what the route should do next; `process` means queue call processing."""
    call_sid = form.get("CallSid")
    call_status = (form.get("CallStatus") or "").strip().lower()
    try:
        duration = int(form.get("CallDuration") or 0)
    except (TypeError, ValueError):
        duration = 0

    twilio_call = _twilio_call(db, call_sid)
    if not twilio_call:
        logger.info("twilio: status for unknown call sid=%s status=%s", call_sid, call_status)
        return {"found": False, "process": False}

    db.execute(
        text(
            """
            UPDATE twilio_calls
            SET status = :status,
                duration = :duration,
                updated_at = :now
            WHERE id = :id
            """
        ),
        {"status": call_status, "duration": duration, "now": utc_now(), "id": twilio_call.id},
    )

    outcome: dict[str, Any] = {
        "found": True,
        "process": False,
        "call_id": twilio_call.call_id,
        "organization_id": twilio_call.organization_id,
        "user_id": twilio_call.user_id,
    }
    if call_status != "completed" or not twilio_call.call_id:
        return outcome

    minutes = minutes_from_seconds(duration)
    db.execute(
        text("UPDATE calls SET duration_seconds = :duration, duration_minutes = :minutes WHERE id = :call_id"),
        {"duration": duration, "minutes": minutes, "call_id": twilio_call.call_id},
    )
    if minutes > 0:
        usage = record_call_usage(
            db,
            organization_id=twilio_call.organization_id,
            call_id=twilio_call.call_id,
            user_id=twilio_call.user_id,
            minutes=minutes,
        )
        outcome["minutes_billed"] = minutes if usage.get("created") else 0

    # Without a recording yet, the recording callback queues processing instead.
    outcome["process"] = bool(twilio_call.file_url)
    return outcome


def handle_recording(db: Session, form: Mapping[str, Any]) -> dict[str, Any]:
    recording_status = (form.get("RecordingStatus") or "").strip().lower()
    if recording_status != "completed":
        return {"skipped": True, "process": False, "message": "Recording not completed yet"}

    call_sid = form.get("CallSid")
    recording_url = f"{form.get('RecordingUrl') or ''}.mp3"
    try:
        duration = int(form.get("RecordingDuration") or 0)
    except (TypeError, ValueError):
        duration = 0

    twilio_call = _twilio_call(db, call_sid)
    number_config = None
    if twilio_call and twilio_call.phone_number_id:
        number_config = db.execute(
            text("SELECT id, organization_id, user_id, auto_transcribe FROM twilio_phone_numbers WHERE id = :id"),
            {"id": twilio_call.phone_number_id},
        ).first()
    if number_config is None:
        number_config = get_phone_number_config(db, form.get("To"))
    if number_config is None:
        raise LookupError("Organization not found")

    now = utc_now()
    call_id = twilio_call.call_id if twilio_call else None
    if call_id:
        db.execute(
            text(
                """
                UPDATE calls
                SET file_url = :file_url,
                    mime_type = 'audio/mpeg',
                    duration_seconds = :duration,
                    duration_minutes = :minutes,
                    status = 'uploaded',
                    updated_at = :now
                WHERE id = :call_id
                """
            ),
            {
                "file_url": recording_url,
                "duration": duration,
                "minutes": minutes_from_seconds(duration),
                "now": now,
                "call_id": call_id,
            },
        )
    else:
        row = db.execute(
            text(
                """
                INSERT INTO calls (organization_id, user_id, source, file_name, file_url, mime_type,
                                   duration_seconds, duration_minutes, status, twilio_call_sid,
                                   from_number, to_number, created_at, updated_at)
                VALUES (:organization_id, :user_id, 'twilio', :file_name, :file_url, 'audio/mpeg',
                        :duration, :minutes, 'uploaded', :call_sid, :from_number, :to_number, :now, :now)
                RETURNING id
                """
            ),
            {
                "organization_id": number_config.organization_id,
                "user_id": number_config.user_id,
                "file_name": f"Call with {format_phone_number(form.get('From'))}",
                "file_url": recording_url,
                "duration": duration,
                "minutes": minutes_from_seconds(duration),
                "call_sid": call_sid,
                "from_number": form.get("From"),
                "to_number": form.get("To"),
                "now": now,
            },
        ).first()
        call_id = row.id

    if twilio_call:
        db.execute(
            text(
                """
                UPDATE twilio_calls
                SET recording_sid = :recording_sid,
                    recording_url = :recording_url,
                    call_id = :call_id,
                    updated_at = :now
                WHERE id = :id
                """
            ),
            {
                "recording_sid": form.get("RecordingSid"),
                "recording_url": recording_url,
                "call_id": call_id,
                "now": now,
                "id": twilio_call.id,
            },
        )

    logger.info("twilio: recording attached call=%s org=%s duration=%s", call_id, number_config.organization_id, duration)
    return {
        "skipped": False,
        "process": _enabled(number_config.auto_transcribe),
        "call_id": call_id,
        "organization_id": number_config.organization_id,
        "user_id": number_config.user_id,
    }


def configure_forwarding(
    db: Session,
    *,
    organization_id: int,
    phone_number: str,
    forward_to: str | None,
    recording_disclosure_enabled: bool | None = None,
    recording_disclosure_text: str | None = None,
    auto_transcribe: bool | None = None,
) -> dict | None:
    row = db.execute(
        text(
            """
            SELECT id FROM twilio_phone_numbers
            WHERE phone_number = :phone_number
              AND organization_id = :organization_id
            """
        ),
        {"phone_number": phone_number, "organization_id": organization_id},
    ).first()
    if not row:
        return None

    values: dict[str, Any] = {"forward_to": (forward_to or "").strip() or None}
    if recording_disclosure_enabled is not None:
        values["recording_disclosure_enabled"] = recording_disclosure_enabled
    if recording_disclosure_text is not None:
        values["recording_disclosure_text"] = recording_disclosure_text.strip() or None
    if auto_transcribe is not None:
        values["auto_transcribe"] = auto_transcribe

    assignments = ", ".join(f"{column} = :{column}" for column in values)
    db.execute(
        text(f"UPDATE twilio_phone_numbers SET {assignments} WHERE id = :id"),
        {**values, "id": row.id},
    )
    return {"id": row.id, "phone_number": phone_number, **values}
