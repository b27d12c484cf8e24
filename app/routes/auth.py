import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.config import client_ip, settings as core_settings
from app.database import get_db
from app.services.email import send_magic_link_email
from app.services.magic_links import (
    consume_magic_token,
    get_or_create_user,
    issue_magic_token,
    normalize_email,
    record_send_attempt,
    send_rate_limited,
)


logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])

INVALID_LINK_MESSAGE = "This sign-in link is invalid or expired."


class MagicLinkRequest(BaseModel):
    email: str
    full_name: str | None = None
    referral_code: str | None = None


def _sent_payload(verify_url: str | None = None) -> dict:
    payload = {"status": "ok", "message": "magic_link_sent"}
    if verify_url:
        payload["verify_url"] = verify_url
    return payload


@router.post("/auth/magic/send")
async def send_magic_link(
    payload: MagicLinkRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    email = normalize_email(payload.email)
    if not email:
        return JSONResponse(status_code=400, content={"error": "Enter a valid email."})

    ip_address = client_ip(request)
    is_rate_limited = send_rate_limited(db, email=email, client_ip=ip_address)
    record_send_attempt(db, email=email, client_ip=ip_address)

    # Same answer either way so the endpoint can't be used to probe addresses.
    if is_rate_limited:
        db.commit()
        logger.info("auth: magic link rate limited email=%s ip=%s", email, ip_address)
        return _sent_payload()

    token = issue_magic_token(db, email=email)
    db.commit()

    if payload.full_name or payload.referral_code:
        request.session["pending_signup"] = {
            "email": email,
            "full_name": payload.full_name,
            "referral_code": payload.referral_code,
        }

    verify_url = f"{core_settings.APP_BASE_URL.rstrip('/')}/auth/magic/verify?token={token}"
    send_magic_link_email(email, verify_url)

    debug_enabled = request.query_params.get("debug") == "1" and core_settings.is_development
    return _sent_payload(verify_url if debug_enabled else None)


@router.get("/auth/magic/verify")
async def verify_magic_link(
    request: Request,
    token: str,
    ref: str | None = None,
    db: Session = Depends(get_db),
):
    email = consume_magic_token(db, token=token)
    if not email:
        db.rollback()
        return JSONResponse(status_code=400, content={"error": INVALID_LINK_MESSAGE})

    pending = request.session.pop("pending_signup", None) or {}
    if pending.get("email") != email:
        pending = {}

    user = get_or_create_user(
        db,
        email=email,
        full_name=pending.get("full_name"),
        referral_code=ref or pending.get("referral_code"),
    )
    db.commit()

    request.session["user_id"] = int(user["id"])
    logger.info("auth: signed in user=%s created=%s", user["id"], user["created"])
    return {
        "success": True,
        "user": {"id": int(user["id"]), "email": user["email"], "full_name": user.get("full_name")},
        "created": bool(user["created"]),
    }


@router.post("/auth/logout")
async def logout(request: Request):
    request.session.clear()
    return {"success": True}
