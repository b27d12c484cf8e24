import logging
from pathlib import Path

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.config import client_ip
from app.database import get_db
from app.dependencies.auth import current_org, optional_org, require_org_admin
from app.repositories.org_scope import OrgScope
from app.services.email import send_rate_confirmation_email
from app.services.rate_confirmations import (
    RateConfirmationValidationError,
    generate_rate_confirmation,
    get_rate_confirmation,
    get_rate_confirmation_pdf,
    list_rate_confirmations,
    sign_rate_confirmation,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/rate-confirmations", tags=["rate-confirmations"])


class GenerateRequest(BaseModel):
    load_id: int


class SignRequest(BaseModel):
    signer_name: str
    signer_email: str | None = None
    signature_data: str | None = None
    signing_token: str | None = None


@router.post("/generate")
def rate_con_generate(
    payload: GenerateRequest,
    scope: OrgScope = Depends(require_org_admin),
    db: Session = Depends(get_db),
):
    try:
        record = generate_rate_confirmation(db, scope, load_id=payload.load_id)
    except RateConfirmationValidationError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail={"error": "Validation failed", "details": exc.errors}) from exc
    except LookupError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail="Load not found") from exc
    db.commit()
    return {"success": True, "rate_confirmation": record}


@router.get("")
def rate_con_list(
    load_id: int | None = Query(default=None),
    scope: OrgScope = Depends(current_org),
    db: Session = Depends(get_db),
):
    return {"rate_confirmations": list_rate_confirmations(db, scope, load_id=load_id)}


@router.get("/{rate_confirmation_id}")
def rate_con_get(rate_confirmation_id: int, scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    try:
        return get_rate_confirmation(db, scope, rate_confirmation_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="Rate confirmation not found") from exc


@router.get("/{rate_confirmation_id}/pdf")
def rate_con_pdf(rate_confirmation_id: int, scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    try:
        file_name, pdf_bytes = get_rate_confirmation_pdf(db, scope, rate_confirmation_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="Rate confirmation not found") from exc
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{file_name}"'},
    )


@router.post("/{rate_confirmation_id}/sign")
def rate_con_sign(
    rate_confirmation_id: int,
    payload: SignRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    scope: OrgScope | None = Depends(optional_org),
    db: Session = Depends(get_db),
):
    if not payload.signing_token and scope is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        result = sign_rate_confirmation(
            db,
            rate_confirmation_id=rate_confirmation_id,
            signer_name=payload.signer_name,
            signer_email=payload.signer_email,
            signature_data=payload.signature_data,
            scope=None if payload.signing_token else scope,
            signing_token=payload.signing_token,
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except LookupError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail="Rate confirmation not found") from exc
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()

    if result["fully_signed"]:
        recipients = {email for email in (result["carrier_email"], payload.signer_email, scope.email if scope else None) if email}
        for to_email in sorted(recipients):
            background_tasks.add_task(
                send_rate_confirmation_email,
                to_email=to_email,
                rate_con_number=result["rate_con_number"],
                pdf_path=Path(result["pdf_path"]) if result["pdf_path"] else None,
                fully_signed=True,
            )

    result.pop("pdf_path", None)
    result.pop("carrier_email", None)
    return {"success": True, **result}
