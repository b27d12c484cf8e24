from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.database import get_db
from app.dependencies.auth import current_org, require_admin_token
from app.repositories.org_scope import OrgScope
from app.services.partner_commissions import (
    apply_as_partner,
    get_partner_earnings,
    register_partner_referral,
    reverse_commission,
    review_partner_application,
)


router = APIRouter(prefix="/api/partners", tags=["partners"])


class PartnerApplication(BaseModel):
    company_name: str
    email: str | None = None


class PartnerReview(BaseModel):
    approve: bool
    tier: str = "standard"


class PartnerReferralRequest(BaseModel):
    organization_id: int
    subscription_amount_cents: int


class ReverseCommissionRequest(BaseModel):
    reason: str


def _partner_for_user(db: Session, user_id: int):
    return db.execute(
        text("SELECT id, status, company_name FROM partners WHERE user_id = :user_id ORDER BY id DESC LIMIT 1"),
        {"user_id": user_id},
    ).first()


@router.post("/apply")
def partner_apply(
    payload: PartnerApplication,
    scope: OrgScope = Depends(current_org),
    db: Session = Depends(get_db),
):
    try:
        result = apply_as_partner(
            db,
            user_id=scope.user_id,
            company_name=payload.company_name,
            email=payload.email or scope.email or "",
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return result


@router.get("/earnings")
def partner_earnings(scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    partner = _partner_for_user(db, scope.user_id)
    if not partner:
        raise HTTPException(status_code=404, detail="Partner not found")
    if partner.status != "active":
        raise HTTPException(status_code=403, detail="Partner account is not active")
    return {"partner_id": int(partner.id), **get_partner_earnings(db, partner_id=int(partner.id))}


@router.post("/{partner_id}/review", dependencies=[Depends(require_admin_token)])
def partner_review(partner_id: int, payload: PartnerReview, db: Session = Depends(get_db)):
    try:
        result = review_partner_application(db, partner_id=partner_id, approve=payload.approve, tier=payload.tier)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return result


@router.post("/{partner_id}/referrals", dependencies=[Depends(require_admin_token)])
def partner_register_referral(partner_id: int, payload: PartnerReferralRequest, db: Session = Depends(get_db)):
    partner = db.execute(text("SELECT id, status FROM partners WHERE id = :id"), {"id": partner_id}).first()
    if not partner:
        raise HTTPException(status_code=404, detail="Partner not found")
    if partner.status != "active":
        raise HTTPException(status_code=400, detail="Partner is not active")
    referral_id = register_partner_referral(
        db,
        partner_id=partner_id,
        organization_id=payload.organization_id,
        subscription_amount_cents=payload.subscription_amount_cents,
    )
    db.commit()
    return {"success": True, "partner_referral_id": referral_id}


@router.post("/commissions/{commission_id}/reverse", dependencies=[Depends(require_admin_token)])
def partner_reverse_commission(commission_id: int, payload: ReverseCommissionRequest, db: Session = Depends(get_db)):
    try:
        result = reverse_commission(db, commission_id=commission_id, reason=payload.reason)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return result
