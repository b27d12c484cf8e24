from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.database import get_db
from app.dependencies.auth import current_org
from app.repositories.org_scope import OrgScope
from app.services.referrals import (
    claim_all_rewards,
    claim_reward,
    generate_referral_code,
    get_referral_stats,
    send_referral_invitation,
)


router = APIRouter(prefix="/api/referrals", tags=["referrals"])


class InvitationRequest(BaseModel):
    email: str


class ClaimRequest(BaseModel):
    reward_id: int | None = None


@router.post("/generate")
def referral_generate(scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    try:
        result = generate_referral_code(db, user_id=scope.user_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail="User not found") from exc
    db.commit()
    return result


@router.post("/send-invitation")
def referral_send_invitation(
    payload: InvitationRequest,
    scope: OrgScope = Depends(current_org),
    db: Session = Depends(get_db),
):
    result = send_referral_invitation(
        db,
        referrer_user_id=scope.user_id,
        email=payload.email,
        referrer_name=scope.full_name or scope.email,
    )
    if not result["success"]:
        raise HTTPException(status_code=400, detail={"error": "Invalid invitation", "details": result["errors"]})
    db.commit()
    return result


@router.get("/stats")
def referral_stats(scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    return get_referral_stats(db, user_id=scope.user_id)


@router.post("/claim")
def referral_claim(
    payload: ClaimRequest,
    scope: OrgScope = Depends(current_org),
    db: Session = Depends(get_db),
):
    try:
        if payload.reward_id is None:
            result = claim_all_rewards(db, user_id=scope.user_id)
        else:
            result = claim_reward(db, user_id=scope.user_id, reward_id=payload.reward_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return result
