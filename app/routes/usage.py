import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.config import settings as core_settings
from app.database import get_db
from app.dependencies.auth import current_org, require_org_admin
from app.repositories.org_scope import OrgScope
from app.services.ledger import get_usage_overview
from app.services.overage_billing import (
    OverageCheckoutError,
    can_upgrade_plan,
    check_overage_debt,
    create_overage_checkout,
    get_overage_payment_options,
)
from app.services.stripe_payments import (
    StripeConfigError,
    create_overage_pack_checkout_session,
    create_plan_checkout_session,
)
from app.services.usage_guard import get_usage_summary_with_guard


logger = logging.getLogger(__name__)

router = APIRouter(tags=["usage"])


class OverageCheckoutRequest(BaseModel):
    amount: float


class OveragePackRequest(BaseModel):
    minutes: int = Field(gt=0)


class PlanCheckoutRequest(BaseModel):
    plan: str


@router.get("/api/usage")
def usage_overview(scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    overview = get_usage_overview(db, organization_id=scope.organization_id)
    if overview is None:
        raise HTTPException(status_code=404, detail="Organization not found")
    overview["guard"] = get_usage_summary_with_guard(db, organization_id=scope.organization_id)
    return overview


@router.get("/api/usage/guard")
def usage_guard_summary(scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    summary = get_usage_summary_with_guard(db, organization_id=scope.organization_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="Organization not found")
    return summary


@router.get("/api/overage/debt")
def overage_debt(scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    debt = check_overage_debt(db, organization_id=scope.organization_id)
    if debt is None:
        raise HTTPException(status_code=404, detail="Organization not found")
    return debt.to_dict()


@router.get("/api/overage/can-upgrade")
def overage_can_upgrade(scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    return can_upgrade_plan(db, organization_id=scope.organization_id)


@router.get("/api/overage/payment-options")
def overage_payment_options(scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    debt = check_overage_debt(db, organization_id=scope.organization_id)
    if debt is None:
        raise HTTPException(status_code=404, detail="Organization not found")
    if not debt.has_debt:
        return {"exact_amount": 0.0, "suggested_amount": 0.0, "payment_options": []}
    return get_overage_payment_options(debt.amount)


@router.post("/api/overage/create-checkout")
def overage_create_checkout(
    payload: OverageCheckoutRequest,
    scope: OrgScope = Depends(current_org),
    db: Session = Depends(get_db),
):
    try:
        result = create_overage_checkout(db, organization_id=scope.organization_id, amount=payload.amount)
    except OverageCheckoutError as exc:
        db.rollback()
        detail = {"error": str(exc)}
        if exc.details:
            detail["details"] = exc.details
        raise HTTPException(status_code=400, detail=detail) from exc
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    db.commit()
    return {"success": True, **result}


@router.post("/api/overage/pack")
def overage_pack_checkout(
    payload: OveragePackRequest,
    scope: OrgScope = Depends(require_org_admin),
):
    if payload.minutes > core_settings.MAX_OVERAGE_MINUTES:
        raise HTTPException(
            status_code=400,
            detail=f"Overage packs are limited to {core_settings.MAX_OVERAGE_MINUTES} minutes",
        )
    try:
        return create_overage_pack_checkout_session(
            organization_id=scope.organization_id,
            minutes=payload.minutes,
            customer_email=scope.email,
        )
    except StripeConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@router.post("/api/subscription/checkout")
def subscription_checkout(
    payload: PlanCheckoutRequest,
    scope: OrgScope = Depends(require_org_admin),
    db: Session = Depends(get_db),
):
    upgrade = can_upgrade_plan(db, organization_id=scope.organization_id)
    if not upgrade["allowed"]:
        raise HTTPException(
            status_code=402,
            detail={"error": upgrade["reason"], "details": {"debt_amount": upgrade["debt_amount"]}},
        )
    try:
        result = create_plan_checkout_session(
            db,
            organization_id=scope.organization_id,
            plan=payload.plan,
            customer_email=scope.email,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StripeConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    db.commit()
    return result
