import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from app.database import get_db
from app.services.stripe_payments import StripeConfigError
from app.services.stripe_webhooks import handle_stripe_webhook


logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


@router.post("/api/stripe/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    stripe_signature: str | None = Header(default=None, alias="stripe-signature"),
):
    if not stripe_signature:
        raise HTTPException(status_code=400, detail="Missing stripe-signature header")

    payload = await request.body()

    try:
        return handle_stripe_webhook(db=db, payload=payload, signature=stripe_signature)
    except StripeConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except Exception as exc:
        db.rollback()
        logger.warning("payments: webhook rejected: %s", exc)
        raise HTTPException(status_code=400, detail=f"Webhook error: {exc}") from exc
