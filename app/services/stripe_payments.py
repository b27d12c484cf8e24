from __future__ import annotations

import logging
from decimal import Decimal, ROUND_HALF_UP

import stripe
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.core.config import settings as core_settings


logger = logging.getLogger(__name__)


class StripeConfigError(RuntimeError):
    pass


def _init_stripe() -> None:
    if not core_settings.STRIPE_SECRET_KEY:
        raise StripeConfigError("STRIPE_SECRET_KEY is not configured")
    stripe.api_key = core_settings.STRIPE_SECRET_KEY


def money_to_cents(amount: Decimal | float | int) -> int:
    return int((Decimal(str(amount)) * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def plan_price_ids() -> dict[str, str]:
    """STRIPE_PLAN_PRICE_IDS is 'solo:price_123,starter:price_456'."""
    mapping: dict[str, str] = {}
    for pair in (core_settings.STRIPE_PLAN_PRICE_IDS or "").split(","):
        if ":" not in pair:
            continue
        plan, price_id = pair.split(":", 1)
        if plan.strip() and price_id.strip():
            mapping[plan.strip().lower()] = price_id.strip()
    return mapping


def ensure_customer_for_organization(db: Session, *, organization_id: int, email: str | None) -> str:
    _init_stripe()

    row = db.execute(
        text("SELECT id, name, stripe_customer_id FROM organizations WHERE id = :organization_id"),
        {"organization_id": organization_id},
    ).first()
    if not row:
        raise ValueError("Organization not found")
    if row.stripe_customer_id:
        return row.stripe_customer_id

    customer = stripe.Customer.create(
        email=email,
        name=row.name,
        metadata={"organization_id": str(organization_id)},
    )
    db.execute(
        text("UPDATE organizations SET stripe_customer_id = :customer_id WHERE id = :organization_id"),
        {"customer_id": customer["id"], "organization_id": organization_id},
    )
    return customer["id"]


def create_overage_checkout_session(
    *,
    organization_id: int,
    invoice_id: int,
    amount: Decimal | float,
    minutes: int,
    customer_email: str | None = None,
) -> dict:
    _init_stripe()

    base_url = core_settings.APP_BASE_URL.rstrip("/")
    session = stripe.checkout.Session.create(
        mode="payment",
        customer_email=customer_email,
        line_items=[
            {
                "price_data": {
                    "currency": "usd",
                    "unit_amount": money_to_cents(amount),
                    "product_data": {
                        "name": "LoadVoice overage charges",
                        "description": f"Overage charges: {minutes} minutes @ ${core_settings.OVERAGE_RATE:.2f}/min",
                    },
                },
                "quantity": 1,
            }
        ],
        success_url=f"{base_url}/settings?payment=success",
        cancel_url=f"{base_url}/settings?payment=cancelled",
        metadata={
            "type": "overage_payment",
            "organization_id": str(organization_id),
            "invoice_id": str(invoice_id),
            "minutes": str(minutes),
        },
        idempotency_key=f"overage-invoice:{invoice_id}:{money_to_cents(amount)}",
    )
    return {"checkout_url": session.get("url"), "session_id": session.get("id")}


def create_overage_pack_checkout_session(
    *,
    organization_id: int,
    minutes: int,
    customer_email: str | None = None,
) -> dict:
    _init_stripe()

    base_url = core_settings.APP_BASE_URL.rstrip("/")
    amount = Decimal(minutes) * Decimal(str(core_settings.OVERAGE_RATE))
    session = stripe.checkout.Session.create(
        mode="payment",
        customer_email=customer_email,
        line_items=[
            {
                "price_data": {
                    "currency": "usd",
                    "unit_amount": money_to_cents(amount),
                    "product_data": {"name": f"LoadVoice {minutes}-minute overage pack"},
                },
                "quantity": 1,
            }
        ],
        success_url=f"{base_url}/settings?pack=success",
        cancel_url=f"{base_url}/settings?pack=cancelled",
        metadata={
            "type": "overage_pack",
            "organization_id": str(organization_id),
            "minutes": str(minutes),
        },
    )
    return {"checkout_url": session.get("url"), "session_id": session.get("id")}


def create_plan_checkout_session(
    db: Session,
    *,
    organization_id: int,
    plan: str,
    customer_email: str | None = None,
) -> dict:
    price_id = plan_price_ids().get((plan or "").strip().lower())
    if not price_id:
        raise ValueError(f"Unknown plan: {plan}")

    customer_id = ensure_customer_for_organization(db, organization_id=organization_id, email=customer_email)
    base_url = core_settings.APP_BASE_URL.rstrip("/")
    session = stripe.checkout.Session.create(
        mode="subscription",
        customer=customer_id,
        line_items=[{"price": price_id, "quantity": 1}],
        success_url=f"{base_url}/settings?upgrade=success",
        cancel_url=f"{base_url}/settings?upgrade=cancelled",
        metadata={
            "type": "plan_upgrade",
            "organization_id": str(organization_id),
            "plan": plan,
        },
    )
    return {"checkout_url": session.get("url"), "session_id": session.get("id")}


def construct_webhook_event(payload: bytes, signature: str):
    _init_stripe()

    if not core_settings.STRIPE_WEBHOOK_SECRET:
        raise StripeConfigError("STRIPE_WEBHOOK_SECRET is not configured")

    return stripe.Webhook.construct_event(
        payload=payload,
        sig_header=signature,
        secret=core_settings.STRIPE_WEBHOOK_SECRET,
    )
