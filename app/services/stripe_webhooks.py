from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.services.ledger import get_plan_limit
from app.services.overage_billing import credit_overage_pack, handle_overage_payment, reset_overage_minutes
from app.services.stripe_payments import construct_webhook_event
from app.utils.dates import utc_now


logger = logging.getLogger(__name__)


def _apply_plan_upgrade(db: Session, *, organization_id: int, plan: str, subscription_id: str | None) -> None:
    db.execute(
        text(
            """
            UPDATE organizations
            SET plan = :plan,
                usage_minutes_limit = :limit,
                subscription_status = 'active'
            WHERE id = :organization_id
            """
        ),
        {"plan": plan, "limit": get_plan_limit(plan), "organization_id": organization_id},
    )
    db.execute(
        text(
            """
            INSERT INTO subscriptions (organization_id, plan, status, stripe_subscription_id, created_at)
            VALUES (:organization_id, :plan, 'active', :subscription_id, :now)
            """
        ),
        {"organization_id": organization_id, "plan": plan, "subscription_id": subscription_id, "now": utc_now()},
    )


def handle_checkout_completed(db: Session, data_obj: dict) -> str:
    metadata = data_obj.get("metadata") or {}
    checkout_type = metadata.get("type")
    transaction_id = data_obj.get("payment_intent") or data_obj.get("id")

    if checkout_type == "overage_payment":
        invoice_id = metadata.get("invoice_id")
        if not invoice_id:
            logger.warning("stripe_webhooks: overage payment without invoice_id session=%s", data_obj.get("id"))
            return "ignored"
        handle_overage_payment(db, invoice_id=int(invoice_id), transaction_id=transaction_id)
        return "overage_paid"

    if checkout_type == "overage_pack":
        credit_overage_pack(
            db,
            organization_id=int(metadata["organization_id"]),
            minutes=int(metadata.get("minutes") or 0),
            transaction_id=transaction_id,
        )
        return "overage_pack_credited"

    if checkout_type == "plan_upgrade":
        _apply_plan_upgrade(
            db,
            organization_id=int(metadata["organization_id"]),
            plan=str(metadata.get("plan") or "free"),
            subscription_id=data_obj.get("subscription"),
        )
        return "plan_upgraded"

    return "ignored"


def handle_subscription_renewal(db: Session, data_obj: dict) -> str:
    subscription_id = data_obj.get("subscription")
    if not subscription_id:
        return "ignored"
    organization_id = db.execute(
        text(
            """
            SELECT organization_id FROM subscriptions
            WHERE stripe_subscription_id = :subscription_id
            ORDER BY id DESC
            LIMIT 1
            """
        ),
        {"subscription_id": subscription_id},
    ).scalar()
    if not organization_id:
        logger.warning("stripe_webhooks: renewal for unknown subscription=%s", subscription_id)
        return "ignored"
    if reset_overage_minutes(db, organization_id=int(organization_id)):
        return "overage_reset"
    return "overage_debt_outstanding"


def handle_stripe_webhook(db: Session, payload: bytes, signature: str) -> dict:
    event = construct_webhook_event(payload, signature)

    event_type = event.get("type")
    data_obj = (event.get("data") or {}).get("object") or {}
    outcome = "ignored"

    if event_type == "checkout.session.completed":
        outcome = handle_checkout_completed(db, data_obj)
        db.commit()

    elif event_type == "invoice.paid" and data_obj.get("billing_reason") == "subscription_cycle":
        outcome = handle_subscription_renewal(db, data_obj)
        db.commit()

    elif event_type == "customer.subscription.deleted":
        subscription_id = data_obj.get("id")
        if subscription_id:
            db.execute(
                text(
                    """
                    UPDATE subscriptions
                    SET status = 'cancelled',
                        cancelled_at = :now
                    WHERE stripe_subscription_id = :subscription_id
                    """
                ),
                {"now": utc_now(), "subscription_id": subscription_id},
            )
            db.commit()
            outcome = "subscription_cancelled"

    logger.info("stripe_webhooks: event=%s outcome=%s", event_type, outcome)
    return {"received": True, "event_type": event_type, "outcome": outcome}
