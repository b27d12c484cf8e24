"""overage_billing.py

Collection of overage charges.

  - Overage is billed at OVERAGE_RATE per minute, never more than OVERAGE_CAP.
  - One invoice per organization per billing period.
  - An open invoice is debt: upgrades are blocked until it is paid.
  - Payment arrives through the Stripe webhook (metadata type=overage_payment).
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from urllib.parse import urlencode

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.core.config import settings
from app.services.email import send_overage_invoice_email
from app.services.ledger import get_plan_limit
from app.services.notifications import create_notification, org_admin_recipients, record_audit_log
from app.services.stripe_payments import create_overage_checkout_session
from app.utils.dates import add_months, to_date, to_datetime, utc_now

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
OVERAGE_RATE = Decimal(str(settings.OVERAGE_RATE))
OVERAGE_CAP = Decimal(str(settings.OVERAGE_CAP))
PAYMENT_DUE_DAYS = 7


class OverageCheckoutError(ValueError):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details


@dataclass
class OverageDebt:
    has_debt: bool
    amount: float
    due_date: datetime | None
    is_past_due: bool
    can_upgrade: bool
    must_pay_first: bool

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["due_date"] = self.due_date.isoformat() if self.due_date else None
        return payload


# ── Internal helpers ──────────────────────────────────────────────────────────

def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _org_overage_row(db: Session, organization_id: int):
    return db.execute(
        text(
            """
            SELECT id, plan, usage_minutes_current, usage_minutes_limit, usage_reset_date,
                   overage_debt, overage_debt_due_date, has_unpaid_overage, can_upgrade
            FROM organizations
            WHERE id = :organization_id
            """
        ),
        {"organization_id": organization_id},
    ).first()


def _overage_minutes(org) -> int:
    limit = int(org.usage_minutes_limit or get_plan_limit(org.plan))
    return max(0, int(org.usage_minutes_current or 0) - limit)


def _fallback_checkout_url(organization_id: int, invoice_id: int, amount: Decimal) -> str:
    query = urlencode({"org": organization_id, "invoice": invoice_id, "amount": f"{amount:.2f}"})
    return f"{settings.APP_BASE_URL.rstrip('/')}/pay-overage?{query}"


# ── Public API ────────────────────────────────────────────────────────────────

def calculate_overage_charge(minutes: int) -> Decimal:
    return min(_money(Decimal(max(int(minutes), 0)) * OVERAGE_RATE), OVERAGE_CAP)


def check_overage_debt(db: Session, *, organization_id: int, now: datetime | None = None) -> OverageDebt | None:
    org = _org_overage_row(db, organization_id)
    if not org:
        return None

    now = now or utc_now()
    amount = Decimal(str(org.overage_debt or 0))
    has_unpaid = bool(org.has_unpaid_overage)
    due_date = to_datetime(org.overage_debt_due_date)

    return OverageDebt(
        has_debt=has_unpaid,
        amount=float(amount),
        due_date=due_date,
        is_past_due=bool(due_date and due_date < now),
        can_upgrade=bool(org.can_upgrade) if org.can_upgrade is not None else True,
        must_pay_first=has_unpaid and amount > 0,
    )


def can_upgrade_plan(db: Session, *, organization_id: int) -> dict:
    debt = check_overage_debt(db, organization_id=organization_id)
    if debt is None or not debt.must_pay_first:
        return {"allowed": True}
    return {
        "allowed": False,
        "reason": f"You have an unpaid overage of ${debt.amount:.2f}. Please pay this before upgrading.",
        "debt_amount": debt.amount,
    }


def get_overage_payment_options(overage_amount: float) -> dict:
    exact = _money(Decimal(str(overage_amount)))
    rounded = min(Decimal(math.ceil(exact / 5) * 5), OVERAGE_CAP)

    options = [
        {
            "label": "Pay Exact Amount",
            "amount": float(exact),
            "description": f"Pay ${exact:.2f} (exact overage)",
            "credit": 0.0,
        },
        {
            "label": "Pay Rounded Amount",
            "amount": float(rounded),
            "description": f"Pay ${rounded:.2f} (rounded up)",
            "credit": float(rounded - exact),
        },
        {
            "label": "Pay Maximum",
            "amount": float(OVERAGE_CAP),
            "description": f"Pay ${OVERAGE_CAP:.2f} (add credit for future)",
            "credit": float(OVERAGE_CAP - exact),
        },
    ]
    seen: set[float] = set()
    unique_options = []
    for option in options:
        if option["amount"] in seen:
            continue
        seen.add(option["amount"])
        unique_options.append(option)

    return {
        "exact_amount": float(exact),
        "suggested_amount": float(rounded),
        "payment_options": unique_options,
    }


def create_overage_invoice(db: Session, *, organization_id: int, now: datetime | None = None) -> dict | None:
    org = _org_overage_row(db, organization_id)
    if not org:
        raise ValueError("Organization not found")

    now = now or utc_now()
    minutes = _overage_minutes(org)
    amount = calculate_overage_charge(minutes)
    if amount <= 0:
        logger.info("overage_billing: no overage to invoice for org=%s", organization_id)
        return None

    period_end = to_date(org.usage_reset_date) or now.date()
    period_start = add_months(period_end, -1)

    existing = db.execute(
        text(
            """
            SELECT id, amount, minutes_overage, checkout_url, status
            FROM overage_invoices
            WHERE organization_id = :organization_id
              AND billing_period_start = :period_start
              AND billing_period_end = :period_end
            LIMIT 1
            """
        ),
        {"organization_id": organization_id, "period_start": period_start, "period_end": period_end},
    ).first()
    if existing:
        return {
            "created": False,
            "invoice_id": int(existing.id),
            "amount": float(existing.amount),
            "minutes": int(existing.minutes_overage),
            "checkout_url": existing.checkout_url,
            "status": existing.status,
        }

    invoice = db.execute(
        text(
            """
            INSERT INTO overage_invoices (
                organization_id, amount, minutes_overage, billing_period_start, billing_period_end, status, created_at, updated_at
            )
            VALUES (
                :organization_id, :amount, :minutes, :period_start, :period_end, 'pending', :now, :now
            )
            RETURNING id
            """
        ),
        {
            "organization_id": organization_id,
            "amount": amount,
            "minutes": minutes,
            "period_start": period_start,
            "period_end": period_end,
            "now": now,
        },
    ).first()
    invoice_id = int(invoice.id)
    due_date = now + timedelta(days=PAYMENT_DUE_DAYS)

    db.execute(
        text(
            """
            UPDATE organizations
            SET overage_debt = :amount,
                overage_debt_due_date = :due_date,
                has_unpaid_overage = :has_unpaid,
                can_upgrade = :can_upgrade,
                last_overage_invoice_id = :invoice_id,
                overage_payment_status = 'pending'
            WHERE id = :organization_id
            """
        ),
        {
            "amount": amount,
            "due_date": due_date,
            "has_unpaid": True,
            "can_upgrade": False,
            "invoice_id": invoice_id,
            "organization_id": organization_id,
        },
    )
    record_audit_log(
        db,
        action="overage_invoice_created",
        organization_id=organization_id,
        resource_type="overage_invoice",
        resource_id=invoice_id,
        details={
            "amount": float(amount),
            "minutes": minutes,
            "period_start": period_start.isoformat(),
            "period_end": period_end.isoformat(),
        },
    )

    recipients = org_admin_recipients(db, organization_id=organization_id)
    session_id = None
    try:
        checkout = create_overage_checkout_session(
            organization_id=organization_id,
            invoice_id=invoice_id,
            amount=amount,
            minutes=minutes,
            customer_email=recipients[0]["email"] if recipients else None,
        )
        checkout_url = checkout["checkout_url"] or _fallback_checkout_url(organization_id, invoice_id, amount)
        session_id = checkout["session_id"]
    except Exception:
        logger.warning("overage_billing: checkout creation failed for invoice=%s, using fallback url", invoice_id, exc_info=True)
        checkout_url = _fallback_checkout_url(organization_id, invoice_id, amount)

    db.execute(
        text(
            """
            UPDATE overage_invoices
            SET checkout_url = :checkout_url,
                stripe_session_id = :session_id,
                status = 'sent',
                sent_at = :now,
                updated_at = :now
            WHERE id = :invoice_id
            """
        ),
        {"checkout_url": checkout_url, "session_id": session_id, "now": now, "invoice_id": invoice_id},
    )

    for recipient in recipients:
        send_overage_invoice_email(
            to_email=recipient["email"],
            amount=float(amount),
            minutes=minutes,
            due_date=due_date.date().isoformat(),
            checkout_url=checkout_url,
        )

    logger.info("overage_billing: invoice=%s org=%s amount=%s minutes=%s", invoice_id, organization_id, amount, minutes)
    return {
        "created": True,
        "invoice_id": invoice_id,
        "amount": float(amount),
        "minutes": minutes,
        "checkout_url": checkout_url,
        "status": "sent",
    }


def create_overage_checkout(
    db: Session,
    *,
    organization_id: int,
    amount: float,
) -> dict:
    """Pay-now flow from the settings page."""
    requested = _money(Decimal(str(amount or 0)))
    if requested <= 0 or requested > OVERAGE_CAP:
        raise OverageCheckoutError("Invalid amount. Must be between $0.01 and $20.00")

    org = _org_overage_row(db, organization_id)
    if not org:
        raise LookupError("Organization not found")

    actual = calculate_overage_charge(_overage_minutes(org))
    if abs(actual - requested) > CENT:
        raise OverageCheckoutError("Amount mismatch", {"requested": float(requested), "actual": float(actual)})

    invoice = create_overage_invoice(db, organization_id=organization_id)
    if invoice is None:
        raise OverageCheckoutError("No overage to pay")

    return {
        "checkout_url": invoice["checkout_url"],
        "invoice_id": invoice["invoice_id"],
        "amount": invoice["amount"],
        "requested_amount": float(requested),
    }


def handle_overage_payment(db: Session, *, invoice_id: int, transaction_id: str | None) -> bool:
    invoice = db.execute(
        text("SELECT id, organization_id, amount, status FROM overage_invoices WHERE id = :invoice_id"),
        {"invoice_id": invoice_id},
    ).first()
    if not invoice:
        logger.warning("overage_billing: payment for unknown invoice=%s", invoice_id)
        return False
    if invoice.status == "paid":
        return True

    now = utc_now()
    organization_id = int(invoice.organization_id)
    db.execute(
        text(
            """
            UPDATE overage_invoices
            SET status = 'paid',
                paid_at = :now,
                stripe_transaction_id = :transaction_id,
                updated_at = :now
            WHERE id = :invoice_id
            """
        ),
        {"now": now, "transaction_id": transaction_id, "invoice_id": invoice_id},
    )
    db.execute(
        text(
            """
            UPDATE organizations
            SET overage_debt = 0,
                has_unpaid_overage = :has_unpaid,
                can_upgrade = :can_upgrade,
                overage_payment_status = 'paid'
            WHERE id = :organization_id
            """
        ),
        {"has_unpaid": False, "can_upgrade": True, "organization_id": organization_id},
    )
    db.execute(
        text(
            """
            INSERT INTO overage_transactions (organization_id, transaction_type, minutes, amount, external_id, created_at)
            VALUES (:organization_id, 'invoice_payment', 0, :amount, :external_id, :now)
            """
        ),
        {"organization_id": organization_id, "amount": invoice.amount, "external_id": transaction_id, "now": now},
    )
    record_audit_log(
        db,
        action="overage_payment_received",
        organization_id=organization_id,
        resource_type="overage_invoice",
        resource_id=invoice_id,
        details={"amount": float(invoice.amount), "transaction_id": transaction_id},
    )
    create_notification(
        db,
        organization_id=organization_id,
        notification_type="overage_paid",
        title="Overage payment received",
        message=(
            f"Your overage payment of ${Decimal(str(invoice.amount)):.2f} has been processed. "
            "You can now upgrade your plan and add team members."
        ),
    )
    logger.info("overage_billing: invoice=%s paid transaction=%s", invoice_id, transaction_id)
    return True


def credit_overage_pack(db: Session, *, organization_id: int, minutes: int, transaction_id: str | None) -> int:
    """Add purchased minutes to the organization's overage credits; returns the new balance."""
    if int(minutes) <= 0:
        raise ValueError("Pack minutes must be positive")

    if transaction_id:
        already_credited = db.execute(
            text(
                """
                SELECT o.overage_credits
                FROM overage_transactions t
                JOIN organizations o ON o.id = t.organization_id
                WHERE t.transaction_type = 'pack_purchase'
                  AND t.external_id = :transaction_id
                """
            ),
            {"transaction_id": transaction_id},
        ).first()
        if already_credited:
            logger.info("overage_billing: pack transaction=%s already credited", transaction_id)
            return int(already_credited.overage_credits or 0)

    updated = db.execute(
        text(
            """
            UPDATE organizations
            SET overage_credits = COALESCE(overage_credits, 0) + :minutes
            WHERE id = :organization_id
            RETURNING overage_credits
            """
        ),
        {"minutes": int(minutes), "organization_id": organization_id},
    ).first()
    if not updated:
        raise ValueError("Organization not found")

    db.execute(
        text(
            """
            INSERT INTO overage_transactions (organization_id, transaction_type, minutes, amount, external_id, created_at)
            VALUES (:organization_id, 'pack_purchase', :minutes, :amount, :external_id, :now)
            """
        ),
        {
            "organization_id": organization_id,
            "minutes": int(minutes),
            "amount": _money(Decimal(int(minutes)) * OVERAGE_RATE),
            "external_id": transaction_id,
            "now": utc_now(),
        },
    )
    return int(updated.overage_credits)


def reset_overage_minutes(db: Session, *, organization_id: int) -> bool:
    """
    Clears overage state when a subscription renews. Unpaid debt survives the renewal;
    returns False when the organization still owes an invoice.
    """
    updated = db.execute(
        text(
            """
            UPDATE organizations
            SET overage_debt = 0,
                overage_debt_due_date = NULL,
                has_unpaid_overage = :unpaid,
                can_upgrade = :can_upgrade,
                overage_payment_status = 'none'
            WHERE id = :organization_id
              AND has_unpaid_overage = :unpaid
            """
        ),
        {"organization_id": organization_id, "unpaid": False, "can_upgrade": True},
    ).rowcount
    if not updated:
        logger.info("overage: renewal reset skipped org=%s (unpaid overage or unknown org)", organization_id)
        return False

    db.execute(
        text(
            """
            INSERT INTO overage_transactions (organization_id, transaction_type, minutes, amount, created_at)
            VALUES (:organization_id, 'reset', 0, 0, :now)
            """
        ),
        {"organization_id": organization_id, "now": utc_now()},
    )
    return True


def invoice_due_overages(db: Session, *, today: date | None = None, now: datetime | None = None) -> list[dict]:
    """
    Invoices every organization that ends its billing period in overage.
    Runs before the monthly reset zeroes the counters; invoices are idempotent per period.
    """
    now = now or utc_now()
    today = today or now.date()
    rows = db.execute(
        text(
            """
            SELECT id, plan, usage_minutes_current, usage_minutes_limit
            FROM organizations
            WHERE usage_reset_date IS NOT NULL
              AND usage_reset_date <= :today
              AND usage_minutes_current > 0
            ORDER BY id
            """
        ),
        {"today": today},
    ).all()

    invoices: list[dict] = []
    for row in rows:
        limit = int(row.usage_minutes_limit or get_plan_limit(row.plan))
        if int(row.usage_minutes_current or 0) <= limit:
            continue
        invoice = create_overage_invoice(db, organization_id=int(row.id), now=now)
        if invoice:
            invoices.append({"organization_id": int(row.id), **invoice})
    if invoices:
        logger.info("overage_billing: invoiced %s organizations before reset", len(invoices))
    return invoices
