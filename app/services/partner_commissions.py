"""
Partner commissions.

Each active partner referral earns a recurring commission on the referred organization's
subscription for at most MAX_EARNING_MONTHS months. Commissions start `pending`, become
`approved` after HOLDING_PERIOD_DAYS, and are swept into a payout once a partner's approved
total reaches their minimum payout. A reversal after payout is booked as a negative adjustment.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.utils.dates import add_months, month_key, previous_month_key, to_datetime, utc_now


logger = logging.getLogger(__name__)

STANDARD_RATE = Decimal("0.25")
PREMIUM_RATE = Decimal("0.30")
HOLDING_PERIOD_DAYS = 30
MAX_EARNING_MONTHS = 12
MIN_PAYOUT_CENTS = 10000
PAYOUT_DAY = 15


def calculate_commission(amount_cents: int, rate: Decimal | float, months_active: int) -> int:
    if months_active >= MAX_EARNING_MONTHS:
        return 0
    amount = Decimal(int(amount_cents or 0)) * Decimal(str(rate))
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def rate_for_partner(tier: str | None, custom_rate=None) -> Decimal:
    if custom_rate is not None:
        return Decimal(str(custom_rate))
    return PREMIUM_RATE if (tier or "").lower() == "premium" else STANDARD_RATE


# ---------------------------------------------------------------------------
# Partner lifecycle
# ---------------------------------------------------------------------------

def apply_as_partner(db: Session, *, user_id: int | None, company_name: str, email: str) -> dict:
    clean_email = (email or "").strip().lower()
    if not (company_name or "").strip() or "@" not in clean_email:
        raise ValueError("Company name and a valid email are required")

    existing = db.execute(
        text("SELECT id, status FROM partners WHERE LOWER(email) = :email"),
        {"email": clean_email},
    ).first()
    if existing:
        raise ValueError("A partner application already exists for this email")

    row = db.execute(
        text(
            """
            INSERT INTO partners (user_id, company_name, email, status, tier, minimum_payout_cents, created_at)
            VALUES (:user_id, :company_name, :email, 'pending', 'standard', :minimum, :now)
            RETURNING id
            """
        ),
        {
            "user_id": user_id,
            "company_name": company_name.strip(),
            "email": clean_email,
            "minimum": MIN_PAYOUT_CENTS,
            "now": utc_now(),
        },
    ).first()
    return {"partner_id": int(row.id), "status": "pending"}


def review_partner_application(db: Session, *, partner_id: int, approve: bool, tier: str = "standard") -> dict:
    partner = db.execute(
        text("SELECT id, status FROM partners WHERE id = :id"),
        {"id": partner_id},
    ).first()
    if not partner:
        raise LookupError("Partner not found")
    if partner.status != "pending":
        raise ValueError("Application has already been reviewed")

    status = "active" if approve else "rejected"
    db.execute(
        text("UPDATE partners SET status = :status, tier = :tier WHERE id = :id"),
        {"status": status, "tier": tier if tier in ("standard", "premium") else "standard", "id": partner_id},
    )
    return {"partner_id": partner_id, "status": status}


def register_partner_referral(
    db: Session,
    *,
    partner_id: int,
    organization_id: int,
    subscription_amount_cents: int,
    now: datetime | None = None,
) -> int:
    """Links a paying organization to a partner. One referral per organization."""
    existing = db.execute(
        text("SELECT id FROM partner_referrals WHERE organization_id = :organization_id"),
        {"organization_id": organization_id},
    ).first()
    if existing:
        db.execute(
            text("UPDATE partner_referrals SET subscription_amount_cents = :amount WHERE id = :id"),
            {"amount": int(subscription_amount_cents), "id": existing.id},
        )
        return int(existing.id)

    now = now or utc_now()
    row = db.execute(
        text(
            """
            INSERT INTO partner_referrals (partner_id, organization_id, status, subscription_amount_cents,
                                           months_active, first_payment_at, created_at)
            VALUES (:partner_id, :organization_id, 'active', :amount, 0, :now, :now)
            RETURNING id
            """
        ),
        {"partner_id": partner_id, "organization_id": organization_id, "amount": int(subscription_amount_cents), "now": now},
    ).first()
    return int(row.id)


# ---------------------------------------------------------------------------
# Monthly processing
# ---------------------------------------------------------------------------

def approve_held_commissions(db: Session, *, now: datetime) -> list[dict]:
    cutoff = now - timedelta(days=HOLDING_PERIOD_DAYS)
    rows = db.execute(
        text(
            """
            SELECT c.id, c.partner_id, c.amount_cents, c.month, p.email, p.company_name
            FROM partner_commissions c
            JOIN partners p ON p.id = c.partner_id
            WHERE c.status = 'pending'
              AND c.created_at <= :cutoff
              AND p.status = 'active'
            ORDER BY c.id
            """
        ),
        {"cutoff": cutoff},
    ).mappings().all()

    for row in rows:
        db.execute(
            text("UPDATE partner_commissions SET status = 'approved', approved_at = :now WHERE id = :id"),
            {"now": now, "id": row["id"]},
        )
    return [dict(row) for row in rows]


def process_monthly_commissions(db: Session, *, today: date | None = None, now: datetime | None = None) -> dict:
    now = now or utc_now()
    today = today or now.date()
    month = previous_month_key(today)

    referrals = db.execute(
        text(
            """
            SELECT r.id, r.partner_id, r.organization_id, r.subscription_amount_cents, r.months_active,
                   p.tier, p.commission_rate
            FROM partner_referrals r
            JOIN partners p ON p.id = r.partner_id
            WHERE r.status = 'active'
              AND p.status = 'active'
            ORDER BY r.id
            """
        )
    ).all()

    created = 0
    skipped = 0
    for referral in referrals:
        months_active = int(referral.months_active or 0)
        if months_active >= MAX_EARNING_MONTHS:
            skipped += 1
            continue

        already = db.execute(
            text(
                """
                SELECT 1 FROM partner_commissions
                WHERE referral_id = :referral_id
                  AND month = :month
                  AND commission_type = 'recurring'
                """
            ),
            {"referral_id": referral.id, "month": month},
        ).first()
        if already:
            skipped += 1
            continue

        rate = rate_for_partner(referral.tier, referral.commission_rate)
        amount = calculate_commission(referral.subscription_amount_cents, rate, months_active)
        if amount <= 0:
            skipped += 1
            continue

        db.execute(
            text(
                """
                INSERT INTO partner_commissions (partner_id, referral_id, organization_id, amount_cents,
                                                 base_amount_cents, commission_rate, month, commission_type,
                                                 status, created_at)
                VALUES (:partner_id, :referral_id, :organization_id, :amount, :base, :rate, :month,
                        'recurring', 'pending', :now)
                """
            ),
            {
                "partner_id": referral.partner_id,
                "referral_id": referral.id,
                "organization_id": referral.organization_id,
                "amount": amount,
                "base": int(referral.subscription_amount_cents or 0),
                "rate": rate,
                "month": month,
                "now": now,
            },
        )
        db.execute(
            text("UPDATE partner_referrals SET months_active = months_active + 1 WHERE id = :id"),
            {"id": referral.id},
        )
        created += 1

    approved = approve_held_commissions(db, now=now)
    db.commit()

    logger.info(
        "partner_commissions: month=%s created=%s skipped=%s approved=%s",
        month,
        created,
        skipped,
        len(approved),
    )
    return {"month": month, "created": created, "skipped": skipped, "approved": approved}


def process_payouts(db: Session, *, today: date | None = None) -> list[dict]:
    today = today or utc_now().date()
    partners = db.execute(
        text("SELECT id, minimum_payout_cents FROM partners WHERE status = 'active' ORDER BY id")
    ).all()

    payouts: list[dict] = []
    now = utc_now()
    for partner in partners:
        commissions = db.execute(
            text(
                """
                SELECT id, amount_cents FROM partner_commissions
                WHERE partner_id = :partner_id
                  AND status = 'approved'
                  AND payout_id IS NULL
                """
            ),
            {"partner_id": partner.id},
        ).all()
        total = sum(int(row.amount_cents) for row in commissions)
        minimum = int(partner.minimum_payout_cents or MIN_PAYOUT_CENTS)
        if not commissions or total < minimum:
            continue

        payout = db.execute(
            text(
                """
                INSERT INTO partner_payouts (partner_id, amount_cents, commission_count, status, period_end, created_at)
                VALUES (:partner_id, :amount, :count, 'pending', :period_end, :now)
                RETURNING id
                """
            ),
            {"partner_id": partner.id, "amount": total, "count": len(commissions), "period_end": today, "now": now},
        ).first()
        for row in commissions:
            db.execute(
                text(
                    """
                    UPDATE partner_commissions
                    SET status = 'paid', payout_id = :payout_id, paid_at = :now
                    WHERE id = :id
                    """
                ),
                {"payout_id": payout.id, "now": now, "id": row.id},
            )
        payouts.append({"payout_id": int(payout.id), "partner_id": int(partner.id), "amount_cents": total})

    db.commit()
    if payouts:
        logger.info("partner_commissions: created %s payouts", len(payouts))
    return payouts


def reverse_commission(db: Session, *, commission_id: int, reason: str) -> dict:
    commission = db.execute(
        text(
            """
            SELECT id, partner_id, referral_id, organization_id, amount_cents, base_amount_cents,
                   commission_rate, month, status
            FROM partner_commissions
            WHERE id = :id
            """
        ),
        {"id": commission_id},
    ).first()
    if not commission:
        raise LookupError("Commission not found")
    if commission.status == "reversed":
        raise ValueError("Commission already reversed")

    now = utc_now()
    if commission.status == "paid":
        row = db.execute(
            text(
                """
                INSERT INTO partner_commissions (partner_id, referral_id, organization_id, amount_cents,
                                                 base_amount_cents, commission_rate, month, commission_type,
                                                 status, reversal_reason, approved_at, created_at)
                VALUES (:partner_id, :referral_id, :organization_id, :amount, :base, :rate, :month,
                        'adjustment', 'approved', :reason, :now, :now)
                RETURNING id
                """
            ),
            {
                "partner_id": commission.partner_id,
                "referral_id": commission.referral_id,
                "organization_id": commission.organization_id,
                "amount": -int(commission.amount_cents),
                "base": int(commission.base_amount_cents or 0),
                "rate": commission.commission_rate,
                "month": commission.month,
                "reason": reason,
                "now": now,
            },
        ).first()
        logger.warning("partner_commissions: paid commission=%s reversed by adjustment=%s", commission_id, row.id)
        return {"commission_id": commission_id, "adjustment_id": int(row.id), "status": "adjusted"}

    db.execute(
        text("UPDATE partner_commissions SET status = 'reversed', reversal_reason = :reason WHERE id = :id"),
        {"reason": reason, "id": commission_id},
    )
    return {"commission_id": commission_id, "status": "reversed"}


def next_payout_date(today: date) -> date:
    return add_months(today.replace(day=1), 1).replace(day=PAYOUT_DAY)


def get_partner_earnings(db: Session, *, partner_id: int, today: date | None = None) -> dict:
    today = today or utc_now().date()
    rows = db.execute(
        text(
            """
            SELECT amount_cents, status, month, created_at
            FROM partner_commissions
            WHERE partner_id = :partner_id
              AND status != 'reversed'
            """
        ),
        {"partner_id": partner_id},
    ).all()

    this_month = month_key(today)
    last_month = previous_month_key(today)
    totals = {"total": 0, "pending": 0, "approved": 0, "paid": 0, "this_month": 0, "last_month": 0}
    for row in rows:
        amount = int(row.amount_cents or 0)
        totals["total"] += amount
        if row.status in ("pending", "approved", "paid"):
            totals[row.status] += amount
        created_at = to_datetime(row.created_at)
        if created_at and month_key(created_at) == this_month:
            totals["this_month"] += amount
        if row.month == last_month:
            totals["last_month"] += amount

    return {
        "total_cents": totals["total"],
        "pending_cents": totals["pending"],
        "approved_cents": totals["approved"],
        "paid_cents": totals["paid"],
        "this_month_cents": totals["this_month"],
        "last_month_cents": totals["last_month"],
        "next_payout_cents": totals["approved"],
        "next_payout_date": next_payout_date(today).isoformat(),
    }
