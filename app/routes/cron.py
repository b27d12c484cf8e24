"""
Scheduled jobs, triggered by an external scheduler with
`Authorization: Bearer <CRON_SECRET>`. GET is accepted alongside POST so
simple schedulers can hit the same URLs.
"""
import logging
from collections import defaultdict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.config import settings as core_settings
from app.database import get_db
from app.dependencies.auth import require_cron_secret
from app.services.email import send_admin_notification_email, send_commission_approved_email
from app.services.gdpr import process_due_deletions
from app.services.ledger import RESET_WINDOW_LAST_DAY, reset_monthly_usage
from app.services.overage_billing import invoice_due_overages
from app.services.partner_commissions import process_monthly_commissions, process_payouts
from app.utils.dates import utc_now


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.api_route("/monthly-reset", methods=["GET", "POST"])
def cron_monthly_reset(db: Session = Depends(get_db)):
    today = utc_now().date()

    invoices: list[dict] = []
    if today.day <= RESET_WINDOW_LAST_DAY:
        invoices = invoice_due_overages(db, today=today)
        db.commit()

    result = reset_monthly_usage(db, today=today)
    if not result.get("skipped"):
        try:
            send_admin_notification_email(
                subject=f"Monthly usage reset completed ({result['month']})",
                body=(
                    f"Organizations reset: {result['reset_count']}\n"
                    f"Overage invoices created: {len(invoices)}\n"
                ),
            )
        except Exception:
            logger.warning("cron: monthly reset admin email failed", exc_info=True)

    return {**result, "invoices_created": len(invoices)}


@router.api_route("/partner-commissions", methods=["GET", "POST"])
def cron_partner_commissions(db: Session = Depends(get_db)):
    today = utc_now().date()
    if core_settings.is_production and today.day != 1:
        return {"success": True, "skipped": True, "reason": "not_first_of_month"}

    result = process_monthly_commissions(db, today=today)

    by_partner: dict[str, dict] = defaultdict(lambda: {"amount_cents": 0, "count": 0, "name": ""})
    for row in result["approved"]:
        if not row.get("email"):
            continue
        entry = by_partner[row["email"]]
        entry["amount_cents"] += int(row["amount_cents"] or 0)
        entry["count"] += 1
        entry["name"] = row.get("company_name") or "Partner"

    emails_sent = 0
    for email, entry in by_partner.items():
        try:
            if send_commission_approved_email(
                to_email=email,
                partner_name=entry["name"],
                amount_cents=entry["amount_cents"],
                commission_count=entry["count"],
            ):
                emails_sent += 1
        except Exception:
            logger.exception("cron: commission approval email failed to=%s", email)

    return {
        "success": True,
        "skipped": False,
        "month": result["month"],
        "created": result["created"],
        "skipped_referrals": result["skipped"],
        "approved": len(result["approved"]),
        "emails_sent": emails_sent,
    }


@router.api_route("/payouts", methods=["GET", "POST"])
def cron_payouts(db: Session = Depends(get_db)):
    payouts = process_payouts(db)
    return {
        "success": True,
        "payouts": payouts,
        "total_cents": sum(payout["amount_cents"] for payout in payouts),
    }


@router.api_route("/gdpr-deletions", methods=["GET", "POST"])
def cron_gdpr_deletions(db: Session = Depends(get_db)):
    return {"success": True, **process_due_deletions(db)}
