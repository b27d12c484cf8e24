"""Usage ledger: minutes billed per call, plan limits and the monthly reset."""

from __future__ import annotations

import logging
import math
from datetime import date
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.core.config import settings
from app.utils.dates import add_months, month_key, to_date, utc_now


logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

PLAN_LIMITS: dict[str, int] = {
    "free": 30,
    "solo": 500,
    "starter": 1500,
    "professional": 4000,
    "enterprise": 15000,
    "custom": 999999,
}

RESET_WINDOW_LAST_DAY = 5
MONTHLY_RESET_LOG_TYPE = "monthly_usage_reset"


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def get_plan_limit(plan: str | None) -> int:
    return PLAN_LIMITS.get((plan or "free").strip().lower(), PLAN_LIMITS["free"])


def minutes_from_seconds(seconds: int | float | None) -> int:
    return int(math.ceil(float(seconds or 0) / 60))


def usage_status(used: int, limit: int) -> str:
    if limit <= 0 or used >= limit:
        return "overage"
    if used >= limit * 0.9:
        return "warning"
    return "ok"


def usage_warning_level(percent: float) -> str | None:
    if percent >= 100:
        return "exceeded"
    if percent >= 90:
        return "high"
    if percent >= 80:
        return "medium"
    if percent >= 70:
        return "low"
    return None


def has_recorded_usage(db: Session, *, call_id: int, usage_type: str = "transcription") -> bool:
    row = db.execute(
        text("SELECT 1 FROM usage_logs WHERE call_id = :call_id AND usage_type = :usage_type LIMIT 1"),
        {"call_id": call_id, "usage_type": usage_type},
    ).first()
    return row is not None


def record_call_usage(
    db: Session,
    *,
    organization_id: int,
    call_id: int,
    minutes: int,
    user_id: int | None = None,
    usage_type: str = "transcription",
) -> dict[str, int | bool]:
    existing = db.execute(
        text(
            """
            SELECT id
            FROM usage_logs
            WHERE call_id = :call_id
              AND usage_type = :usage_type
            LIMIT 1
            """
        ),
        {"call_id": call_id, "usage_type": usage_type},
    ).first()
    if existing:
        return {
            "created": False,
            "usage_log_id": int(existing.id),
        }

    org = db.execute(
        text(
            """
            SELECT usage_minutes_current, usage_minutes_limit, plan
            FROM organizations
            WHERE id = :organization_id
            """
        ),
        {"organization_id": organization_id},
    ).first()
    if not org:
        raise ValueError("organization_not_found")

    minutes_used = max(int(minutes or 0), 0)
    current = int(org.usage_minutes_current or 0)
    limit = int(org.usage_minutes_limit or get_plan_limit(org.plan))
    is_overage = current + minutes_used > limit

    log_row = db.execute(
        text(
            """
            INSERT INTO usage_logs (organization_id, user_id, call_id, usage_type, minutes_used, is_overage, created_at)
            VALUES (:organization_id, :user_id, :call_id, :usage_type, :minutes_used, :is_overage, :created_at)
            RETURNING id
            """
        ),
        {
            "organization_id": organization_id,
            "user_id": user_id,
            "call_id": call_id,
            "usage_type": usage_type,
            "minutes_used": minutes_used,
            "is_overage": is_overage,
            "created_at": utc_now(),
        },
    ).first()

    # Increment in SQL so concurrent completions do not lose minutes.
    db.execute(
        text(
            """
            UPDATE organizations
            SET usage_minutes_current = COALESCE(usage_minutes_current, 0) + :minutes
            WHERE id = :organization_id
            """
        ),
        {"minutes": minutes_used, "organization_id": organization_id},
    )

    if is_overage:
        logger.info(
            "ledger: overage usage org=%s call=%s minutes=%s (was %s/%s)",
            organization_id,
            call_id,
            minutes_used,
            current,
            limit,
        )

    return {
        "created": True,
        "usage_log_id": int(log_row.id) if log_row else 0,
        "minutes_used": minutes_used,
        "is_overage": is_overage,
        "usage_minutes_current": current + minutes_used,
    }


def get_usage_overview(db: Session, *, organization_id: int) -> dict | None:
    org = db.execute(
        text(
            """
            SELECT id, plan, usage_minutes_current, usage_minutes_limit, usage_reset_date,
                   bonus_minutes_balance, overage_credits
            FROM organizations
            WHERE id = :organization_id
            """
        ),
        {"organization_id": organization_id},
    ).first()
    if not org:
        return None

    used = int(org.usage_minutes_current or 0)
    limit = int(org.usage_minutes_limit or get_plan_limit(org.plan))
    percent = round(used / limit * 100, 1) if limit else 100.0
    overage_minutes = max(0, used - limit)
    overage_charge = min(
        _money(Decimal(overage_minutes) * Decimal(str(settings.OVERAGE_RATE))),
        Decimal(str(settings.OVERAGE_CAP)),
    )

    reset_date = to_date(org.usage_reset_date)
    period_start = add_months(reset_date, -1) if reset_date else None
    calls_params: dict = {"organization_id": organization_id}
    period_clause = ""
    if period_start:
        period_clause = "AND created_at >= :period_start"
        calls_params["period_start"] = period_start
    calls_this_period = db.execute(
        text(
            f"""
            SELECT COUNT(*)
            FROM usage_logs
            WHERE organization_id = :organization_id
            {period_clause}
            """
        ),
        calls_params,
    ).scalar_one()

    return {
        "plan": org.plan,
        "minutes_used": used,
        "minutes_limit": limit,
        "minutes_remaining": max(0, limit - used),
        "percent_used": percent,
        "status": usage_status(used, limit),
        "warning_level": usage_warning_level(percent),
        "overage_minutes": overage_minutes,
        "overage_charge": float(overage_charge),
        "bonus_minutes": int(org.bonus_minutes_balance or 0),
        "overage_credits": int(org.overage_credits or 0),
        "calls_this_period": int(calls_this_period or 0),
        "reset_date": reset_date.isoformat() if reset_date else None,
    }


def reset_monthly_usage(db: Session, *, today: date | None = None) -> dict:
    """Zero usage counters for organizations whose reset date has arrived.

    Runs from cron on the first days of the month; a system_logs row per
    YYYY-MM makes reruns no-ops. Commits its own work.
    """
    today = today or utc_now().date()
    month = month_key(today)

    if today.day > RESET_WINDOW_LAST_DAY:
        return {"success": True, "skipped": True, "reason": "outside_reset_window", "reset_count": 0, "month": month}

    already_ran = db.execute(
        text(
            """
            SELECT id
            FROM system_logs
            WHERE log_type = :log_type
              AND log_key = :month
            LIMIT 1
            """
        ),
        {"log_type": MONTHLY_RESET_LOG_TYPE, "month": month},
    ).first()
    if already_ran:
        return {"success": True, "skipped": True, "reason": "already_reset", "reset_count": 0, "month": month}

    due_rows = db.execute(
        text(
            """
            SELECT id, usage_reset_date
            FROM organizations
            WHERE usage_reset_date IS NULL
               OR usage_reset_date <= :today
            """
        ),
        {"today": today},
    ).all()

    for row in due_rows:
        current_reset = to_date(row.usage_reset_date) or today
        next_reset = add_months(current_reset, 1)
        while next_reset <= today:
            next_reset = add_months(next_reset, 1)
        db.execute(
            text(
                """
                UPDATE organizations
                SET usage_minutes_current = 0,
                    usage_reset_date = :next_reset
                WHERE id = :organization_id
                """
            ),
            {"next_reset": next_reset, "organization_id": int(row.id)},
        )

    db.execute(
        text(
            """
            INSERT INTO system_logs (log_type, log_key, message, created_at)
            VALUES (:log_type, :month, :message, :created_at)
            """
        ),
        {
            "log_type": MONTHLY_RESET_LOG_TYPE,
            "month": month,
            "message": f"Monthly usage reset: {len(due_rows)} organizations",
            "created_at": utc_now(),
        },
    )
    db.commit()

    logger.info("ledger: monthly reset month=%s organizations=%s", month, len(due_rows))
    return {"success": True, "skipped": False, "reset_count": len(due_rows), "month": month}
