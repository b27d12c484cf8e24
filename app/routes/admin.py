import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.database import get_db
from app.dependencies.auth import require_admin_token
from app.services.call_cleanup import cleanup_stuck_calls
from app.services.gdpr import get_pending_deletions
from app.utils.system import get_system_stats


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])


@router.post("/cleanup-stuck-calls")
def admin_cleanup_stuck_calls(
    threshold_minutes: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
):
    result = cleanup_stuck_calls(db, threshold_minutes=threshold_minutes)
    return result.to_dict()


@router.get("/stats")
def admin_stats(db: Session = Depends(get_db)):
    calls_by_status = {
        row.status: int(row.total)
        for row in db.execute(text("SELECT status, COUNT(*) AS total FROM calls GROUP BY status")).all()
    }
    counts = db.execute(
        text(
            """
            SELECT
                (SELECT COUNT(*) FROM organizations) AS organizations,
                (SELECT COUNT(*) FROM users) AS users,
                (SELECT COUNT(*) FROM processing_locks) AS active_locks,
                (SELECT COUNT(*) FROM overage_invoices WHERE status = 'pending') AS unpaid_invoices
            """
        )
    ).first()

    return {
        "system": get_system_stats(),
        "organizations": int(counts.organizations or 0),
        "users": int(counts.users or 0),
        "active_locks": int(counts.active_locks or 0),
        "unpaid_invoices": int(counts.unpaid_invoices or 0),
        "calls_by_status": calls_by_status,
        "pending_deletions": len(get_pending_deletions(db)),
    }
