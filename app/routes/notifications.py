import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.database import get_db
from app.dependencies.auth import current_org
from app.repositories.org_scope import OrgScope
from app.utils.dates import to_datetime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


class MarkReadRequest(BaseModel):
    notification_ids: list[int] | None = None


def _visible_clause() -> str:
    # Personal notifications plus ones addressed to the whole organization.
    return "(user_id = :user_id OR (user_id IS NULL AND organization_id = :organization_id))"


@router.get("")
def list_notifications(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=20, ge=1, le=100),
    scope: OrgScope = Depends(current_org),
    db: Session = Depends(get_db),
) -> dict:
    filters = _visible_clause()
    if unread_only:
        filters += " AND is_read = :is_read"
    rows = db.execute(
        text(
            f"""
            SELECT id, notification_type, title, message, link, is_read, created_at
            FROM notifications
            WHERE {filters}
            ORDER BY created_at DESC, id DESC
            LIMIT :limit
            """
        ),
        {"user_id": scope.user_id, "organization_id": scope.organization_id, "is_read": False, "limit": limit},
    ).all()

    notifications = []
    for row in rows:
        created_at = to_datetime(row.created_at)
        notifications.append({
            "id": int(row.id),
            "type": row.notification_type,
            "title": row.title,
            "message": row.message,
            "link": row.link,
            "is_read": bool(row.is_read),
            "created_at": created_at.isoformat() if created_at else None,
        })
    return {"notifications": notifications, "unread_count": _unread_count(db, scope)}


def _unread_count(db: Session, scope: OrgScope) -> int:
    count = db.execute(
        text(f"SELECT COUNT(*) FROM notifications WHERE {_visible_clause()} AND is_read = :is_read"),
        {"user_id": scope.user_id, "organization_id": scope.organization_id, "is_read": False},
    ).scalar()
    return int(count or 0)


@router.get("/unread-count")
def unread_count(scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)) -> dict:
    """Badge count; does not mark anything read."""
    return {"unread_count": _unread_count(db, scope)}


@router.post("/mark-read")
def mark_notifications_read(
    payload: MarkReadRequest | None = None,
    scope: OrgScope = Depends(current_org),
    db: Session = Depends(get_db),
) -> dict:
    params = {
        "user_id": scope.user_id,
        "organization_id": scope.organization_id,
        "is_read": False,
        "read": True,
    }
    sql = f"UPDATE notifications SET is_read = :read WHERE {_visible_clause()} AND is_read = :is_read"

    ids = payload.notification_ids if payload else None
    if ids:
        placeholders = ", ".join(f":id_{index}" for index in range(len(ids)))
        sql += f" AND id IN ({placeholders})"
        params.update({f"id_{index}": int(value) for index, value in enumerate(ids)})

    updated = db.execute(text(sql), params).rowcount
    db.commit()
    return {"updated": int(updated or 0)}
