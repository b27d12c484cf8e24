from __future__ import annotations

import json
import logging

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.utils.dates import utc_now

logger = logging.getLogger(__name__)


def create_notification(
    db: Session,
    *,
    notification_type: str,
    title: str,
    message: str,
    user_id: int | None = None,
    organization_id: int | None = None,
    link: str | None = None,
) -> int:
    row = db.execute(
        text(
            """
            INSERT INTO notifications (user_id, organization_id, notification_type, title, message, link, is_read, created_at)
            VALUES (:user_id, :organization_id, :notification_type, :title, :message, :link, :is_read, :created_at)
            RETURNING id
            """
        ),
        {
            "user_id": user_id,
            "organization_id": organization_id,
            "notification_type": notification_type,
            "title": title,
            "message": message,
            "link": link,
            "is_read": False,
            "created_at": utc_now(),
        },
    ).first()
    return int(row.id) if row else 0


def org_admin_recipients(db: Session, *, organization_id: int) -> list[dict]:
    rows = db.execute(
        text(
            """
            SELECT u.id AS user_id, u.email, u.full_name
            FROM user_organizations uo
            JOIN users u ON u.id = uo.user_id
            WHERE uo.organization_id = :organization_id
              AND uo.role IN ('owner', 'admin')
            ORDER BY uo.id
            """
        ),
        {"organization_id": organization_id},
    ).mappings().all()
    return [dict(row) for row in rows]


def record_audit_log(
    db: Session,
    *,
    action: str,
    user_id: int | None = None,
    organization_id: int | None = None,
    resource_type: str | None = None,
    resource_id: str | int | None = None,
    details: dict | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> None:
    db.execute(
        text(
            """
            INSERT INTO audit_logs (user_id, organization_id, action, resource_type, resource_id, details, ip_address, user_agent, created_at)
            VALUES (:user_id, :organization_id, :action, :resource_type, :resource_id, :details, :ip_address, :user_agent, :created_at)
            """
        ),
        {
            "user_id": user_id,
            "organization_id": organization_id,
            "action": action,
            "resource_type": resource_type,
            "resource_id": str(resource_id) if resource_id is not None else None,
            "details": json.dumps(details or {}, default=str),
            "ip_address": ip_address,
            "user_agent": user_agent,
            "created_at": utc_now(),
        },
    )
    logger.debug("audit: %s %s:%s user=%s", action, resource_type, resource_id, user_id)
