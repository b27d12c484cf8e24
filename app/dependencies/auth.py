"""
Session authentication and organization scoping for API routes.
The session cookie carries user_id; the organization is resolved from membership.
"""
from __future__ import annotations

import hmac

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.core.config import settings as core_settings
from app.database import get_db
from app.repositories.org_scope import OrgScope, get_membership


def session_user_id(request: Request) -> int | None:
    raw = request.session.get("user_id")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def current_org(
    request: Request,
    db: Session = Depends(get_db),
) -> OrgScope:
    """
    Raises 401 without a session, 400 when the user belongs to no organization.
    Returns the scope every organization-owned query must go through.
    """
    user_id = session_user_id(request)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    membership = get_membership(db, user_id)
    if not membership:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No organization found")

    return OrgScope(
        organization_id=int(membership["organization_id"]),
        user_id=user_id,
        role=(membership.get("role") or "member").lower(),
        email=membership.get("email"),
        full_name=membership.get("full_name"),
    )


def optional_org(
    request: Request,
    db: Session = Depends(get_db),
) -> OrgScope | None:
    if not session_user_id(request):
        return None
    return current_org(request, db)


def require_org_admin(scope: OrgScope = Depends(current_org)) -> OrgScope:
    if not scope.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only organization owners and admins can perform this action",
        )
    return scope


def require_cron_secret(authorization: str | None = Header(default=None)) -> None:
    expected = core_settings.CRON_SECRET
    provided = (authorization or "").strip()
    if not expected or not hmac.compare_digest(provided.encode(), f"Bearer {expected}".encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def require_admin_token(x_admin_token: str | None = Header(default=None)) -> None:
    expected = core_settings.ADMIN_TOKEN
    if not expected or not hmac.compare_digest((x_admin_token or "").strip().encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")
