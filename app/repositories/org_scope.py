"""
Tenant isolation: every read/write of an organization-owned row goes through
OrgScope, which always adds `organization_id = :organization_id`.
A row owned by another organization looks exactly like a missing row.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from sqlalchemy import text
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

ORG_OWNED_TABLES = frozenset(
    {
        "calls",
        "carriers",
        "loads",
        "load_activities",
        "rate_confirmations",
        "extraction_templates",
        "twilio_phone_numbers",
        "overage_invoices",
        "usage_logs",
    }
)
ADMIN_ROLES = frozenset({"owner", "admin"})
_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")


def _check_table(table: str) -> str:
    if table not in ORG_OWNED_TABLES:
        raise ValueError(f"not an organization-owned table: {table}")
    return table


def _check_column(column: str) -> str:
    if not _IDENTIFIER.match(column or ""):
        raise ValueError(f"invalid column name: {column}")
    return column


# ---------------------------------------------------------------------------
# Membership
# ---------------------------------------------------------------------------

def get_membership(db: Session, user_id: int) -> dict[str, Any] | None:
    """Primary organization for a user: owner memberships first, then oldest."""
    row = db.execute(
        text("""
            SELECT uo.organization_id, uo.role, u.email, u.full_name
            FROM user_organizations uo
            JOIN users u ON u.id = uo.user_id
            WHERE uo.user_id = :user_id
            ORDER BY CASE WHEN uo.role = 'owner' THEN 0 ELSE 1 END, uo.id
            LIMIT 1
        """),
        {"user_id": user_id},
    ).mappings().first()
    return dict(row) if row else None


# ---------------------------------------------------------------------------
# Scope
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OrgScope:
    organization_id: int
    user_id: int
    role: str = "member"
    email: str | None = None
    full_name: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    def get_owned(self, db: Session, table: str, record_id: int) -> dict[str, Any] | None:
        row = db.execute(
            text(f"SELECT * FROM {_check_table(table)} WHERE id = :id AND organization_id = :organization_id"),
            {"id": record_id, "organization_id": self.organization_id},
        ).mappings().first()
        return dict(row) if row else None

    def require_owned(self, db: Session, table: str, record_id: int) -> dict[str, Any]:
        row = self.get_owned(db, table, record_id)
        if row is None:
            logger.info("org_scope: %s id=%s not visible to org=%s", table, record_id, self.organization_id)
            raise LookupError(f"{table} {record_id} not found")
        return row

    def list_owned(
        self,
        db: Session,
        table: str,
        *,
        filters: dict[str, Any] | None = None,
        order_by: str = "created_at",
        descending: bool = True,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        clauses = ["organization_id = :organization_id"]
        params: dict[str, Any] = {"organization_id": self.organization_id, "limit": limit, "offset": offset}
        for index, (column, value) in enumerate((filters or {}).items()):
            clauses.append(f"{_check_column(column)} = :f{index}")
            params[f"f{index}"] = value
        direction = "DESC" if descending else "ASC"
        rows = db.execute(
            text(
                f"SELECT * FROM {_check_table(table)} WHERE {' AND '.join(clauses)} "
                f"ORDER BY {_check_column(order_by)} {direction}, id {direction} LIMIT :limit OFFSET :offset"
            ),
            params,
        ).mappings().all()
        return [dict(row) for row in rows]

    def update_owned(self, db: Session, table: str, record_id: int, values: dict[str, Any]) -> bool:
        if not values:
            return False
        assignments = ", ".join(f"{_check_column(column)} = :v_{column}" for column in values)
        params = {f"v_{column}": value for column, value in values.items()}
        params.update({"id": record_id, "organization_id": self.organization_id})
        result = db.execute(
            text(
                f"UPDATE {_check_table(table)} SET {assignments} "
                "WHERE id = :id AND organization_id = :organization_id"
            ),
            params,
        )
        return bool(result.rowcount)
