"""
Carrier and load records. Every query goes through the caller's OrgScope, so a carrier or
load from another organization is reported as not found.
"""
from __future__ import annotations

import json
import logging
import math
import secrets
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.repositories.org_scope import OrgScope
from app.services.encryption import decrypt, encrypt, mask_value
from app.services.extraction import EQUIPMENT_TYPES
from app.services.load_workflow import (
    allowed_transitions,
    previous_status,
    status_progress,
    validate_transition,
)
from app.utils.dates import to_date, to_datetime, utc_now


logger = logging.getLogger(__name__)

CARRIER_STATUSES = {"active", "inactive", "blacklisted"}
CARRIER_FIELDS = (
    "carrier_name",
    "mc_number",
    "dot_number",
    "primary_contact",
    "dispatch_phone",
    "dispatch_email",
    "equipment_types",
    "status",
    "internal_rating",
    "notes",
)
LOAD_FIELDS = (
    "load_number",
    "shipper_name",
    "origin_city",
    "origin_state",
    "destination_city",
    "destination_state",
    "pickup_date",
    "pickup_time",
    "delivery_date",
    "delivery_time",
    "commodity",
    "weight_lbs",
    "equipment_type",
    "rate_to_shipper",
    "rate_to_carrier",
    "carrier_id",
    "special_instructions",
)
MAX_PAGE_SIZE = 100
RECENT_CONTACT_DAYS = 30


def _json_list(value) -> list:
    if not value:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return []
    return list(value) if isinstance(value, (list, tuple)) else []


def _money(value) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value).replace("$", "").replace(",", "").strip()).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid amount: {value}") from exc


def _page(page: int, limit: int) -> tuple[int, int, int]:
    page = max(int(page or 1), 1)
    limit = min(max(int(limit or 50), 1), MAX_PAGE_SIZE)
    return page, limit, (page - 1) * limit


def record_load_activity(
    db: Session,
    *,
    load_id: int,
    organization_id: int,
    activity_type: str,
    description: str,
    user_id: int | None = None,
    details: dict | None = None,
) -> None:
    db.execute(
        text(
            """
            INSERT INTO load_activities (load_id, organization_id, user_id, activity_type, description, details, created_at)
            VALUES (:load_id, :organization_id, :user_id, :activity_type, :description, :details, :now)
            """
        ),
        {
            "load_id": load_id,
            "organization_id": organization_id,
            "user_id": user_id,
            "activity_type": activity_type,
            "description": description,
            "details": json.dumps(details or {}, default=str),
            "now": utc_now(),
        },
    )


# ---------------------------------------------------------------------------
# Carriers
# ---------------------------------------------------------------------------

def _clean_carrier_values(data: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name in CARRIER_FIELDS:
        if name not in data:
            continue
        value = data[name]
        if isinstance(value, str):
            value = value.strip() or None
        if name == "equipment_types":
            types = [str(item).strip().lower() for item in _json_list(value)]
            unknown = [item for item in types if item not in EQUIPMENT_TYPES]
            if unknown:
                raise ValueError(f"Unknown equipment types: {', '.join(unknown)}")
            value = json.dumps(types)
        elif name == "status" and value is not None and value not in CARRIER_STATUSES:
            raise ValueError(f"Invalid carrier status: {value}")
        elif name == "internal_rating" and value is not None:
            rating = float(value)
            if not 0 <= rating <= 5:
                raise ValueError("Rating must be between 0 and 5")
            value = rating
        values[name] = value
    return values


def _present_carrier(row: dict) -> dict:
    carrier = dict(row)
    carrier["equipment_types"] = _json_list(carrier.get("equipment_types"))
    carrier["has_payment_details"] = bool(carrier.pop("payment_details_encrypted", None))
    return carrier


def list_carriers(
    db: Session,
    scope: OrgScope,
    *,
    search: str | None = None,
    status: str | None = None,
    equipment: str | None = None,
    page: int = 1,
    limit: int = 50,
) -> dict:
    page, limit, offset = _page(page, limit)
    clauses = ["organization_id = :organization_id"]
    params: dict[str, Any] = {"organization_id": scope.organization_id}

    if search:
        clauses.append(
            """(
                LOWER(carrier_name) LIKE :search
                OR LOWER(COALESCE(mc_number, '')) LIKE :search
                OR LOWER(COALESCE(dot_number, '')) LIKE :search
                OR LOWER(COALESCE(dispatch_phone, '')) LIKE :search
                OR LOWER(COALESCE(primary_contact, '')) LIKE :search
            )"""
        )
        params["search"] = f"%{search.strip().lower()}%"
    if status and status != "all":
        clauses.append("status = :status")
        params["status"] = status
    if equipment and equipment != "all":
        clauses.append("CAST(equipment_types AS TEXT) LIKE :equipment")
        params["equipment"] = f'%"{equipment}"%'

    where = " AND ".join(clauses)
    total = int(db.execute(text(f"SELECT COUNT(*) FROM carriers WHERE {where}"), params).scalar() or 0)
    rows = db.execute(
        text(
            f"""
            SELECT * FROM carriers
            WHERE {where}
            ORDER BY CASE WHEN last_used_date IS NULL THEN 1 ELSE 0 END, last_used_date DESC, created_at DESC, id DESC
            LIMIT :limit OFFSET :offset
            """
        ),
        {**params, "limit": limit, "offset": offset},
    ).mappings().all()
    carriers = [_present_carrier(row) for row in rows]

    recent_cutoff = utc_now() - timedelta(days=RECENT_CONTACT_DAYS)
    ratings = [float(c["internal_rating"]) for c in carriers if c.get("internal_rating") is not None]
    return {
        "carriers": carriers,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit) if total else 0,
        },
        "stats": {
            "total_carriers": total,
            "active_carriers": sum(1 for c in carriers if c.get("status") == "active"),
            "average_rating": round(sum(ratings) / len(ratings), 2) if ratings else 0,
            "with_recent_contact": sum(
                1
                for c in carriers
                if (to_datetime(c.get("last_contact_date")) or recent_cutoff) > recent_cutoff
            ),
        },
    }


def create_carrier(db: Session, scope: OrgScope, data: dict[str, Any]) -> dict:
    values = _clean_carrier_values(data)
    if not values.get("carrier_name"):
        raise ValueError("Carrier name is required")

    if values.get("mc_number"):
        duplicate = db.execute(
            text(
                """
                SELECT id FROM carriers
                WHERE organization_id = :organization_id
                  AND mc_number = :mc_number
                """
            ),
            {"organization_id": scope.organization_id, "mc_number": values["mc_number"]},
        ).first()
        if duplicate:
            raise ValueError("A carrier with this MC number already exists")

    values.setdefault("status", "active")
    values.setdefault("equipment_types", json.dumps([]))
    now = utc_now()
    columns = ", ".join(values)
    placeholders = ", ".join(f":{name}" for name in values)
    row = db.execute(
        text(
            f"""
            INSERT INTO carriers (organization_id, {columns}, created_at, updated_at)
            VALUES (:organization_id, {placeholders}, :now, :now)
            RETURNING id
            """
        ),
        {**values, "organization_id": scope.organization_id, "now": now},
    ).first()
    logger.info("crm: carrier created org=%s carrier=%s", scope.organization_id, row.id)
    return get_carrier(db, scope, int(row.id))


def get_carrier(db: Session, scope: OrgScope, carrier_id: int) -> dict:
    return _present_carrier(scope.require_owned(db, "carriers", carrier_id))


def update_carrier(db: Session, scope: OrgScope, carrier_id: int, data: dict[str, Any]) -> dict:
    scope.require_owned(db, "carriers", carrier_id)
    values = _clean_carrier_values(data)
    if "carrier_name" in values and not values["carrier_name"]:
        raise ValueError("Carrier name is required")
    if values:
        values["updated_at"] = utc_now()
        scope.update_owned(db, "carriers", carrier_id, values)
    return get_carrier(db, scope, carrier_id)


def set_carrier_payment_details(db: Session, scope: OrgScope, carrier_id: int, details: str) -> dict:
    scope.require_owned(db, "carriers", carrier_id)
    clean = (details or "").strip()
    scope.update_owned(
        db,
        "carriers",
        carrier_id,
        {"payment_details_encrypted": encrypt(clean) if clean else None, "updated_at": utc_now()},
    )
    return {"carrier_id": carrier_id, "payment_details": mask_value(clean)}


def get_carrier_payment_details(db: Session, scope: OrgScope, carrier_id: int) -> str:
    carrier = scope.require_owned(db, "carriers", carrier_id)
    return decrypt(carrier.get("payment_details_encrypted"))


# ---------------------------------------------------------------------------
# Loads
# ---------------------------------------------------------------------------

def _clean_load_values(db: Session, scope: OrgScope, data: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name in LOAD_FIELDS:
        if name not in data:
            continue
        value = data[name]
        if isinstance(value, str):
            value = value.strip() or None
        if name in ("pickup_date", "delivery_date") and value is not None:
            parsed = to_date(value)
            if parsed is None:
                raise ValueError(f"Invalid date for {name}")
            value = parsed
        elif name in ("rate_to_shipper", "rate_to_carrier"):
            value = _money(value)
        elif name in ("origin_state", "destination_state") and value:
            value = str(value).upper()[:2]
        elif name == "weight_lbs" and value is not None:
            value = int(value)
        elif name == "equipment_type" and value is not None and value not in EQUIPMENT_TYPES:
            raise ValueError(f"Unknown equipment type: {value}")
        elif name == "carrier_id" and value is not None:
            value = int(value)
            scope.require_owned(db, "carriers", value)
        values[name] = value
    return values


def _present_load(row: dict) -> dict:
    load = dict(row)
    status = load.get("status") or "quoted"
    load["status_progress"] = status_progress(status)
    load["allowed_transitions"] = allowed_transitions(status)
    shipper = load.get("rate_to_shipper")
    carrier = load.get("rate_to_carrier")
    load["margin"] = float(Decimal(str(shipper)) - Decimal(str(carrier))) if shipper is not None and carrier is not None else None
    return load


def list_loads(
    db: Session,
    scope: OrgScope,
    *,
    status: str | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 50,
) -> dict:
    page, limit, offset = _page(page, limit)
    clauses = ["organization_id = :organization_id"]
    params: dict[str, Any] = {"organization_id": scope.organization_id}
    if status and status != "all":
        clauses.append("status = :status")
        params["status"] = status
    if search:
        clauses.append(
            """(
                LOWER(COALESCE(load_number, '')) LIKE :search
                OR LOWER(COALESCE(shipper_name, '')) LIKE :search
                OR LOWER(COALESCE(origin_city, '')) LIKE :search
                OR LOWER(COALESCE(destination_city, '')) LIKE :search
            )"""
        )
        params["search"] = f"%{search.strip().lower()}%"

    where = " AND ".join(clauses)
    total = int(db.execute(text(f"SELECT COUNT(*) FROM loads WHERE {where}"), params).scalar() or 0)
    rows = db.execute(
        text(f"SELECT * FROM loads WHERE {where} ORDER BY created_at DESC, id DESC LIMIT :limit OFFSET :offset"),
        {**params, "limit": limit, "offset": offset},
    ).mappings().all()
    return {
        "loads": [_present_load(row) for row in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit) if total else 0,
        },
    }


def create_load(db: Session, scope: OrgScope, data: dict[str, Any]) -> dict:
    values = _clean_load_values(db, scope, data)
    if not values.get("load_number"):
        values["load_number"] = f"LD-{utc_now():%Y%m%d}-{secrets.token_hex(2).upper()}"

    now = utc_now()
    columns = ", ".join(values)
    placeholders = ", ".join(f":{name}" for name in values)
    row = db.execute(
        text(
            f"""
            INSERT INTO loads (organization_id, status, created_by, {columns}, created_at, updated_at)
            VALUES (:organization_id, 'quoted', :created_by, {placeholders}, :now, :now)
            RETURNING id
            """
        ),
        {**values, "organization_id": scope.organization_id, "created_by": scope.user_id, "now": now},
    ).first()
    load_id = int(row.id)
    record_load_activity(
        db,
        load_id=load_id,
        organization_id=scope.organization_id,
        user_id=scope.user_id,
        activity_type="created",
        description=f"Load {values['load_number']} created",
    )
    return get_load(db, scope, load_id)


def get_load(db: Session, scope: OrgScope, load_id: int, *, include_activity: bool = False) -> dict:
    load = _present_load(scope.require_owned(db, "loads", load_id))
    if load.get("carrier_id"):
        carrier = scope.get_owned(db, "carriers", int(load["carrier_id"]))
        load["carrier"] = _present_carrier(carrier) if carrier else None
    if include_activity:
        load["activities"] = [
            dict(row)
            for row in db.execute(
                text(
                    """
                    SELECT id, user_id, activity_type, description, details, created_at
                    FROM load_activities
                    WHERE load_id = :load_id
                      AND organization_id = :organization_id
                    ORDER BY created_at DESC, id DESC
                    """
                ),
                {"load_id": load_id, "organization_id": scope.organization_id},
            ).mappings().all()
        ]
    return load


def update_load(db: Session, scope: OrgScope, load_id: int, data: dict[str, Any]) -> dict:
    scope.require_owned(db, "loads", load_id)
    if "status" in data:
        raise ValueError("Use the status endpoint to change load status")
    values = _clean_load_values(db, scope, data)
    if values:
        values["updated_at"] = utc_now()
        scope.update_owned(db, "loads", load_id, values)
        record_load_activity(
            db,
            load_id=load_id,
            organization_id=scope.organization_id,
            user_id=scope.user_id,
            activity_type="updated",
            description="Load details updated",
            details={"fields": sorted(name for name in values if name != "updated_at")},
        )
    return get_load(db, scope, load_id)


def change_load_status(db: Session, scope: OrgScope, load_id: int, target: str, *, note: str | None = None) -> dict:
    load = scope.require_owned(db, "loads", load_id)
    validate_transition(load, target)
    _apply_status(db, scope, load, target, note=note, activity_type="status_changed")
    return get_load(db, scope, load_id)


def undo_load_status(db: Session, scope: OrgScope, load_id: int) -> dict:
    load = scope.require_owned(db, "loads", load_id)
    target = previous_status(load.get("status") or "quoted")
    if not target:
        raise ValueError("This status cannot be reversed")
    _apply_status(db, scope, load, target, note="Status reverted", activity_type="status_reverted")
    return get_load(db, scope, load_id)


def _apply_status(
    db: Session,
    scope: OrgScope,
    load: dict,
    target: str,
    *,
    note: str | None,
    activity_type: str,
) -> None:
    now = utc_now()
    previous = load.get("status") or "quoted"
    scope.update_owned(db, "loads", int(load["id"]), {"status": target, "updated_at": now})
    if target in ("booked", "dispatched") and load.get("carrier_id"):
        scope.update_owned(db, "carriers", int(load["carrier_id"]), {"last_used_date": now})
    record_load_activity(
        db,
        load_id=int(load["id"]),
        organization_id=scope.organization_id,
        user_id=scope.user_id,
        activity_type=activity_type,
        description=note or f"Status changed from {previous} to {target}",
        details={"from": previous, "to": target},
    )
