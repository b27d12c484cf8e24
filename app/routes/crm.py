from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.database import get_db
from app.dependencies.auth import current_org, require_org_admin
from app.repositories.org_scope import OrgScope
from app.services.crm import (
    change_load_status,
    create_carrier,
    create_load,
    get_carrier,
    get_carrier_payment_details,
    get_load,
    list_carriers,
    list_loads,
    set_carrier_payment_details,
    undo_load_status,
    update_carrier,
    update_load,
)
from app.services.encryption import EncryptionConfigError
from app.services.load_workflow import InvalidTransition


router = APIRouter(prefix="/api", tags=["crm"])


class StatusChangeRequest(BaseModel):
    status: str
    note: str | None = None


class PaymentDetailsRequest(BaseModel):
    payment_details: str


def _bad_request(exc: ValueError) -> HTTPException:
    return HTTPException(status_code=400, detail=str(exc))


# ---------------------------------------------------------------------------
# Carriers
# ---------------------------------------------------------------------------

@router.get("/carriers")
def carriers_list(
    search: str | None = Query(default=None),
    status: str | None = Query(default=None),
    equipment: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    scope: OrgScope = Depends(current_org),
    db: Session = Depends(get_db),
):
    return list_carriers(db, scope, search=search, status=status, equipment=equipment, page=page, limit=limit)


@router.post("/carriers")
def carriers_create(payload: dict[str, Any], scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    try:
        carrier = create_carrier(db, scope, payload)
    except ValueError as exc:
        db.rollback()
        raise _bad_request(exc) from exc
    db.commit()
    return {"success": True, "carrier": carrier}


@router.get("/carriers/{carrier_id}")
def carriers_get(carrier_id: int, scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    try:
        return get_carrier(db, scope, carrier_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="Carrier not found") from exc


@router.patch("/carriers/{carrier_id}")
def carriers_update(
    carrier_id: int,
    payload: dict[str, Any],
    scope: OrgScope = Depends(current_org),
    db: Session = Depends(get_db),
):
    try:
        carrier = update_carrier(db, scope, carrier_id, payload)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="Carrier not found") from exc
    except ValueError as exc:
        db.rollback()
        raise _bad_request(exc) from exc
    db.commit()
    return {"success": True, "carrier": carrier}


@router.put("/carriers/{carrier_id}/payment-details")
def carriers_set_payment_details(
    carrier_id: int,
    payload: PaymentDetailsRequest,
    scope: OrgScope = Depends(require_org_admin),
    db: Session = Depends(get_db),
):
    try:
        result = set_carrier_payment_details(db, scope, carrier_id, payload.payment_details)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="Carrier not found") from exc
    except EncryptionConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    db.commit()
    return {"success": True, **result}


@router.get("/carriers/{carrier_id}/payment-details")
def carriers_get_payment_details(
    carrier_id: int,
    scope: OrgScope = Depends(require_org_admin),
    db: Session = Depends(get_db),
):
    try:
        details = get_carrier_payment_details(db, scope, carrier_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="Carrier not found") from exc
    except EncryptionConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=500, detail="Stored payment details could not be decrypted") from exc
    return {"carrier_id": carrier_id, "payment_details": details}


# ---------------------------------------------------------------------------
# Loads
# ---------------------------------------------------------------------------

@router.get("/loads")
def loads_list(
    status: str | None = Query(default=None),
    search: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    scope: OrgScope = Depends(current_org),
    db: Session = Depends(get_db),
):
    return list_loads(db, scope, status=status, search=search, page=page, limit=limit)


@router.post("/loads")
def loads_create(payload: dict[str, Any], scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    try:
        load = create_load(db, scope, payload)
    except LookupError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail="Carrier not found") from exc
    except ValueError as exc:
        db.rollback()
        raise _bad_request(exc) from exc
    db.commit()
    return {"success": True, "load": load}


@router.get("/loads/{load_id}")
def loads_get(load_id: int, scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    try:
        return get_load(db, scope, load_id, include_activity=True)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="Load not found") from exc


@router.patch("/loads/{load_id}")
def loads_update(
    load_id: int,
    payload: dict[str, Any],
    scope: OrgScope = Depends(current_org),
    db: Session = Depends(get_db),
):
    try:
        load = update_load(db, scope, load_id, payload)
    except LookupError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail="Load not found") from exc
    except ValueError as exc:
        db.rollback()
        raise _bad_request(exc) from exc
    db.commit()
    return {"success": True, "load": load}


@router.post("/loads/{load_id}/status")
def loads_change_status(
    load_id: int,
    payload: StatusChangeRequest,
    scope: OrgScope = Depends(current_org),
    db: Session = Depends(get_db),
):
    try:
        load = change_load_status(db, scope, load_id, payload.status, note=payload.note)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="Load not found") from exc
    except InvalidTransition as exc:
        db.rollback()
        detail: dict = {"error": str(exc)}
        if exc.missing_fields:
            detail["details"] = {"missing_fields": exc.missing_fields}
        raise HTTPException(status_code=400, detail=detail) from exc
    db.commit()
    return {"success": True, "load": load}


@router.post("/loads/{load_id}/undo-status")
def loads_undo_status(load_id: int, scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    try:
        load = undo_load_status(db, scope, load_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="Load not found") from exc
    except ValueError as exc:
        db.rollback()
        raise _bad_request(exc) from exc
    db.commit()
    return {"success": True, "load": load}
