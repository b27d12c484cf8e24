import json

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.database import get_db
from app.dependencies.auth import current_org
from app.repositories.org_scope import OrgScope
from app.services.gdpr import (
    cancel_data_deletion,
    export_user_data,
    has_pending_deletion,
    request_data_deletion,
)
from app.utils.dates import utc_now


router = APIRouter(prefix="/api/gdpr", tags=["gdpr"])


class DeletionRequest(BaseModel):
    reason: str | None = None


@router.post("/delete")
def gdpr_request_deletion(
    payload: DeletionRequest,
    scope: OrgScope = Depends(current_org),
    db: Session = Depends(get_db),
):
    try:
        result = request_data_deletion(db, user_id=scope.user_id, reason=payload.reason)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return {"success": True, "request": result}


@router.get("/delete")
def gdpr_deletion_status(scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    return {"pending": has_pending_deletion(db, user_id=scope.user_id)}


@router.post("/delete/{request_id}/cancel")
def gdpr_cancel_deletion(request_id: int, scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    try:
        result = cancel_data_deletion(db, user_id=scope.user_id, request_id=request_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return {"success": True, "request": result}


@router.get("/export")
def gdpr_export(scope: OrgScope = Depends(current_org), db: Session = Depends(get_db)):
    try:
        data = export_user_data(db, user_id=scope.user_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    db.commit()
    file_name = f"loadvoice-export-{scope.user_id}-{utc_now():%Y%m%d}.json"
    return Response(
        content=json.dumps(data, default=str, indent=2),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )
