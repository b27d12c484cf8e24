"""
Rate confirmation documents for loads.

A confirmation is generated as a draft PDF, then signed by the broker (session, owning org)
and by the carrier (signing token, no session). Once both have signed it is `signed`, the
stamped PDF replaces the draft, and a booked load moves to dispatched.
"""
from __future__ import annotations

import hmac
import logging
import secrets
from datetime import datetime
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.repositories.org_scope import OrgScope
from app.services.crm import record_load_activity
from app.services.load_workflow import can_transition
from app.services.rate_confirmation_pdf import (
    decode_signature_data,
    render_rate_confirmation_pdf,
    stamp_signatures,
    today_stamp,
)
from app.services.recording_storage import read_local_file, save_document
from app.utils.dates import utc_now


logger = logging.getLogger(__name__)

NUMBER_PREFIX = "RC"


class RateConfirmationValidationError(ValueError):
    def __init__(self, errors: list[str]):
        super().__init__("Validation failed")
        self.errors = errors


def next_rate_con_number(db: Session, *, organization_id: int, now: datetime | None = None) -> str:
    """RC-YYYYMMDD-SEQ, sequence per organization per day."""
    stamp = today_stamp((now or utc_now()).date())
    prefix = f"{NUMBER_PREFIX}-{stamp}-"
    latest = db.execute(
        text(
            """
            SELECT rate_con_number FROM rate_confirmations
            WHERE organization_id = :organization_id
              AND rate_con_number LIKE :pattern
            ORDER BY rate_con_number DESC
            LIMIT 1
            """
        ),
        {"organization_id": organization_id, "pattern": f"{prefix}%"},
    ).scalar()

    sequence = 1
    if latest:
        try:
            sequence = int(str(latest).rsplit("-", 1)[1]) + 1
        except (IndexError, ValueError):
            sequence = 1
    return f"{prefix}{sequence:03d}"


def validate_for_generation(*, organization: dict, carrier: dict | None, load: dict) -> list[str]:
    errors = []
    if not carrier:
        errors.append("Carrier information is required")
    if not organization.get("mc_number") and not organization.get("dot_number"):
        errors.append("Organization MC or DOT number is required")
    if not load.get("rate_to_carrier"):
        errors.append("Carrier rate is required")
    return errors


def _organization(db: Session, organization_id: int) -> dict:
    row = db.execute(
        text(
            """
            SELECT id, name, mc_number, dot_number, address, phone, email
            FROM organizations
            WHERE id = :id
            """
        ),
        {"id": organization_id},
    ).mappings().first()
    if not row:
        raise LookupError("Organization not found")
    return dict(row)


def generate_rate_confirmation(db: Session, scope: OrgScope, *, load_id: int, now: datetime | None = None) -> dict:
    now = now or utc_now()
    load = scope.require_owned(db, "loads", load_id)
    organization = _organization(db, scope.organization_id)
    carrier = scope.get_owned(db, "carriers", int(load["carrier_id"])) if load.get("carrier_id") else None

    errors = validate_for_generation(organization=organization, carrier=carrier, load=load)
    if errors:
        raise RateConfirmationValidationError(errors)

    previous_version = db.execute(
        text(
            """
            SELECT COALESCE(MAX(version), 0) FROM rate_confirmations
            WHERE organization_id = :organization_id
              AND load_id = :load_id
            """
        ),
        {"organization_id": scope.organization_id, "load_id": load_id},
    ).scalar()
    version = int(previous_version or 0) + 1
    rate_con_number = next_rate_con_number(db, organization_id=scope.organization_id, now=now)

    pdf_bytes = render_rate_confirmation_pdf(
        rate_con_number=rate_con_number,
        organization=organization,
        carrier=carrier,
        load=load,
        version=version,
        generated_at=now,
    )
    stored = save_document(
        organization_id=scope.organization_id,
        file_name=f"{rate_con_number}.pdf",
        file_bytes=pdf_bytes,
    )

    row = db.execute(
        text(
            """
            INSERT INTO rate_confirmations (organization_id, load_id, carrier_id, rate_con_number, status,
                                            pdf_path, signing_token, version, created_by, created_at, updated_at)
            VALUES (:organization_id, :load_id, :carrier_id, :rate_con_number, 'draft',
                    :pdf_path, :signing_token, :version, :created_by, :now, :now)
            RETURNING id
            """
        ),
        {
            "organization_id": scope.organization_id,
            "load_id": load_id,
            "carrier_id": carrier["id"],
            "rate_con_number": rate_con_number,
            "pdf_path": stored["local_path"],
            "signing_token": secrets.token_urlsafe(32),
            "version": version,
            "created_by": scope.user_id,
            "now": now,
        },
    ).first()
    rate_confirmation_id = int(row.id)

    scope.update_owned(db, "loads", load_id, {"rate_confirmation_id": rate_confirmation_id, "updated_at": now})
    record_load_activity(
        db,
        load_id=load_id,
        organization_id=scope.organization_id,
        user_id=scope.user_id,
        activity_type="rate_confirmation_generated",
        description=f"Rate confirmation {rate_con_number} generated",
        details={"rate_confirmation_id": rate_confirmation_id, "version": version},
    )
    logger.info("rate_con: generated %s org=%s load=%s", rate_con_number, scope.organization_id, load_id)
    return get_rate_confirmation(db, scope, rate_confirmation_id)


def _present(row: dict) -> dict:
    data = dict(row)
    data.pop("signing_token", None)
    data.pop("pdf_path", None)
    return data


def get_rate_confirmation(db: Session, scope: OrgScope, rate_confirmation_id: int) -> dict:
    return _present(scope.require_owned(db, "rate_confirmations", rate_confirmation_id))


def list_rate_confirmations(db: Session, scope: OrgScope, *, load_id: int | None = None) -> list[dict]:
    filters = {"load_id": load_id} if load_id else None
    rows = scope.list_owned(db, "rate_confirmations", filters=filters, limit=100)
    return [_present(row) for row in rows]


def get_rate_confirmation_pdf(db: Session, scope: OrgScope, rate_confirmation_id: int) -> tuple[str, bytes]:
    record = scope.require_owned(db, "rate_confirmations", rate_confirmation_id)
    if not record.get("pdf_path"):
        raise LookupError("Rate confirmation PDF not found")
    try:
        return f"{record['rate_con_number']}.pdf", read_local_file(record["pdf_path"])
    except FileNotFoundError as exc:
        raise LookupError("Rate confirmation PDF not found") from exc


def _find_by_token(db: Session, *, rate_confirmation_id: int, signing_token: str) -> dict:
    record = db.execute(
        text("SELECT * FROM rate_confirmations WHERE id = :id"),
        {"id": rate_confirmation_id},
    ).mappings().first()
    if not record or not record["signing_token"]:
        raise LookupError("Rate confirmation not found")
    if not hmac.compare_digest(str(record["signing_token"]), signing_token or ""):
        raise LookupError("Rate confirmation not found")
    return dict(record)


def sign_rate_confirmation(
    db: Session,
    *,
    rate_confirmation_id: int,
    signer_name: str,
    signer_email: str | None = None,
    signature_data: str | None = None,
    scope: OrgScope | None = None,
    signing_token: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Carrier signs with the signing token; otherwise the broker signs within their org scope.

    Returns the updated record with `fully_signed` and the carrier's dispatch email so the
    caller can queue the confirmation email.
    """
    now = now or utc_now()
    signer_name = (signer_name or "").strip()
    if not signer_name:
        raise ValueError("Signer name is required")

    if signing_token:
        record = _find_by_token(db, rate_confirmation_id=rate_confirmation_id, signing_token=signing_token)
        signer_type = "carrier"
    elif scope is not None:
        record = scope.require_owned(db, "rate_confirmations", rate_confirmation_id)
        signer_type = "broker"
    else:
        raise PermissionError("Signing token or session required")

    if record["status"] == "signed" or record.get("fully_signed_at"):
        raise ValueError("Rate confirmation is already fully signed")
    if signer_type == "carrier" and record.get("carrier_signed_at"):
        raise ValueError("Rate confirmation has already been signed by the carrier")
    if signer_type == "broker" and record.get("broker_signed_at"):
        raise ValueError("Rate confirmation has already been signed by the broker")

    signature_png = decode_signature_data(signature_data)

    values: dict = {"updated_at": now}
    if signer_type == "carrier":
        values.update(
            carrier_signed_at=now,
            carrier_signature_name=signer_name,
            carrier_signature_ip=(ip_address or "")[:64] or None,
        )
        broker_done = bool(record.get("broker_signed_at"))
        carrier_done = True
    else:
        values.update(
            broker_signed_at=now,
            broker_signed_by=scope.user_id,
            broker_signature_name=signer_name,
        )
        broker_done = True
        carrier_done = bool(record.get("carrier_signed_at"))

    fully_signed = broker_done and carrier_done
    values["status"] = "signed" if fully_signed else "partially_signed"
    if fully_signed:
        values["fully_signed_at"] = now

    assignments = ", ".join(f"{name} = :{name}" for name in values)
    db.execute(
        text(f"UPDATE rate_confirmations SET {assignments} WHERE id = :id"),
        {**values, "id": rate_confirmation_id},
    )
    db.execute(
        text(
            """
            INSERT INTO signature_audit_logs (rate_confirmation_id, signer_type, signer_name, signer_email,
                                              ip_address, user_agent, signed_at)
            VALUES (:rate_confirmation_id, :signer_type, :signer_name, :signer_email,
                    :ip_address, :user_agent, :signed_at)
            """
        ),
        {
            "rate_confirmation_id": rate_confirmation_id,
            "signer_type": signer_type,
            "signer_name": signer_name,
            "signer_email": signer_email,
            "ip_address": ip_address,
            "user_agent": user_agent,
            "signed_at": now,
        },
    )

    organization_id = int(record["organization_id"])
    load_id = int(record["load_id"])
    record_load_activity(
        db,
        load_id=load_id,
        organization_id=organization_id,
        user_id=scope.user_id if scope is not None else None,
        activity_type="rate_confirmation_signed",
        description=f"Rate confirmation {record['rate_con_number']} signed by {signer_type} ({signer_name})",
        details={"rate_confirmation_id": rate_confirmation_id, "signer_type": signer_type},
    )

    if record.get("pdf_path"):
        _stamp_pdf(
            record,
            organization_id=organization_id,
            broker_name=values.get("broker_signature_name") or record.get("broker_signature_name"),
            carrier_name=values.get("carrier_signature_name") or record.get("carrier_signature_name"),
            broker_signed_at=values.get("broker_signed_at") or record.get("broker_signed_at"),
            carrier_signed_at=values.get("carrier_signed_at") or record.get("carrier_signed_at"),
            carrier_signature_png=signature_png if signer_type == "carrier" else None,
        )

    if fully_signed:
        _dispatch_booked_load(db, organization_id=organization_id, load_id=load_id, now=now)

    carrier_email = None
    if record.get("carrier_id"):
        carrier_email = db.execute(
            text("SELECT dispatch_email FROM carriers WHERE id = :id AND organization_id = :organization_id"),
            {"id": record["carrier_id"], "organization_id": organization_id},
        ).scalar()

    logger.info(
        "rate_con: %s signed by %s status=%s",
        record["rate_con_number"],
        signer_type,
        values["status"],
    )
    return {
        "id": rate_confirmation_id,
        "rate_con_number": record["rate_con_number"],
        "status": values["status"],
        "signer_type": signer_type,
        "fully_signed": fully_signed,
        "fully_signed_at": values.get("fully_signed_at"),
        "carrier_email": carrier_email,
        "pdf_path": record.get("pdf_path"),
    }


def _stamp_pdf(record: dict, *, organization_id: int, carrier_signature_png: bytes | None, **names) -> None:
    try:
        original = read_local_file(record["pdf_path"])
    except FileNotFoundError:
        logger.warning("rate_con: pdf missing for %s at %s", record["rate_con_number"], record["pdf_path"])
        return
    stamped = stamp_signatures(original, carrier_signature_png=carrier_signature_png, **names)
    save_document(
        organization_id=organization_id,
        file_name=Path(record["pdf_path"]).name,
        file_bytes=stamped,
    )


def _dispatch_booked_load(db: Session, *, organization_id: int, load_id: int, now: datetime) -> None:
    status = db.execute(
        text("SELECT status FROM loads WHERE id = :id AND organization_id = :organization_id"),
        {"id": load_id, "organization_id": organization_id},
    ).scalar()
    if status != "booked" or not can_transition(status, "dispatched"):
        return
    db.execute(
        text("UPDATE loads SET status = 'dispatched', updated_at = :now WHERE id = :id AND organization_id = :organization_id"),
        {"now": now, "id": load_id, "organization_id": organization_id},
    )
    record_load_activity(
        db,
        load_id=load_id,
        organization_id=organization_id,
        activity_type="status_changed",
        description="Status changed from booked to dispatched after rate confirmation was signed",
        details={"from": "booked", "to": "dispatched"},
    )
