"""usage_guard.py

Admission control for call processing. Nothing is transcribed unless the
organization can afford it.

Rules:
  - projected_total = current usage + pending jobs + new estimate
  - projected_overage = max(0, projected_total - plan limit)
  - deny if projected_overage * OVERAGE_RATE > OVERAGE_CAP ($20)
  - deny if projected_overage > MAX_OVERAGE_MINUTES (100)

Pending jobs are calls still waiting on transcription plus any call holding
a live processing lock. The check itself is read-only.

Processing locks are one row per call (unique call_id) with an expiry.
Acquire is INSERT .. ON CONFLICT DO NOTHING, so exactly one worker wins; a
lock whose worker died is reclaimed once expires_at passes. The holder
refreshes the expiry at each step and releases by lock id.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.core.config import settings
from app.utils.dates import utc_now

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
BYTES_PER_MB = 1024 * 1024
MINUTES_PER_MB = 1
DEFAULT_PENDING_MINUTES = 5
PENDING_STATUSES = ("uploaded", "processing", "transcribing")
SUMMARY_DEFAULT_LIMIT = 30


@dataclass
class UsageCheckResult:
    allowed: bool
    reason: str | None
    current_usage: int
    limit: int
    pending_minutes: int
    overage_minutes: int
    overage_charge: float
    projected_total: int
    projected_overage: int
    projected_charge: float

    def to_dict(self) -> dict:
        return asdict(self)


# ── Internal helpers ──────────────────────────────────────────────────────────

def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _rate() -> Decimal:
    return Decimal(str(settings.OVERAGE_RATE))


def _cap() -> Decimal:
    return Decimal(str(settings.OVERAGE_CAP))


def _charge_for(minutes: int) -> Decimal:
    return _money(Decimal(max(int(minutes), 0)) * _rate())


def _org_usage_row(db: Session, organization_id: int):
    return db.execute(
        text(
            """
            SELECT id, usage_minutes_current, usage_minutes_limit
            FROM organizations
            WHERE id = :organization_id
            """
        ),
        {"organization_id": organization_id},
    ).first()


def estimate_minutes_from_file_size(file_size_bytes: int | None) -> int:
    """1 minute per MB, rounded up. Compressed audio runs close to that."""
    size = int(file_size_bytes or 0)
    if size <= 0:
        return 1
    return max(1, math.ceil(size / BYTES_PER_MB) * MINUTES_PER_MB)


def _pending_estimate(duration_minutes, file_size) -> int:
    if duration_minutes:
        return int(duration_minutes)
    if file_size:
        return estimate_minutes_from_file_size(file_size)
    return DEFAULT_PENDING_MINUTES


def get_pending_minutes(
    db: Session,
    *,
    organization_id: int,
    exclude_call_id: int | None = None,
    now: datetime | None = None,
) -> int:
    now = now or utc_now()
    rows = db.execute(
        text(
            """
            SELECT id, duration_minutes, file_size
            FROM calls
            WHERE organization_id = :organization_id
              AND status IN ('uploaded', 'processing', 'transcribing')
            """
        ),
        {"organization_id": organization_id},
    ).all()

    counted: set[int] = set()
    total = 0
    for row in rows:
        if exclude_call_id is not None and int(row.id) == int(exclude_call_id):
            continue
        counted.add(int(row.id))
        total += _pending_estimate(row.duration_minutes, row.file_size)

    # A locked call may already have moved to 'extracting'; its minutes are still unbilled.
    lock_rows = db.execute(
        text(
            """
            SELECT call_id, estimated_minutes
            FROM processing_locks
            WHERE organization_id = :organization_id
              AND expires_at > :now
            """
        ),
        {"organization_id": organization_id, "now": now},
    ).all()
    for row in lock_rows:
        call_id = int(row.call_id)
        if call_id in counted or (exclude_call_id is not None and call_id == int(exclude_call_id)):
            continue
        total += int(row.estimated_minutes or 0)

    return total


# ── Public API ────────────────────────────────────────────────────────────────

def check_usage_before_processing(
    db: Session,
    *,
    organization_id: int,
    estimated_minutes: int,
    exclude_call_id: int | None = None,
) -> UsageCheckResult:
    org = _org_usage_row(db, organization_id)
    if not org:
        return UsageCheckResult(
            allowed=False,
            reason="Organization not found",
            current_usage=0,
            limit=0,
            pending_minutes=0,
            overage_minutes=0,
            overage_charge=0.0,
            projected_total=0,
            projected_overage=0,
            projected_charge=0.0,
        )

    current_usage = int(org.usage_minutes_current or 0)
    limit = int(org.usage_minutes_limit or settings.DEFAULT_MINUTES_LIMIT)
    estimate = max(int(estimated_minutes or 0), 0)

    pending_minutes = get_pending_minutes(db, organization_id=organization_id, exclude_call_id=exclude_call_id)

    overage_minutes = max(0, current_usage - limit)
    projected_total = current_usage + pending_minutes + estimate
    projected_overage = max(0, projected_total - limit)
    projected_charge = _charge_for(projected_overage)

    allowed = True
    reason: str | None = None
    if projected_charge > _cap():
        allowed = False
        reason = f"Would exceed ${_cap():.0f} overage cap. Projected charge: ${projected_charge:.2f}"
    elif projected_overage > settings.MAX_OVERAGE_MINUTES:
        allowed = False
        reason = (
            f"Would exceed {settings.MAX_OVERAGE_MINUTES} overage minutes limit. "
            f"Projected overage: {projected_overage} minutes"
        )

    if not allowed:
        logger.info(
            "usage_guard: denied org=%s usage=%s pending=%s estimate=%s limit=%s charge=%s",
            organization_id,
            current_usage,
            pending_minutes,
            estimate,
            limit,
            projected_charge,
        )

    return UsageCheckResult(
        allowed=allowed,
        reason=reason,
        current_usage=current_usage,
        limit=limit,
        pending_minutes=pending_minutes,
        overage_minutes=overage_minutes,
        overage_charge=float(_charge_for(overage_minutes)),
        projected_total=projected_total,
        projected_overage=projected_overage,
        projected_charge=float(projected_charge),
    )


def acquire_processing_lock(
    db: Session,
    *,
    organization_id: int,
    call_id: int,
    estimated_minutes: int,
    ttl_minutes: int | None = None,
    now: datetime | None = None,
) -> int | None:
    """Claim the call for this worker. Returns the lock id, or None when another live lock holds it."""
    now = now or utc_now()
    ttl = max(int(ttl_minutes or settings.PROCESSING_LOCK_TTL_MINUTES), 1)

    reclaimed = db.execute(
        text(
            """
            DELETE FROM processing_locks
            WHERE call_id = :call_id
              AND expires_at <= :now
            """
        ),
        {"call_id": call_id, "now": now},
    )
    if reclaimed.rowcount:
        logger.warning("usage_guard: reclaimed expired lock for call=%s", call_id)

    row = db.execute(
        text(
            """
            INSERT INTO processing_locks (organization_id, call_id, estimated_minutes, locked_at, expires_at)
            VALUES (:organization_id, :call_id, :estimated_minutes, :locked_at, :expires_at)
            ON CONFLICT (call_id) DO NOTHING
            RETURNING id
            """
        ),
        {
            "organization_id": organization_id,
            "call_id": call_id,
            "estimated_minutes": max(int(estimated_minutes or 0), 0),
            "locked_at": now,
            "expires_at": now + timedelta(minutes=ttl),
        },
    ).first()
    return int(row.id) if row is not None else None


def refresh_processing_lock(
    db: Session,
    *,
    lock_id: int,
    ttl_minutes: int | None = None,
    now: datetime | None = None,
) -> bool:
    """Push a held lock's expiry forward. False when the lock was reclaimed by someone else."""
    now = now or utc_now()
    ttl = max(int(ttl_minutes or settings.PROCESSING_LOCK_TTL_MINUTES), 1)
    result = db.execute(
        text("UPDATE processing_locks SET expires_at = :expires_at WHERE id = :lock_id"),
        {"expires_at": now + timedelta(minutes=ttl), "lock_id": lock_id},
    )
    return bool(result.rowcount)


def release_processing_lock(db: Session, *, call_id: int, lock_id: int | None = None) -> bool:
    """
    With lock_id, only that lock is removed; a worker whose lock expired and was
    reclaimed cannot free the new holder's lock. Without it, any lock on the call goes.
    """
    if lock_id is None:
        result = db.execute(
            text("DELETE FROM processing_locks WHERE call_id = :call_id"),
            {"call_id": call_id},
        )
    else:
        result = db.execute(
            text("DELETE FROM processing_locks WHERE call_id = :call_id AND id = :lock_id"),
            {"call_id": call_id, "lock_id": lock_id},
        )
        if not result.rowcount:
            logger.warning("usage_guard: lock=%s for call=%s was already reclaimed", lock_id, call_id)
    return bool(result.rowcount)


def reclaim_stale_locks(db: Session, *, now: datetime | None = None) -> int:
    result = db.execute(
        text("DELETE FROM processing_locks WHERE expires_at <= :now"),
        {"now": now or utc_now()},
    )
    count = int(result.rowcount or 0)
    if count:
        logger.warning("usage_guard: reclaimed %s stale processing locks", count)
    return count


def get_usage_summary_with_guard(db: Session, *, organization_id: int) -> dict | None:
    org = _org_usage_row(db, organization_id)
    if not org:
        return None

    current_usage = int(org.usage_minutes_current or 0)
    limit = int(org.usage_minutes_limit or SUMMARY_DEFAULT_LIMIT)
    overage_minutes = max(0, current_usage - limit)
    overage_charge = _charge_for(overage_minutes)
    cap = _cap()
    remaining_before_cap = max(Decimal("0.00"), cap - overage_charge)

    return {
        "current_usage": current_usage,
        "limit": limit,
        "overage_minutes": overage_minutes,
        "overage_charge": float(overage_charge),
        "is_at_cap": overage_charge >= cap,
        "remaining_before_cap": float(remaining_before_cap),
        "remaining_minutes_before_cap": int(remaining_before_cap / _rate()),
        "percent_of_cap": float(min(Decimal("100"), _money(overage_charge / cap * 100))) if cap else 0.0,
    }
