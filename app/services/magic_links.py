import hashlib
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.core.config import settings as core_settings
from app.services.referrals import activate_referral
from app.utils.dates import add_months, utc_now


logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def generate_magic_token() -> str:
    return secrets.token_urlsafe(32)


def hash_magic_token(token: str) -> str:
    return hashlib.sha256((token or "").encode("utf-8")).hexdigest()


def token_expiry(ttl_minutes: int, now: datetime | None = None) -> datetime:
    ttl = max(int(ttl_minutes or 30), 1)
    return (now or datetime.now(timezone.utc)) + timedelta(minutes=ttl)


def normalize_email(email: str | None) -> str | None:
    value = (email or "").strip().lower()
    return value if EMAIL_RE.match(value) else None


def send_rate_limited(db: Session, *, email: str, client_ip: str, now: datetime | None = None) -> bool:
    window_minutes = max(int(core_settings.MAGIC_LINK_SEND_WINDOW_MINUTES or 15), 1)
    email_limit = max(int(core_settings.MAGIC_LINK_SEND_EMAIL_LIMIT or 5), 1)
    ip_limit = max(int(core_settings.MAGIC_LINK_SEND_IP_LIMIT or 20), 1)
    since = (now or utc_now()) - timedelta(minutes=window_minutes)

    email_attempts = db.execute(
        text(
            """
            SELECT COUNT(*)
            FROM magic_link_send_attempts
            WHERE email = :email
              AND created_at >= :since
            """
        ),
        {"email": email, "since": since},
    ).scalar_one()

    ip_attempts = db.execute(
        text(
            """
            SELECT COUNT(*)
            FROM magic_link_send_attempts
            WHERE client_ip = :client_ip
              AND created_at >= :since
            """
        ),
        {"client_ip": client_ip, "since": since},
    ).scalar_one()

    return int(email_attempts) >= email_limit or int(ip_attempts) >= ip_limit


def record_send_attempt(db: Session, *, email: str, client_ip: str, now: datetime | None = None) -> None:
    db.execute(
        text(
            """
            INSERT INTO magic_link_send_attempts (email, client_ip, created_at)
            VALUES (:email, :client_ip, :now)
            """
        ),
        {"email": email, "client_ip": client_ip[:64], "now": now or utc_now()},
    )


def issue_magic_token(db: Session, *, email: str, now: datetime | None = None) -> str:
    """Invalidates any outstanding link for the email and stores the hash of a fresh one."""
    now = now or utc_now()
    db.execute(
        text(
            """
            UPDATE magic_link_tokens
            SET used_at = :now
            WHERE email = :email
              AND used_at IS NULL
            """
        ),
        {"email": email, "now": now},
    )

    token = generate_magic_token()
    db.execute(
        text(
            """
            INSERT INTO magic_link_tokens (email, token_hash, expires_at, created_at)
            VALUES (:email, :token_hash, :expires_at, :now)
            """
        ),
        {
            "email": email,
            "token_hash": hash_magic_token(token),
            "expires_at": token_expiry(core_settings.MAGIC_LINK_TOKEN_TTL_MINUTES, now),
            "now": now,
        },
    )
    return token


def consume_magic_token(db: Session, *, token: str, now: datetime | None = None) -> str | None:
    """Single use: returns the email when the token is valid, None otherwise."""
    now = now or utc_now()
    consumed = db.execute(
        text(
            """
            UPDATE magic_link_tokens
            SET used_at = :now
            WHERE token_hash = :token_hash
              AND used_at IS NULL
              AND expires_at >= :now
            RETURNING email
            """
        ),
        {"token_hash": hash_magic_token(token), "now": now},
    ).first()
    return consumed.email if consumed else None


def get_or_create_user(
    db: Session,
    *,
    email: str,
    full_name: str | None = None,
    referral_code: str | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Signs in an existing user or creates the user with a personal organization they own.
    A referral code only counts for brand new users.
    """
    now = now or utc_now()
    existing = db.execute(
        text("SELECT id, email, full_name FROM users WHERE email = :email"),
        {"email": email},
    ).mappings().first()
    if existing:
        db.execute(
            text("UPDATE users SET email_verified_at = :now WHERE id = :id"),
            {"now": now, "id": existing["id"]},
        )
        return {**existing, "created": False}

    user_id = int(
        db.execute(
            text(
                """
                INSERT INTO users (email, full_name, email_verified_at, created_at)
                VALUES (:email, :full_name, :now, :now)
                RETURNING id
                """
            ),
            {"email": email, "full_name": full_name, "now": now},
        ).first().id
    )
    org_name = f"{full_name or email.split('@')[0]}'s Organization"
    organization_id = int(
        db.execute(
            text(
                """
                INSERT INTO organizations (name, plan, subscription_status, usage_minutes_limit,
                                           usage_minutes_current, usage_reset_date, created_at, updated_at)
                VALUES (:name, 'free', 'active', :limit, 0, :reset_date, :now, :now)
                RETURNING id
                """
            ),
            {
                "name": org_name,
                "limit": core_settings.DEFAULT_MINUTES_LIMIT,
                "reset_date": add_months(now.date(), 1),
                "now": now,
            },
        ).first().id
    )
    db.execute(
        text(
            """
            INSERT INTO user_organizations (user_id, organization_id, role, created_at)
            VALUES (:user_id, :organization_id, 'owner', :now)
            """
        ),
        {"user_id": user_id, "organization_id": organization_id, "now": now},
    )
    logger.info("auth: created user=%s org=%s", user_id, organization_id)

    referral = None
    if referral_code:
        referral = activate_referral(
            db,
            referral_code=referral_code,
            referred_user_id=user_id,
            referred_email=email,
        )
    return {
        "id": user_id,
        "email": email,
        "full_name": full_name,
        "organization_id": organization_id,
        "created": True,
        "referral": referral,
    }
