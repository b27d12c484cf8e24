"""
Referral program: codes, invitations, activation at signup and tiered rewards.

Tiers are reached by the count of active/rewarded referrals. A reward is only granted
when a referral pushes the referrer into a higher tier than the one already recorded.
Rewards must be claimed within REWARD_EXPIRY_DAYS; claimed minutes and credits land on
the referrer's organization bonus balances.
"""
from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.core.config import settings as core_settings
from app.services.email import send_referral_invitation_email
from app.services.notifications import create_notification, record_audit_log
from app.utils.dates import to_datetime, utc_now


logger = logging.getLogger(__name__)

REWARD_EXPIRY_DAYS = 90
CODE_RANDOM_BYTES = 3
MAX_CODE_ATTEMPTS = 10
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
QUALIFYING_STATUSES = ("active", "rewarded")


@dataclass(frozen=True)
class ReferralTier:
    name: str
    referrals_required: int
    reward_minutes: int
    reward_credits_cents: int

    @property
    def reward_type(self) -> str:
        if self.reward_minutes and self.reward_credits_cents:
            return "both"
        if self.reward_credits_cents:
            return "credits"
        return "minutes"


REFERRAL_TIERS = (
    ReferralTier("Bronze", 1, 60, 0),
    ReferralTier("Silver", 3, 200, 0),
    ReferralTier("Gold", 5, 500, 5000),
    ReferralTier("Platinum", 10, 1000, 10000),
)
_TIER_RANK = {tier.name: index for index, tier in enumerate(REFERRAL_TIERS)}


def tier_for_count(active_count: int) -> ReferralTier | None:
    reached = None
    for tier in REFERRAL_TIERS:
        if active_count >= tier.referrals_required:
            reached = tier
    return reached


def next_tier(active_count: int) -> ReferralTier | None:
    for tier in REFERRAL_TIERS:
        if active_count < tier.referrals_required:
            return tier
    return None


def referral_link(code: str) -> str:
    return f"{core_settings.APP_BASE_URL.rstrip('/')}/signup?ref={code}"


def _code_prefix(user_id: int) -> str:
    return f"{int(user_id):04d}"[-4:].upper()


# ---------------------------------------------------------------------------
# Codes and invitations
# ---------------------------------------------------------------------------

def generate_referral_code(db: Session, *, user_id: int) -> dict:
    user = db.execute(
        text("SELECT id, referral_code FROM users WHERE id = :user_id"),
        {"user_id": user_id},
    ).first()
    if not user:
        raise ValueError("user_not_found")
    if user.referral_code:
        return {"code": user.referral_code, "link": referral_link(user.referral_code), "created": False}

    for _ in range(MAX_CODE_ATTEMPTS):
        code = f"{_code_prefix(user_id)}{secrets.token_hex(CODE_RANDOM_BYTES)}".upper()
        taken = db.execute(
            text("SELECT 1 FROM users WHERE referral_code = :code"),
            {"code": code},
        ).first()
        if not taken:
            break
    else:
        raise RuntimeError("Could not generate a unique referral code")

    db.execute(
        text("UPDATE users SET referral_code = :code WHERE id = :user_id"),
        {"code": code, "user_id": user_id},
    )
    logger.info("referrals: code generated user=%s code=%s", user_id, code)
    return {"code": code, "link": referral_link(code), "created": True}


def validate_invitation(db: Session, *, referrer_user_id: int, email: str) -> list[str]:
    errors: list[str] = []
    clean_email = (email or "").strip().lower()
    if not EMAIL_RE.match(clean_email):
        return ["Invalid email format"]

    referrer = db.execute(
        text("SELECT email FROM users WHERE id = :user_id"),
        {"user_id": referrer_user_id},
    ).first()
    if referrer and (referrer.email or "").strip().lower() == clean_email:
        errors.append("You cannot refer yourself")

    registered = db.execute(
        text("SELECT 1 FROM users WHERE LOWER(email) = :email"),
        {"email": clean_email},
    ).first()
    if registered:
        errors.append("This email is already registered")

    referred = db.execute(
        text("SELECT 1 FROM referrals WHERE LOWER(referred_email) = :email"),
        {"email": clean_email},
    ).first()
    if referred:
        errors.append("This email has already been referred")

    return errors


def send_referral_invitation(
    db: Session,
    *,
    referrer_user_id: int,
    email: str,
    referrer_name: str | None = None,
) -> dict:
    errors = validate_invitation(db, referrer_user_id=referrer_user_id, email=email)
    if errors:
        return {"success": False, "errors": errors}

    code = generate_referral_code(db, user_id=referrer_user_id)["code"]
    clean_email = email.strip().lower()
    row = db.execute(
        text(
            """
            INSERT INTO referrals (referrer_user_id, referred_email, referral_code, status, created_at)
            VALUES (:referrer_user_id, :email, :code, 'pending', :now)
            RETURNING id
            """
        ),
        {"referrer_user_id": referrer_user_id, "email": clean_email, "code": code, "now": utc_now()},
    ).first()
    _bump_statistics(db, user_id=referrer_user_id)

    email_sent = False
    try:
        email_sent = send_referral_invitation_email(
            to_email=clean_email,
            referrer_name=referrer_name or "A colleague",
            referral_link=referral_link(code),
        )
    except Exception:
        logger.warning("referrals: invitation email failed referral=%s", row.id, exc_info=True)

    return {"success": True, "referral_id": int(row.id), "email_sent": email_sent}


def activate_referral(
    db: Session,
    *,
    referral_code: str,
    referred_user_id: int,
    referred_email: str,
) -> dict | None:
    """Called at signup. Links the new user to a referral and grants any tier reward."""
    code = (referral_code or "").strip().upper()
    if not code:
        return None

    referrer = db.execute(
        text("SELECT id FROM users WHERE referral_code = :code"),
        {"code": code},
    ).first()
    if not referrer or int(referrer.id) == int(referred_user_id):
        return None

    clean_email = (referred_email or "").strip().lower()
    now = utc_now()
    referral = db.execute(
        text(
            """
            SELECT id, status FROM referrals
            WHERE referral_code = :code
              AND LOWER(referred_email) = :email
            ORDER BY id DESC
            LIMIT 1
            """
        ),
        {"code": code, "email": clean_email},
    ).first()

    if referral and referral.status != "pending":
        return None
    if referral:
        referral_id = int(referral.id)
        db.execute(
            text(
                """
                UPDATE referrals
                SET status = 'active', referred_user_id = :referred_user_id, activated_at = :now
                WHERE id = :id
                """
            ),
            {"referred_user_id": referred_user_id, "now": now, "id": referral_id},
        )
    else:
        referral_id = int(
            db.execute(
                text(
                    """
                    INSERT INTO referrals (referrer_user_id, referred_email, referred_user_id, referral_code,
                                           status, activated_at, created_at)
                    VALUES (:referrer_user_id, :email, :referred_user_id, :code, 'active', :now, :now)
                    RETURNING id
                    """
                ),
                {
                    "referrer_user_id": referrer.id,
                    "email": clean_email,
                    "referred_user_id": referred_user_id,
                    "code": code,
                    "now": now,
                },
            ).first().id
        )

    db.execute(
        text("UPDATE users SET referred_by_code = :code WHERE id = :user_id"),
        {"code": code, "user_id": referred_user_id},
    )
    rewarded = process_referral_reward(db, referral_id=referral_id, now=now)
    return {"referral_id": referral_id, "referrer_user_id": int(referrer.id), "rewarded": rewarded}


# ---------------------------------------------------------------------------
# Rewards
# ---------------------------------------------------------------------------

def _qualifying_count(db: Session, *, user_id: int) -> int:
    return int(
        db.execute(
            text(
                """
                SELECT COUNT(*) FROM referrals
                WHERE referrer_user_id = :user_id
                  AND status IN ('active', 'rewarded')
                """
            ),
            {"user_id": user_id},
        ).scalar()
        or 0
    )


def _bump_statistics(
    db: Session,
    *,
    user_id: int,
    tier: str | None = None,
    minutes: int = 0,
    credits_cents: int = 0,
) -> None:
    total = int(
        db.execute(
            text("SELECT COUNT(*) FROM referrals WHERE referrer_user_id = :user_id"),
            {"user_id": user_id},
        ).scalar()
        or 0
    )
    active = _qualifying_count(db, user_id=user_id)
    existing = db.execute(
        text("SELECT id, current_tier FROM referral_statistics WHERE user_id = :user_id"),
        {"user_id": user_id},
    ).first()
    now = utc_now()
    if existing:
        db.execute(
            text(
                """
                UPDATE referral_statistics
                SET total_referrals = :total,
                    active_referrals = :active,
                    current_tier = COALESCE(:tier, current_tier),
                    total_minutes_earned = total_minutes_earned + :minutes,
                    total_credits_earned_cents = total_credits_earned_cents + :credits,
                    updated_at = :now
                WHERE user_id = :user_id
                """
            ),
            {
                "total": total,
                "active": active,
                "tier": tier,
                "minutes": minutes,
                "credits": credits_cents,
                "now": now,
                "user_id": user_id,
            },
        )
    else:
        db.execute(
            text(
                """
                INSERT INTO referral_statistics (user_id, total_referrals, active_referrals, current_tier,
                                                 total_minutes_earned, total_credits_earned_cents, updated_at)
                VALUES (:user_id, :total, :active, :tier, :minutes, :credits, :now)
                """
            ),
            {
                "user_id": user_id,
                "total": total,
                "active": active,
                "tier": tier,
                "minutes": minutes,
                "credits": credits_cents,
                "now": now,
            },
        )


def process_referral_reward(db: Session, *, referral_id: int, now: datetime | None = None) -> bool:
    now = now or utc_now()
    referral = db.execute(
        text("SELECT id, referrer_user_id, status FROM referrals WHERE id = :id"),
        {"id": referral_id},
    ).first()
    if not referral or referral.status not in QUALIFYING_STATUSES:
        return False

    user_id = int(referral.referrer_user_id)
    reached = tier_for_count(_qualifying_count(db, user_id=user_id))
    stats = db.execute(
        text("SELECT current_tier FROM referral_statistics WHERE user_id = :user_id"),
        {"user_id": user_id},
    ).first()
    current_rank = _TIER_RANK.get(stats.current_tier, -1) if stats and stats.current_tier else -1

    db.execute(
        text("UPDATE referrals SET status = 'rewarded', rewarded_at = :now WHERE id = :id"),
        {"now": now, "id": referral_id},
    )

    if reached is None or _TIER_RANK[reached.name] <= current_rank:
        _bump_statistics(db, user_id=user_id)
        return False

    db.execute(
        text(
            """
            INSERT INTO referral_rewards (user_id, referral_id, tier, reward_type, minutes, credits_cents,
                                          claimed, expires_at, created_at)
            VALUES (:user_id, :referral_id, :tier, :reward_type, :minutes, :credits, :claimed, :expires_at, :now)
            """
        ),
        {
            "user_id": user_id,
            "referral_id": referral_id,
            "tier": reached.name,
            "reward_type": reached.reward_type,
            "minutes": reached.reward_minutes,
            "credits": reached.reward_credits_cents,
            "claimed": False,
            "expires_at": now + timedelta(days=REWARD_EXPIRY_DAYS),
            "now": now,
        },
    )
    _bump_statistics(
        db,
        user_id=user_id,
        tier=reached.name,
        minutes=reached.reward_minutes,
        credits_cents=reached.reward_credits_cents,
    )
    create_notification(
        db,
        notification_type="referral_reward",
        title=f"{reached.name} tier reached",
        message=f"You unlocked the {reached.name} referral reward. Claim it from your referrals page.",
        user_id=user_id,
        link="/referrals",
    )
    logger.info("referrals: tier reward user=%s tier=%s referral=%s", user_id, reached.name, referral_id)
    return True


def _user_organization_id(db: Session, user_id: int) -> int | None:
    row = db.execute(
        text(
            """
            SELECT organization_id FROM user_organizations
            WHERE user_id = :user_id
            ORDER BY CASE WHEN role = 'owner' THEN 0 ELSE 1 END, id
            LIMIT 1
            """
        ),
        {"user_id": user_id},
    ).first()
    return int(row.organization_id) if row else None


def _apply_reward(db: Session, *, user_id: int, organization_id: int, reward, now: datetime) -> None:
    db.execute(
        text("UPDATE referral_rewards SET claimed = :claimed, claimed_at = :now WHERE id = :id"),
        {"claimed": True, "now": now, "id": reward.id},
    )
    db.execute(
        text(
            """
            UPDATE organizations
            SET bonus_minutes_balance = COALESCE(bonus_minutes_balance, 0) + :minutes,
                bonus_credits_balance_cents = COALESCE(bonus_credits_balance_cents, 0) + :credits
            WHERE id = :organization_id
            """
        ),
        {
            "minutes": int(reward.minutes or 0),
            "credits": int(reward.credits_cents or 0),
            "organization_id": organization_id,
        },
    )
    record_audit_log(
        db,
        action="referral_reward_claimed",
        user_id=user_id,
        organization_id=organization_id,
        resource_type="reward",
        resource_id=reward.id,
        details={"minutes": reward.minutes, "credits_cents": reward.credits_cents, "tier": reward.tier},
    )


def claim_reward(db: Session, *, user_id: int, reward_id: int, now: datetime | None = None) -> dict:
    """Raises LookupError (404) for missing rewards, ValueError (400) when not claimable."""
    now = now or utc_now()
    organization_id = _user_organization_id(db, user_id)
    if organization_id is None:
        raise LookupError("Organization not found")

    reward = db.execute(
        text(
            """
            SELECT id, tier, minutes, credits_cents, claimed, expires_at
            FROM referral_rewards
            WHERE id = :reward_id
              AND user_id = :user_id
            """
        ),
        {"reward_id": reward_id, "user_id": user_id},
    ).first()
    if not reward:
        raise LookupError("Reward not found")
    if reward.claimed:
        raise ValueError("Reward already claimed")
    expires_at = to_datetime(reward.expires_at)
    if expires_at and expires_at < now:
        raise ValueError("Reward has expired")

    _apply_reward(db, user_id=user_id, organization_id=organization_id, reward=reward, now=now)
    return {
        "success": True,
        "claimed": {"minutes": int(reward.minutes or 0), "credits": int(reward.credits_cents or 0)},
        "message": "Reward claimed successfully",
    }


def claim_all_rewards(db: Session, *, user_id: int, now: datetime | None = None) -> dict:
    now = now or utc_now()
    organization_id = _user_organization_id(db, user_id)
    if organization_id is None:
        raise LookupError("Organization not found")

    rewards = db.execute(
        text(
            """
            SELECT id, tier, minutes, credits_cents, claimed, expires_at
            FROM referral_rewards
            WHERE user_id = :user_id
              AND claimed = :claimed
            ORDER BY id
            """
        ),
        {"user_id": user_id, "claimed": False},
    ).all()
    claimable = [
        reward for reward in rewards
        if not reward.expires_at or (to_datetime(reward.expires_at) or now) > now
    ]
    if not claimable:
        raise LookupError("No unclaimed rewards available")

    total_minutes = 0
    total_credits = 0
    for reward in claimable:
        _apply_reward(db, user_id=user_id, organization_id=organization_id, reward=reward, now=now)
        total_minutes += int(reward.minutes or 0)
        total_credits += int(reward.credits_cents or 0)

    return {
        "success": True,
        "claimed_count": len(claimable),
        "claimed": {"minutes": total_minutes, "credits": total_credits},
    }


def get_referral_stats(db: Session, *, user_id: int, now: datetime | None = None) -> dict:
    now = now or utc_now()
    code = db.execute(text("SELECT referral_code FROM users WHERE id = :user_id"), {"user_id": user_id}).scalar()

    counts = {
        row.status: int(row.total)
        for row in db.execute(
            text(
                """
                SELECT status, COUNT(*) AS total
                FROM referrals
                WHERE referrer_user_id = :user_id
                GROUP BY status
                """
            ),
            {"user_id": user_id},
        ).all()
    }
    qualifying = sum(counts.get(status, 0) for status in QUALIFYING_STATUSES)

    rewards = db.execute(
        text(
            """
            SELECT id, tier, reward_type, minutes, credits_cents, claimed, claimed_at, expires_at, created_at
            FROM referral_rewards
            WHERE user_id = :user_id
            ORDER BY id DESC
            """
        ),
        {"user_id": user_id},
    ).mappings().all()
    unclaimed = [
        reward for reward in rewards
        if not reward["claimed"] and (not reward["expires_at"] or (to_datetime(reward["expires_at"]) or now) > now)
    ]

    current = tier_for_count(qualifying)
    upcoming = next_tier(qualifying)
    return {
        "referral_code": code,
        "referral_link": referral_link(code) if code else None,
        "total_referrals": sum(counts.values()),
        "pending_referrals": counts.get("pending", 0),
        "active_referrals": qualifying,
        "current_tier": current.name if current else None,
        "next_tier": upcoming.name if upcoming else None,
        "referrals_to_next_tier": (upcoming.referrals_required - qualifying) if upcoming else 0,
        "unclaimed_minutes": sum(int(reward["minutes"] or 0) for reward in unclaimed),
        "unclaimed_credits_cents": sum(int(reward["credits_cents"] or 0) for reward in unclaimed),
        "rewards": [dict(reward) for reward in rewards],
    }
