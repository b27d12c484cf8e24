from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, TIMESTAMP
from sqlalchemy.sql import func

from app.database import Base


class Referral(Base):
    __tablename__ = "referrals"

    id               = Column(Integer, primary_key=True)
    referrer_user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    referred_email   = Column(String(255), nullable=False, index=True)
    referred_user_id = Column(Integer, nullable=True, index=True)
    referral_code    = Column(String(20), nullable=False, index=True)
    status           = Column(String(20), nullable=False, server_default="pending")  # pending|active|rewarded|expired
    activated_at     = Column(TIMESTAMP(timezone=True), nullable=True)
    rewarded_at      = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at       = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


class ReferralReward(Base):
    __tablename__ = "referral_rewards"

    id            = Column(Integer, primary_key=True)
    user_id       = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    referral_id   = Column(Integer, nullable=True)
    tier          = Column(String(20), nullable=False)
    reward_type   = Column(String(20), nullable=False)  # minutes|credits|both
    minutes       = Column(Integer, nullable=False, server_default="0")
    credits_cents = Column(Integer, nullable=False, server_default="0")
    claimed       = Column(Boolean, nullable=False, server_default="0")
    claimed_at    = Column(TIMESTAMP(timezone=True), nullable=True)
    expires_at    = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at    = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


class ReferralStatistics(Base):
    __tablename__ = "referral_statistics"

    id                          = Column(Integer, primary_key=True)
    user_id                     = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    total_referrals             = Column(Integer, nullable=False, server_default="0")
    active_referrals            = Column(Integer, nullable=False, server_default="0")
    current_tier                = Column(String(20), nullable=True)
    total_minutes_earned        = Column(Integer, nullable=False, server_default="0")
    total_credits_earned_cents  = Column(Integer, nullable=False, server_default="0")
    updated_at                  = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
