from sqlalchemy import Column, Date, ForeignKey, Integer, Numeric, String, Text, TIMESTAMP
from sqlalchemy.sql import func

from app.database import Base


class Partner(Base):
    __tablename__ = "partners"

    id                   = Column(Integer, primary_key=True)
    user_id              = Column(Integer, nullable=True, index=True)
    company_name         = Column(String(255), nullable=False)
    email                = Column(String(255), nullable=False)
    status               = Column(String(20), nullable=False, server_default="pending")  # pending|active|suspended
    tier                 = Column(String(20), nullable=False, server_default="standard")  # standard|premium
    commission_rate      = Column(Numeric(4, 2), nullable=True)
    minimum_payout_cents = Column(Integer, nullable=False, server_default="10000")
    created_at           = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


class PartnerReferral(Base):
    __tablename__ = "partner_referrals"

    id                        = Column(Integer, primary_key=True)
    partner_id                = Column(Integer, ForeignKey("partners.id", ondelete="CASCADE"), nullable=False, index=True)
    organization_id           = Column(Integer, nullable=False, index=True)
    status                    = Column(String(20), nullable=False, server_default="active")  # active|churned
    subscription_amount_cents = Column(Integer, nullable=False, server_default="0")
    months_active             = Column(Integer, nullable=False, server_default="0")
    first_payment_at          = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at                = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


class PartnerCommission(Base):
    __tablename__ = "partner_commissions"

    id                = Column(Integer, primary_key=True)
    partner_id        = Column(Integer, ForeignKey("partners.id", ondelete="CASCADE"), nullable=False, index=True)
    referral_id       = Column(Integer, nullable=True, index=True)
    organization_id   = Column(Integer, nullable=True)
    amount_cents      = Column(Integer, nullable=False)
    base_amount_cents = Column(Integer, nullable=False, server_default="0")
    commission_rate   = Column(Numeric(4, 2), nullable=True)
    month             = Column(String(7), nullable=False, index=True)  # YYYY-MM
    commission_type   = Column(String(20), nullable=False, server_default="recurring")  # recurring|adjustment
    status            = Column(String(20), nullable=False, server_default="pending", index=True)  # pending|approved|paid|reversed
    reversal_reason   = Column(Text, nullable=True)
    payout_id         = Column(Integer, nullable=True)
    approved_at       = Column(TIMESTAMP(timezone=True), nullable=True)
    paid_at           = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at        = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


class PartnerPayout(Base):
    __tablename__ = "partner_payouts"

    id               = Column(Integer, primary_key=True)
    partner_id       = Column(Integer, ForeignKey("partners.id", ondelete="CASCADE"), nullable=False, index=True)
    amount_cents     = Column(Integer, nullable=False)
    commission_count = Column(Integer, nullable=False, server_default="0")
    status           = Column(String(20), nullable=False, server_default="pending")
    period_end       = Column(Date, nullable=False)
    created_at       = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
