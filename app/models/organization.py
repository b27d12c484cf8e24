from sqlalchemy import JSON, Boolean, Column, Date, ForeignKey, Integer, Numeric, String, Text, TIMESTAMP, UniqueConstraint
from sqlalchemy.sql import func

from app.database import Base


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    plan = Column(String(40), nullable=False, server_default="free")
    subscription_status = Column(String(40), nullable=False, server_default="active")
    stripe_customer_id = Column(String(255), nullable=True)

    mc_number = Column(String(20), nullable=True)
    dot_number = Column(String(20), nullable=True)
    address = Column(Text, nullable=True)
    phone = Column(String(40), nullable=True)
    email = Column(String(255), nullable=True)

    usage_minutes_limit = Column(Integer, nullable=True)
    usage_minutes_current = Column(Integer, nullable=False, server_default="0")
    usage_reset_date = Column(Date, nullable=True)

    overage_debt = Column(Numeric(10, 2), nullable=False, server_default="0")
    overage_debt_due_date = Column(TIMESTAMP(timezone=True), nullable=True)
    has_unpaid_overage = Column(Boolean, nullable=False, server_default="0")
    can_upgrade = Column(Boolean, nullable=False, server_default="1")
    last_overage_invoice_id = Column(Integer, nullable=True)
    overage_payment_status = Column(String(20), nullable=False, server_default="none")
    overage_credits = Column(Integer, nullable=False, server_default="0")

    bonus_minutes_balance = Column(Integer, nullable=False, server_default="0")
    bonus_credits_balance_cents = Column(Integer, nullable=False, server_default="0")

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    referral_code = Column(String(20), unique=True, nullable=True)
    referred_by_code = Column(String(20), nullable=True)
    email_verified_at = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


class UserOrganization(Base):
    __tablename__ = "user_organizations"

    id              = Column(Integer, primary_key=True)
    user_id         = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    role            = Column(String(20), nullable=False, server_default="member")  # owner|admin|member
    created_at      = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "organization_id", name="uq_user_organizations_member"),
    )


class Subscription(Base):
    __tablename__ = "subscriptions"

    id                     = Column(Integer, primary_key=True)
    organization_id        = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id                = Column(Integer, nullable=True, index=True)
    plan                   = Column(String(40), nullable=False)
    status                 = Column(String(40), nullable=False, server_default="active")
    stripe_subscription_id = Column(String(255), nullable=True)
    cancelled_at           = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at             = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=True, index=True)
    organization_id = Column(Integer, nullable=True, index=True)
    notification_type = Column(String(40), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    link = Column(String(255), nullable=True)
    is_read = Column(Boolean, nullable=False, server_default="0")
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


class SystemLog(Base):
    __tablename__ = "system_logs"

    id = Column(Integer, primary_key=True)
    log_type = Column(String(50), nullable=False, index=True)
    log_key = Column(String(50), nullable=True, index=True)  # e.g. YYYY-MM for monthly jobs
    message = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=True, index=True)
    organization_id = Column(Integer, nullable=True, index=True)
    action = Column(String(80), nullable=False)
    resource_type = Column(String(80), nullable=True)
    resource_id = Column(String(64), nullable=True)
    details = Column(JSON, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


class MagicLinkToken(Base):
    __tablename__ = "magic_link_tokens"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), nullable=False, index=True)
    token_hash = Column(String(64), unique=True, nullable=False)
    expires_at = Column(TIMESTAMP(timezone=True), nullable=False)
    used_at = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


class MagicLinkSendAttempt(Base):
    __tablename__ = "magic_link_send_attempts"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), nullable=False, index=True)
    client_ip = Column(String(64), nullable=False, index=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
