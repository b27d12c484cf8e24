from sqlalchemy import Column, Date, ForeignKey, Index, Integer, Numeric, String, Text, TIMESTAMP, UniqueConstraint
from sqlalchemy.sql import func

from app.database import Base


class OverageInvoice(Base):
    __tablename__ = "overage_invoices"

    id                       = Column(Integer, primary_key=True)
    organization_id          = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    amount                   = Column(Numeric(10, 2), nullable=False)
    minutes_overage          = Column(Integer, nullable=False)
    billing_period_start     = Column(Date, nullable=False)
    billing_period_end       = Column(Date, nullable=False)
    status                   = Column(String(20), nullable=False, server_default="pending", index=True)  # pending|sent|paid|failed|cancelled
    checkout_url             = Column(Text, nullable=True)
    stripe_session_id        = Column(String(255), nullable=True)
    stripe_transaction_id    = Column(String(255), nullable=True)
    sent_at                  = Column(TIMESTAMP(timezone=True), nullable=True)
    paid_at                  = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at               = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at               = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("organization_id", "billing_period_start", "billing_period_end", name="uq_overage_invoices_period"),
    )


class OverageTransaction(Base):
    __tablename__ = "overage_transactions"

    id               = Column(Integer, primary_key=True)
    organization_id  = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_type = Column(String(30), nullable=False)  # pack_purchase|invoice_payment|reset
    minutes          = Column(Integer, nullable=False, server_default="0")
    amount           = Column(Numeric(10, 2), nullable=True)
    external_id      = Column(String(255), nullable=True)
    created_at       = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)

    # one credit per Stripe payment; NULL external ids are not constrained
    __table_args__ = (
        Index("uq_overage_transactions_external", "transaction_type", "external_id", unique=True),
    )
