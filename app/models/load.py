from sqlalchemy import JSON, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.sql import func

from app.database import Base


class Carrier(Base):
    __tablename__ = "carriers"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    carrier_name = Column(String(255), nullable=False, index=True)
    mc_number = Column(String(20), index=True, nullable=True)
    dot_number = Column(String(20), index=True, nullable=True)
    primary_contact = Column(String(255), nullable=True)
    dispatch_phone = Column(String(40), nullable=True)
    dispatch_email = Column(String(255), nullable=True)
    equipment_types = Column(JSON, nullable=True)  # ["dry_van", "reefer", ...]
    status = Column(String(20), nullable=False, server_default="active")  # active|inactive|blacklisted
    internal_rating = Column(Numeric(3, 1), nullable=True)
    notes = Column(Text, nullable=True)
    payment_details_encrypted = Column(Text, nullable=True)  # Fernet token, see services/encryption.py
    last_contact_date = Column(DateTime(timezone=True), nullable=True)
    last_used_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Load(Base):
    __tablename__ = "loads"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    load_number = Column(String(40), index=True, nullable=True)
    status = Column(String(30), nullable=False, server_default="quoted", index=True)
    shipper_name = Column(String(255), nullable=True)
    origin_city = Column(String(120), nullable=True)
    origin_state = Column(String(2), nullable=True)
    destination_city = Column(String(120), nullable=True)
    destination_state = Column(String(2), nullable=True)
    pickup_date = Column(Date, nullable=True)
    pickup_time = Column(String(10), nullable=True)
    delivery_date = Column(Date, nullable=True)
    delivery_time = Column(String(10), nullable=True)
    commodity = Column(String(255), nullable=True)
    weight_lbs = Column(Integer, nullable=True)
    equipment_type = Column(String(30), nullable=True)
    rate_to_shipper = Column(Numeric(10, 2), nullable=True)
    rate_to_carrier = Column(Numeric(10, 2), nullable=True)
    carrier_id = Column(Integer, ForeignKey("carriers.id", ondelete="SET NULL"), nullable=True, index=True)
    rate_confirmation_id = Column(Integer, nullable=True)
    special_instructions = Column(Text, nullable=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class LoadActivity(Base):
    __tablename__ = "load_activities"

    id = Column(Integer, primary_key=True)
    load_id = Column(Integer, ForeignKey("loads.id", ondelete="CASCADE"), nullable=False, index=True)
    organization_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=True)
    activity_type = Column(String(40), nullable=False)
    description = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class RateConfirmation(Base):
    __tablename__ = "rate_confirmations"

    id                    = Column(Integer, primary_key=True, index=True)
    organization_id       = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    load_id               = Column(Integer, ForeignKey("loads.id", ondelete="CASCADE"), nullable=False, index=True)
    carrier_id            = Column(Integer, nullable=True)
    rate_con_number       = Column(String(30), nullable=False)
    status                = Column(String(20), nullable=False, server_default="draft")  # draft|sent|partially_signed|signed
    pdf_path              = Column(Text, nullable=True)
    signing_token         = Column(String(64), unique=True, nullable=True)
    version               = Column(Integer, nullable=False, server_default="1")
    broker_signed_at      = Column(DateTime(timezone=True), nullable=True)
    broker_signed_by      = Column(Integer, nullable=True)
    broker_signature_name = Column(String(255), nullable=True)
    carrier_signed_at     = Column(DateTime(timezone=True), nullable=True)
    carrier_signature_name = Column(String(255), nullable=True)
    carrier_signature_ip  = Column(String(64), nullable=True)
    fully_signed_at       = Column(DateTime(timezone=True), nullable=True)
    created_by            = Column(Integer, nullable=True)
    created_at            = Column(DateTime(timezone=True), server_default=func.now())
    updated_at            = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("organization_id", "rate_con_number", name="uq_rate_confirmations_number"),
    )


class SignatureAuditLog(Base):
    __tablename__ = "signature_audit_logs"

    id = Column(Integer, primary_key=True)
    rate_confirmation_id = Column(Integer, ForeignKey("rate_confirmations.id", ondelete="CASCADE"), nullable=False, index=True)
    signer_type = Column(String(20), nullable=False)  # broker|carrier
    signer_name = Column(String(255), nullable=False)
    signer_email = Column(String(255), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    signed_at = Column(DateTime(timezone=True), nullable=False)
