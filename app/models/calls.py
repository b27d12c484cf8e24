from sqlalchemy import JSON, BigInteger, Boolean, Column, ForeignKey, Integer, Numeric, String, Text, TIMESTAMP, UniqueConstraint
from sqlalchemy.sql import func

from app.database import Base


class Call(Base):
    __tablename__ = "calls"

    id                      = Column(Integer, primary_key=True, index=True)
    organization_id         = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id                 = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    source                  = Column(String(20), nullable=False, server_default="upload")  # upload|twilio
    file_name               = Column(String(255), nullable=True)
    file_url                = Column(Text, nullable=True)
    storage_path            = Column(Text, nullable=True)
    mime_type               = Column(String(60), nullable=True)
    file_size               = Column(BigInteger, nullable=True)
    duration_seconds        = Column(Integer, nullable=True)
    duration_minutes        = Column(Integer, nullable=True)
    status                  = Column(String(30), nullable=False, server_default="uploaded", index=True)
    processing_progress     = Column(Integer, nullable=False, server_default="0")
    processing_message      = Column(String(255), nullable=True)
    processing_error        = Column(Text, nullable=True)
    processing_attempts     = Column(Integer, nullable=False, server_default="0")
    last_processing_attempt = Column(TIMESTAMP(timezone=True), nullable=True)
    template_id             = Column(Integer, nullable=True)
    customer_name           = Column(String(255), nullable=True)
    twilio_call_sid         = Column(String(64), nullable=True, index=True)
    from_number             = Column(String(20), nullable=True)
    to_number               = Column(String(20), nullable=True)
    processed_at            = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at              = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at              = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class Transcript(Base):
    __tablename__ = "transcripts"

    id = Column(Integer, primary_key=True)
    call_id = Column(Integer, ForeignKey("calls.id", ondelete="CASCADE"), nullable=False, index=True)
    organization_id = Column(Integer, nullable=False, index=True)
    text = Column(Text, nullable=False)
    language = Column(String(12), nullable=True)
    duration_seconds = Column(Numeric(10, 2), nullable=True)
    segments = Column(JSON, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


class CallField(Base):
    __tablename__ = "call_fields"

    id = Column(Integer, primary_key=True)
    call_id = Column(Integer, ForeignKey("calls.id", ondelete="CASCADE"), nullable=False, index=True)
    organization_id = Column(Integer, nullable=False, index=True)
    field_name = Column(String(100), nullable=False)
    field_value = Column(Text, nullable=True)
    confidence_score = Column(Numeric(4, 2), nullable=True)
    source = Column(String(20), nullable=False, server_default="ai")  # ai|template
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


class ExtractionTemplate(Base):
    __tablename__ = "extraction_templates"

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    name = Column(String(255), nullable=False)
    fields = Column(JSON, nullable=False)  # [{"name": ..., "description": ...}]
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


class ProcessingLock(Base):
    __tablename__ = "processing_locks"

    id                = Column(Integer, primary_key=True)
    organization_id   = Column(Integer, nullable=False, index=True)
    call_id           = Column(Integer, nullable=False)
    estimated_minutes = Column(Integer, nullable=False, server_default="0")
    locked_at         = Column(TIMESTAMP(timezone=True), nullable=False)
    expires_at        = Column(TIMESTAMP(timezone=True), nullable=False, index=True)

    # release matches on id, so ids are never reused
    __table_args__ = (
        UniqueConstraint("call_id", name="uq_processing_locks_call"),
        {"sqlite_autoincrement": True},
    )


class UsageLog(Base):
    __tablename__ = "usage_logs"

    id              = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id         = Column(Integer, nullable=True)
    call_id         = Column(Integer, nullable=True, index=True)
    usage_type      = Column(String(30), nullable=False, server_default="transcription")
    minutes_used    = Column(Integer, nullable=False)
    is_overage      = Column(Boolean, nullable=False, server_default="0")
    created_at      = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("call_id", "usage_type", name="uq_usage_logs_call_type"),
    )


class TwilioPhoneNumber(Base):
    __tablename__ = "twilio_phone_numbers"

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, nullable=True)
    phone_number = Column(String(20), unique=True, nullable=False)
    friendly_name = Column(String(255), nullable=True)
    forward_to = Column(String(20), nullable=True)
    recording_enabled = Column(Boolean, nullable=False, server_default="1")
    recording_disclosure_enabled = Column(Boolean, nullable=False, server_default="1")
    recording_disclosure_text = Column(Text, nullable=True)
    auto_transcribe = Column(Boolean, nullable=False, server_default="1")
    is_active = Column(Boolean, nullable=False, server_default="1")
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


class TwilioCall(Base):
    __tablename__ = "twilio_calls"

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, nullable=False, index=True)
    call_id = Column(Integer, ForeignKey("calls.id", ondelete="SET NULL"), nullable=True, index=True)
    phone_number_id = Column(Integer, nullable=True)
    call_sid = Column(String(64), unique=True, nullable=False)
    from_number = Column(String(20), nullable=True)
    to_number = Column(String(20), nullable=True)
    direction = Column(String(20), nullable=True)
    status = Column(String(30), nullable=True)
    duration = Column(Integer, nullable=True)
    recording_sid = Column(String(64), nullable=True)
    recording_url = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
