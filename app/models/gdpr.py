from sqlalchemy import JSON, Boolean, Column, Integer, String, Text, TIMESTAMP
from sqlalchemy.sql import func

from app.database import Base


class DataDeletionRequest(Base):
    __tablename__ = "data_deletion_requests"

    # user_id has no FK: the row outlives the user it describes.
    id               = Column(Integer, primary_key=True)
    user_id          = Column(Integer, nullable=False, index=True)
    email            = Column(String(255), nullable=True)
    reason           = Column(Text, nullable=True)
    status           = Column(String(20), nullable=False, server_default="pending", index=True)  # pending|processing|completed|cancelled|failed
    requested_at     = Column(TIMESTAMP(timezone=True), nullable=False)
    scheduled_for    = Column(TIMESTAMP(timezone=True), nullable=False, index=True)
    processed_at     = Column(TIMESTAMP(timezone=True), nullable=True)
    cancelled_at     = Column(TIMESTAMP(timezone=True), nullable=True)
    error_message    = Column(Text, nullable=True)
    deletion_summary = Column(JSON, nullable=True)


class Consent(Base):
    __tablename__ = "consents"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    consent_type = Column(String(40), nullable=False)  # recording|marketing|data_processing
    granted = Column(Boolean, nullable=False, server_default="1")
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
