"""SQLAlchemy model for per-fingerprint trial ledgers."""

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, func

from database import Base


class TrialLedgerRecord(Base):
    __tablename__ = "trial_ledgers"
    __table_args__ = {"extend_existing": True}

    fingerprint = Column(String(255), primary_key=True)
    remaining = Column(Integer, nullable=False)
    total = Column(Integer, nullable=False)
    actions = Column(JSON, nullable=False, default=list)
    is_blocked = Column(Boolean, nullable=False, default=False)
    blocked_until = Column(DateTime(timezone=True), nullable=True)
    last_reset_at = Column(DateTime(timezone=True), nullable=True)
    last_action_at = Column(DateTime(timezone=True), nullable=True)
    converted_user_id = Column(String(255), nullable=True)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
