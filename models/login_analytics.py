"""SQLAlchemy model for trial/login analytics and audit events."""

import uuid

from sqlalchemy import JSON, Column, DateTime, String, func

from database import Base


class LoginAnalyticsEvent(Base):
    __tablename__ = "login_analytics_events"
    __table_args__ = {"extend_existing": True}

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    fingerprint = Column(String(255), nullable=True, index=True)
    event_type = Column(String(64), nullable=False, index=True)
    trigger_type = Column(String(64), nullable=True)
    context = Column(JSON, nullable=True)
    ip_hash = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
