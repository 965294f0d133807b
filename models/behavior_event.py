"""SQLAlchemy model for visitor interaction events."""

import uuid

from sqlalchemy import JSON, Column, DateTime, Index, String

from database import Base


class BehaviorEventRecord(Base):
    """Raw UI interaction event, one row per tracked event."""

    __tablename__ = "behavior_events"
    __table_args__ = (
        Index("ix_behavior_events_fingerprint_ts", "fingerprint", "occurred_at"),
        {"extend_existing": True},
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    fingerprint = Column(String(255), nullable=False)
    session_id = Column(String(128), nullable=False)
    user_id = Column(String(255), nullable=True)
    event_kind = Column(String(32), nullable=False)
    event_data = Column(JSON, nullable=False, default=dict)
    device_class = Column(String(16), nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
