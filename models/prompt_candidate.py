"""SQLAlchemy models backing the login-prompt optimizer."""

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, func

from database import Base


class PromptCandidateRecord(Base):
    """Bandit arm with its configuration and cumulative counters."""

    __tablename__ = "prompt_candidates"
    __table_args__ = {"extend_existing": True}

    id = Column(String(128), primary_key=True)
    experiment = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    parent_id = Column(String(128), nullable=True)
    config = Column(JSON, nullable=False, default=dict)
    impressions = Column(Integer, nullable=False, default=0)
    clicks = Column(Integer, nullable=False, default=0)
    conversions = Column(Integer, nullable=False, default=0)
    status = Column(String(16), nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class PromptInteractionRecord(Base):
    """Buffered impression/click/conversion feedback awaiting batch aggregation."""

    __tablename__ = "prompt_interactions"
    __table_args__ = (
        Index("ix_prompt_interactions_experiment_ts", "experiment", "occurred_at"),
        {"extend_existing": True},
    )

    id = Column(String(36), primary_key=True)
    experiment = Column(String(64), nullable=False)
    candidate_id = Column(String(128), nullable=False)
    interaction = Column(String(16), nullable=False)
    context = Column(JSON, nullable=False, default=dict)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    aggregated_at = Column(DateTime(timezone=True), nullable=True)
