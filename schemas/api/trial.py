"""Pydantic schemas for trial quota endpoints."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class TrialConsumeRequest(BaseModel):
    # Both are optional at the schema level so that a missing value surfaces as
    # the 400 "missing required parameter" response rather than a 422.
    action: Optional[str] = Field(default=None, description="Action kind to charge against the trial.")
    fingerprint: Optional[str] = Field(default=None, description="Anonymous device fingerprint.")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Free-form action context.")
    userAgent: Optional[str] = Field(default=None, max_length=512)


class TrialConsumeResponse(BaseModel):
    success: bool
    code: str = Field(default="trial.consumed", description="Stable outcome code; distinguishes exhaustion from blocking.")
    remaining: int
    blocked: bool = False
    message: str
    nextResetAt: Optional[str] = None
    rateLimited: bool = False
    retryAfter: Optional[int] = None


class TrialActionSchema(BaseModel):
    type: str
    weight: int
    timestamp: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TrialStatsSchema(BaseModel):
    totalActions: int = 0
    actionsToday: int = 0
    actionsThisHour: int = 0
    lastActionAt: Optional[str] = None


class TrialStatusResponse(BaseModel):
    remaining: int
    total: int
    isBlocked: bool
    nextResetAt: Optional[str] = None
    recentActions: List[TrialActionSchema] = Field(default_factory=list)
    stats: TrialStatsSchema = Field(default_factory=TrialStatsSchema)


class TrialResetResponse(BaseModel):
    success: bool = True
    message: str
    remaining: int
    total: int


class TrialUnblockRequest(BaseModel):
    fingerprint: Optional[str] = None


class TrialUnblockResponse(BaseModel):
    success: bool = True
    message: str
    isBlocked: bool = False


__all__ = [
    "TrialActionSchema",
    "TrialConsumeRequest",
    "TrialConsumeResponse",
    "TrialResetResponse",
    "TrialStatsSchema",
    "TrialStatusResponse",
    "TrialUnblockRequest",
    "TrialUnblockResponse",
]
