"""Pydantic schemas for the login-prompt optimizer endpoints."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from core.trial_constants import DeviceClass

InteractionKindLiteral = Literal["impression", "click", "conversion"]
TimeOfDay = Literal["morning", "afternoon", "evening", "night"]


class PromptSelectRequest(BaseModel):
    fingerprint: Optional[str] = None
    deviceType: Optional[DeviceClass] = None
    userType: Optional[Literal["new", "returning"]] = None
    timeOfDay: Optional[TimeOfDay] = None
    trialRemaining: Optional[int] = Field(default=None, ge=0)
    sessionDurationMs: Optional[int] = Field(default=None, ge=0)
    currentPage: Optional[str] = None


class PromptTimingSchema(BaseModel):
    shouldShow: bool
    triggerType: str
    urgency: str
    delayMs: int
    confidence: float
    message: str
    reason: str


class PromptSelectResponse(BaseModel):
    candidateId: str
    name: str
    config: Dict[str, Any] = Field(default_factory=dict)
    userType: Optional[str] = None
    persona: Optional[str] = None
    timing: Optional[PromptTimingSchema] = None


class PromptInteractionRequest(BaseModel):
    candidateId: str = Field(..., min_length=1)
    interaction: InteractionKindLiteral
    interactionId: Optional[str] = Field(default=None, max_length=36)
    fingerprint: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class PromptInteractionResponse(BaseModel):
    id: str
    candidateId: str
    interaction: InteractionKindLiteral


class PromptCandidateReportSchema(BaseModel):
    id: str
    name: str
    parentId: Optional[str] = None
    impressions: int
    clicks: int
    conversions: int
    reward: float
    confidence: float


class PromptReportResponse(BaseModel):
    experiment: str
    candidates: List[PromptCandidateReportSchema]
    best: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    lastRun: Optional[str] = None


__all__ = [
    "PromptCandidateReportSchema",
    "PromptInteractionRequest",
    "PromptInteractionResponse",
    "PromptReportResponse",
    "PromptSelectRequest",
    "PromptSelectResponse",
    "PromptTimingSchema",
]
