"""Pydantic schemas for behavioral event ingestion."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from core.trial_constants import BehaviorEventKind, DeviceClass


class BehaviorEventSchema(BaseModel):
    type: BehaviorEventKind
    fingerprint: str = Field(..., min_length=1, max_length=128)
    sessionId: str = Field(..., min_length=1, max_length=128)
    timestamp: Optional[datetime] = Field(default=None, description="Client timestamp; server time when omitted.")
    deviceType: DeviceClass = DeviceClass.DESKTOP
    userId: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class BehaviorEventBatchRequest(BaseModel):
    events: List[BehaviorEventSchema] = Field(..., min_length=1, max_length=100)


class BehaviorEventBatchResponse(BaseModel):
    accepted: int
    degraded: bool = False


__all__ = ["BehaviorEventBatchRequest", "BehaviorEventBatchResponse", "BehaviorEventSchema"]
