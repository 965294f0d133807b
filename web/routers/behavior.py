"""Behavioral event ingestion endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from schemas.api.behavior import BehaviorEventBatchRequest, BehaviorEventBatchResponse
from services.behavior_ingest import BehaviorIngestor
from services.behavior_store import BehaviorEvent
from services.trial_types import ensure_aware, utcnow
from web.deps import get_behavior_ingestor

router = APIRouter(prefix="/behavior", tags=["Behavior"])


@router.post(
    "/events",
    response_model=BehaviorEventBatchResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue behavioral events for the login-timing engine.",
)
def ingest_behavior_events(
    payload: BehaviorEventBatchRequest,
    ingestor: BehaviorIngestor = Depends(get_behavior_ingestor),
) -> BehaviorEventBatchResponse:
    received_at = utcnow()
    for item in payload.events:
        ingestor.submit(
            BehaviorEvent(
                fingerprint=item.fingerprint,
                session_id=item.sessionId,
                kind=item.type,
                timestamp=ensure_aware(item.timestamp) or received_at,
                device_class=item.deviceType,
                data=dict(item.data),
                user_id=item.userId,
            )
        )
    return BehaviorEventBatchResponse(accepted=len(payload.events), degraded=ingestor.degraded)


__all__ = ["router"]
