"""Trial quota endpoints for anonymous visitors."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from core.env import is_development_env
from core.logging import get_logger
from schemas.api.trial import (
    TrialActionSchema,
    TrialConsumeRequest,
    TrialConsumeResponse,
    TrialResetResponse,
    TrialStatsSchema,
    TrialStatusResponse,
    TrialUnblockRequest,
    TrialUnblockResponse,
)
from services.trial_errors import PermanentStoreFailure, TrialValidationError
from services.trial_manager import TrialManager
from services.trial_types import ConsumeResult, TrialStatus
from web.deps import get_client_ip, get_trial_manager

logger = get_logger(__name__)

router = APIRouter(prefix="/trial", tags=["Trial"])


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _store_unavailable(exc: PermanentStoreFailure) -> HTTPException:
    logger.error("Trial store unavailable: %s", exc)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": exc.code, "message": "trial service temporarily unavailable"},
    )


def _require_admin_env() -> None:
    if not is_development_env():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "trial.admin_disabled", "message": "Not available in this environment."},
        )


def _result_code(result: ConsumeResult) -> str:
    if result.success:
        return "trial.consumed"
    if result.rate_limited:
        return "trial.rate_limited"
    if result.blocked:
        return "trial.blocked"
    return "trial.exhausted"


def _serialize_result(result: ConsumeResult) -> TrialConsumeResponse:
    return TrialConsumeResponse(
        success=result.success,
        code=_result_code(result),
        remaining=result.remaining,
        # Clients treat any quota denial as "stop and prompt login".
        blocked=result.blocked or result.exhausted,
        message=result.message,
        nextResetAt=_iso(result.next_reset_at),
        rateLimited=result.rate_limited,
        retryAfter=result.retry_after,
    )


def serialize_status(trial_status: TrialStatus) -> TrialStatusResponse:
    stats = trial_status.stats
    return TrialStatusResponse(
        remaining=trial_status.remaining,
        total=trial_status.total,
        isBlocked=trial_status.is_blocked,
        nextResetAt=_iso(trial_status.next_reset_at),
        recentActions=[
            TrialActionSchema(
                type=action.kind.value,
                weight=action.weight,
                timestamp=action.timestamp.isoformat(),
                metadata=dict(action.metadata),
            )
            for action in trial_status.recent_actions
        ],
        stats=TrialStatsSchema(
            totalActions=stats.total_actions,
            actionsToday=stats.actions_today,
            actionsThisHour=stats.actions_this_hour,
            lastActionAt=_iso(stats.last_action_at),
        ),
    )


@router.post("/consume", response_model=TrialConsumeResponse, summary="Charge one action against the trial.")
def consume_trial(
    payload: TrialConsumeRequest,
    request: Request,
    manager: TrialManager = Depends(get_trial_manager),
):
    try:
        result = manager.consume(
            payload.fingerprint,
            payload.action,
            payload.metadata,
            ip_address=get_client_ip(request),
            user_agent=payload.userAgent or request.headers.get("user-agent"),
        )
    except TrialValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_detail()) from exc
    except PermanentStoreFailure as exc:
        raise _store_unavailable(exc) from exc

    body = _serialize_result(result)
    if result.success:
        return body
    if result.rate_limited:
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content=body.model_dump(),
            headers={"Retry-After": str(result.retry_after or 1)},
        )
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content=body.model_dump())


@router.get("/status", response_model=TrialStatusResponse, summary="Current trial ledger for a fingerprint.")
def read_trial_status(
    fingerprint: Optional[str] = Query(default=None),
    manager: TrialManager = Depends(get_trial_manager),
) -> TrialStatusResponse:
    try:
        trial_status = manager.status(fingerprint or "")
    except TrialValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_detail()) from exc
    except PermanentStoreFailure as exc:
        raise _store_unavailable(exc) from exc
    return serialize_status(trial_status)


@router.delete("/reset", response_model=TrialResetResponse, summary="Restore the full trial quota (development only).")
def reset_trial(
    fingerprint: Optional[str] = Query(default=None),
    preserveActions: bool = Query(default=False),
    manager: TrialManager = Depends(get_trial_manager),
) -> TrialResetResponse:
    _require_admin_env()
    try:
        ledger = manager.reset(fingerprint or "", preserve_actions=preserveActions, reason="admin")
    except TrialValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_detail()) from exc
    except PermanentStoreFailure as exc:
        raise _store_unavailable(exc) from exc
    return TrialResetResponse(message="trial reset", remaining=ledger.remaining, total=ledger.total)


@router.post("/unblock", response_model=TrialUnblockResponse, summary="Lift a fraud block (development only).")
def unblock_trial(
    payload: TrialUnblockRequest,
    manager: TrialManager = Depends(get_trial_manager),
) -> TrialUnblockResponse:
    _require_admin_env()
    try:
        ledger = manager.clear_block(payload.fingerprint or "")
    except TrialValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_detail()) from exc
    except PermanentStoreFailure as exc:
        raise _store_unavailable(exc) from exc
    return TrialUnblockResponse(message="trial unblocked", isBlocked=ledger.is_blocked)


__all__ = ["router", "serialize_status"]
