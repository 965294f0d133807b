"""Login-prompt selection and feedback endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from core.logging import get_logger
from core.trial_constants import DeviceClass
from schemas.api.prompts import (
    PromptInteractionRequest,
    PromptInteractionResponse,
    PromptReportResponse,
    PromptSelectRequest,
    PromptSelectResponse,
    PromptTimingSchema,
)
from services.login_timing import LoginTimingEngine, TimingContext
from services.persona_service import PersonaService
from services.prompt_candidate_store import InteractionKind
from services.prompt_optimizer import PromptContext, PromptOptimizer, UnknownCandidateError
from services.trial_errors import PermanentStoreFailure
from web.deps import get_persona_service, get_prompt_optimizer, get_timing_engine

logger = get_logger(__name__)

router = APIRouter(prefix="/prompts", tags=["Prompts"])


def _optimizer_unavailable(exc: PermanentStoreFailure) -> HTTPException:
    logger.error("Prompt optimizer store unavailable: %s", exc)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": "prompts.unavailable", "message": "prompt optimizer temporarily unavailable"},
    )


@router.post("/select", response_model=PromptSelectResponse, summary="Pick the login prompt variant to show.")
def select_prompt(
    payload: PromptSelectRequest,
    optimizer: PromptOptimizer = Depends(get_prompt_optimizer),
    timing_engine: LoginTimingEngine = Depends(get_timing_engine),
    persona_service: PersonaService = Depends(get_persona_service),
) -> PromptSelectResponse:
    user_type = payload.userType
    persona = None
    if payload.fingerprint:
        profile = persona_service.profile(
            payload.fingerprint,
            session_duration_ms=payload.sessionDurationMs or 0,
            device_class=payload.deviceType or DeviceClass.DESKTOP,
            time_of_day=payload.timeOfDay,
        )
        persona = profile.persona_id
        user_type = user_type or profile.user_type

    context = PromptContext(
        fingerprint=payload.fingerprint,
        device_class=payload.deviceType.value if payload.deviceType else None,
        user_type=user_type,
        persona=persona,
        time_of_day=payload.timeOfDay,
        trial_remaining=payload.trialRemaining,
    )
    candidate = optimizer.select_for(context)
    if candidate is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "prompts.no_candidates", "message": "No prompt candidates are configured."},
        )

    timing = None
    if payload.fingerprint and payload.trialRemaining is not None:
        prediction = timing_engine.predict(
            payload.fingerprint,
            TimingContext(
                session_duration_ms=payload.sessionDurationMs or 0,
                trial_remaining=payload.trialRemaining,
                device_class=payload.deviceType,
                current_page=payload.currentPage,
            ),
        )
        timing = PromptTimingSchema(
            shouldShow=prediction.should_trigger,
            triggerType=prediction.trigger_type.value,
            urgency=prediction.urgency.value,
            delayMs=prediction.recommended_delay_ms,
            confidence=round(prediction.confidence, 4),
            message=prediction.message,
            reason=prediction.reason,
        )
    return PromptSelectResponse(
        candidateId=candidate.id,
        name=candidate.name,
        config=candidate.config,
        userType=user_type,
        persona=persona,
        timing=timing,
    )


@router.post(
    "/interactions",
    response_model=PromptInteractionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record an impression, click or conversion for a prompt variant.",
)
def record_prompt_interaction(
    payload: PromptInteractionRequest,
    optimizer: PromptOptimizer = Depends(get_prompt_optimizer),
) -> PromptInteractionResponse:
    context = dict(payload.context)
    if payload.fingerprint:
        context.setdefault("fingerprint", payload.fingerprint)
    try:
        interaction = optimizer.record_interaction(
            payload.candidateId,
            InteractionKind(payload.interaction),
            context,
            interaction_id=payload.interactionId,
        )
    except UnknownCandidateError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "prompts.unknown_candidate", "message": f"Unknown prompt candidate '{exc}'."},
        ) from exc
    except PermanentStoreFailure as exc:
        raise _optimizer_unavailable(exc) from exc
    return PromptInteractionResponse(
        id=interaction.id,
        candidateId=interaction.candidate_id,
        interaction=interaction.kind.value,
    )


@router.get("/report", response_model=PromptReportResponse, summary="Bandit arm performance report.")
def read_prompt_report(optimizer: PromptOptimizer = Depends(get_prompt_optimizer)) -> PromptReportResponse:
    return PromptReportResponse(**optimizer.report())


__all__ = ["router"]
