"""Shared FastAPI dependencies."""

from __future__ import annotations

from functools import lru_cache

from fastapi import Request
from sqlalchemy.orm import Session

import database
from services.behavior_ingest import BehaviorIngestor
from services.behavior_store import BehaviorStore, SqlBehaviorStore
from services.login_analytics import LoginAnalyticsRecorder
from services.login_timing import LoginTimingEngine, ScoringConfig
from services.persona_service import PersonaService
from services.prompt_candidate_store import SqlPromptCandidateStore
from services.prompt_optimizer import PromptOptimizer
from services.trial_config import get_trial_settings
from services.trial_events import EventDispatcher
from services.trial_ledger_store import SqlLedgerStore
from services.trial_manager import TrialManager
from services.trial_rate_limiter import TrialRateLimiter


def get_client_ip(request: Request) -> str:
    """Client IP with proxy support; ``unknown`` when nothing is available."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    if request.client:
        return request.client.host
    return "unknown"


def _session() -> Session:
    # Resolved per call so tests can swap ``database.SessionLocal``.
    return database.SessionLocal()


@lru_cache(maxsize=1)
def get_event_dispatcher() -> EventDispatcher:
    return EventDispatcher()


@lru_cache(maxsize=1)
def get_login_analytics() -> LoginAnalyticsRecorder:
    recorder = LoginAnalyticsRecorder(_session)
    recorder.attach(get_event_dispatcher())
    return recorder


@lru_cache(maxsize=1)
def get_trial_manager() -> TrialManager:
    settings = get_trial_settings()
    return TrialManager(
        SqlLedgerStore(_session),
        settings=settings,
        rate_limiter=TrialRateLimiter.from_env(limit=settings.max_actions_per_hour),
        dispatcher=get_event_dispatcher(),
        analytics=get_login_analytics(),
    )


@lru_cache(maxsize=1)
def get_behavior_store() -> BehaviorStore:
    return SqlBehaviorStore(_session)


@lru_cache(maxsize=1)
def get_behavior_ingestor() -> BehaviorIngestor:
    return BehaviorIngestor(get_behavior_store(), dispatcher=get_event_dispatcher())


@lru_cache(maxsize=1)
def get_timing_engine() -> LoginTimingEngine:
    return LoginTimingEngine(get_behavior_store(), config=ScoringConfig.from_env())


@lru_cache(maxsize=1)
def get_persona_service() -> PersonaService:
    return PersonaService(store=get_behavior_store())


@lru_cache(maxsize=1)
def get_prompt_optimizer() -> PromptOptimizer:
    return PromptOptimizer.from_env(SqlPromptCandidateStore(_session), dispatcher=get_event_dispatcher())


def reset_dependency_cache() -> None:
    """Drop cached singletons (used when configuration changes, e.g. in tests)."""
    if get_behavior_ingestor.cache_info().currsize:
        get_behavior_ingestor().shutdown(wait=False)
    for factory in (
        get_event_dispatcher,
        get_login_analytics,
        get_trial_manager,
        get_behavior_store,
        get_behavior_ingestor,
        get_timing_engine,
        get_persona_service,
        get_prompt_optimizer,
    ):
        factory.cache_clear()


__all__ = [
    "get_behavior_ingestor",
    "get_behavior_store",
    "get_persona_service",
    "get_client_ip",
    "get_event_dispatcher",
    "get_login_analytics",
    "get_prompt_optimizer",
    "get_timing_engine",
    "get_trial_manager",
    "reset_dependency_cache",
]
