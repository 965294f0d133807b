"""DB-backed login/trial analytics events.

Recording is best effort: a failing insert is logged and never surfaces to the
request that triggered it.
"""

from __future__ import annotations

import hashlib
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import database
from core.env import env_str
from core.logging import get_logger
from models.login_analytics import LoginAnalyticsEvent
from services.trial_events import EventDispatcher, PromptShown
from services.trial_types import utcnow

logger = get_logger(__name__)

_IP_HASH_SALT = env_str("LOGIN_ANALYTICS_IP_SALT") or ""


class LoginEventType(str, Enum):
    PROMPT_SHOWN = "prompt_shown"
    LOGIN_ATTEMPT = "login_attempt"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGIN_CANCELLED = "login_cancelled"
    LOGIN_SKIPPED = "login_skipped"
    TRIAL_CONSUMED = "trial_consumed"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"


def hash_ip(ip: Optional[str]) -> Optional[str]:
    if not ip:
        return None
    payload = f"{ip}|{_IP_HASH_SALT}".encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


class LoginAnalyticsRecorder:
    """Writes analytics rows through a SQLAlchemy session factory."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None) -> None:
        self._session_factory = session_factory

    def _session(self) -> Session:
        factory = self._session_factory or database.SessionLocal
        return factory()

    def record(
        self,
        event_type: LoginEventType,
        *,
        fingerprint: Optional[str] = None,
        trigger_type: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        session = self._session()
        try:
            session.add(
                LoginAnalyticsEvent(
                    fingerprint=fingerprint,
                    event_type=event_type.value,
                    trigger_type=trigger_type,
                    context=dict(context or {}),
                    ip_hash=hash_ip(ip),
                    user_agent=(user_agent or "")[:512] or None,
                    created_at=utcnow(),
                )
            )
            session.commit()
            return True
        except SQLAlchemyError:
            session.rollback()
            logger.exception("Failed to persist login analytics event type=%s.", event_type.value)
            return False
        finally:
            session.close()

    def counts_by_type(self, *, fingerprint: Optional[str] = None) -> Dict[str, int]:
        session = self._session()
        try:
            statement = select(LoginAnalyticsEvent.event_type, func.count()).group_by(LoginAnalyticsEvent.event_type)
            if fingerprint:
                statement = statement.where(LoginAnalyticsEvent.fingerprint == fingerprint)
            return {event_type: int(count) for event_type, count in session.execute(statement)}
        finally:
            session.close()

    def attach(self, dispatcher: EventDispatcher) -> Callable[[], None]:
        """Record ``prompt_shown`` rows for every published :class:`PromptShown`."""

        def _on_prompt_shown(event: PromptShown) -> None:
            self.record(
                LoginEventType.PROMPT_SHOWN,
                fingerprint=event.fingerprint,
                trigger_type=str(event.context.get("trigger_type") or "auto"),
                context={"candidate_id": event.candidate_id, "experiment": event.experiment, **dict(event.context)},
            )

        return dispatcher.subscribe(PromptShown, _on_prompt_shown)


__all__ = ["LoginAnalyticsRecorder", "LoginEventType", "hash_ip"]
