"""Match visitors against predefined personas for prompt personalization."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from core.logging import get_logger
from core.trial_constants import DeviceClass
from services.behavior_store import BehaviorEvent, BehaviorStore
from services.trial_errors import PermanentStoreFailure, TransientStoreFailure
from services.trial_types import utcnow

logger = get_logger(__name__)

SESSION_WEIGHT = 0.25
DEVICE_WEIGHT = 0.15
FEATURE_WEIGHT = 0.3
TIME_WEIGHT = 0.1
INTERACTION_WEIGHT = 0.2
_INTERACTION_WINDOW = timedelta(minutes=30)


def time_of_day(moment: datetime) -> str:
    hour = moment.hour
    if 6 <= hour < 12:
        return "morning"
    if 12 <= hour < 18:
        return "afternoon"
    if 18 <= hour < 22:
        return "evening"
    return "night"


@dataclass(frozen=True)
class Persona:
    id: str
    name: str
    session_range_ms: Tuple[int, int]
    interaction_frequency: str
    feature_usage: Sequence[str]
    device_preference: str
    time_of_day_pattern: Sequence[str]
    conversion_likelihood: float
    preferred_timing: str
    message_style: str


PERSONAS: Sequence[Persona] = (
    Persona(
        id="power_user",
        name="Power user",
        session_range_ms=(300_000, 1_800_000),
        interaction_frequency="high",
        feature_usage=("advanced_analytics", "export_data", "api_access"),
        device_preference="desktop",
        time_of_day_pattern=("morning", "afternoon"),
        conversion_likelihood=0.8,
        preferred_timing="contextual",
        message_style="direct",
    ),
    Persona(
        id="casual_explorer",
        name="Casual explorer",
        session_range_ms=(60_000, 300_000),
        interaction_frequency="medium",
        feature_usage=("video_analysis", "basic_report"),
        device_preference="both",
        time_of_day_pattern=("evening", "night"),
        conversion_likelihood=0.4,
        preferred_timing="delayed",
        message_style="benefit-focused",
    ),
    Persona(
        id="goal_oriented",
        name="Goal-oriented user",
        session_range_ms=(120_000, 600_000),
        interaction_frequency="medium",
        feature_usage=("save_report", "export_data"),
        device_preference="desktop",
        time_of_day_pattern=("morning", "afternoon"),
        conversion_likelihood=0.7,
        preferred_timing="immediate",
        message_style="urgency-based",
    ),
    Persona(
        id="mobile_first",
        name="Mobile-first user",
        session_range_ms=(30_000, 180_000),
        interaction_frequency="low",
        feature_usage=("video_analysis",),
        device_preference="mobile",
        time_of_day_pattern=("morning", "evening"),
        conversion_likelihood=0.3,
        preferred_timing="immediate",
        message_style="friendly",
    ),
    Persona(
        id="trial_maximizer",
        name="Trial maximizer",
        session_range_ms=(180_000, 900_000),
        interaction_frequency="high",
        feature_usage=("video_analysis", "basic_report", "save_attempt"),
        device_preference="both",
        time_of_day_pattern=("afternoon", "evening"),
        conversion_likelihood=0.6,
        preferred_timing="contextual",
        message_style="benefit-focused",
    ),
)

_DEFAULT_PERSONA_ID = "casual_explorer"


@dataclass(frozen=True)
class PersonaContext:
    session_duration_ms: int
    device_class: DeviceClass
    features_used: Sequence[str] = ()
    time_of_day: Optional[str] = None


@dataclass(frozen=True)
class PersonaMatch:
    persona: Persona
    score: float
    scores: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class VisitorProfile:
    user_type: str
    persona_id: str


def session_duration_score(session_range_ms: Tuple[int, int], duration_ms: int) -> float:
    low, high = session_range_ms
    if low <= duration_ms <= high:
        return 1.0
    closest = min(abs(duration_ms - low), abs(duration_ms - high))
    return max(0.0, 1.0 - closest / (high - low))


def device_score(preference: str, device_class: DeviceClass) -> float:
    if preference == "both" or preference == device_class.value:
        return 1.0
    if device_class is DeviceClass.TABLET:
        return 0.5
    return 0.0


def feature_usage_score(persona_features: Sequence[str], used: Sequence[str]) -> float:
    if not persona_features:
        return 0.0
    used_set = set(used)
    return sum(1 for feature in persona_features if feature in used_set) / len(persona_features)


def interaction_frequency(events: Sequence[BehaviorEvent], now: datetime) -> str:
    cutoff = now - _INTERACTION_WINDOW
    count = sum(1 for event in events if event.timestamp > cutoff)
    if count < 5:
        return "low"
    if count < 15:
        return "medium"
    return "high"


class PersonaService:
    def __init__(
        self,
        personas: Sequence[Persona] = PERSONAS,
        *,
        store: Optional[BehaviorStore] = None,
        clock=utcnow,
    ) -> None:
        self.personas: List[Persona] = list(personas)
        self.store = store
        self._clock = clock

    def get(self, persona_id: str) -> Optional[Persona]:
        return next((persona for persona in self.personas if persona.id == persona_id), None)

    def score(self, persona: Persona, events: Sequence[BehaviorEvent], context: PersonaContext, now: datetime) -> float:
        period = context.time_of_day or time_of_day(now)
        total = (
            session_duration_score(persona.session_range_ms, context.session_duration_ms) * SESSION_WEIGHT
            + device_score(persona.device_preference, context.device_class) * DEVICE_WEIGHT
            + feature_usage_score(persona.feature_usage, context.features_used) * FEATURE_WEIGHT
            + (1.0 if period in persona.time_of_day_pattern else 0.0) * TIME_WEIGHT
            + (1.0 if interaction_frequency(events, now) == persona.interaction_frequency else 0.5)
            * INTERACTION_WEIGHT
        )
        weight_sum = SESSION_WEIGHT + DEVICE_WEIGHT + FEATURE_WEIGHT + TIME_WEIGHT + INTERACTION_WEIGHT
        return total / weight_sum

    def identify(self, events: Sequence[BehaviorEvent], context: PersonaContext) -> PersonaMatch:
        """Return the best-scoring persona; ``casual_explorer`` when scoring fails."""

        try:
            now = self._clock()
            scores = {persona.id: self.score(persona, events, context, now) for persona in self.personas}
            best = self.personas[0]
            best_score = 0.0
            for persona in self.personas:
                if scores[persona.id] > best_score:
                    best, best_score = persona, scores[persona.id]
            return PersonaMatch(persona=best, score=best_score, scores=scores)
        except Exception:  # personalization never blocks the prompt
            logger.exception("Persona identification failed; falling back to %s.", _DEFAULT_PERSONA_ID)
            fallback = self.get(_DEFAULT_PERSONA_ID) or PERSONAS[1]
            return PersonaMatch(persona=fallback, score=0.0)

    def profile(
        self,
        fingerprint: str,
        *,
        session_duration_ms: int,
        device_class: DeviceClass,
        time_of_day: Optional[str] = None,
    ) -> VisitorProfile:
        """Classify a visitor from its stored behavior window.

        ``user_type`` is ``returning`` once the history spans more than one
        session. An unreadable store is treated as an empty history.
        """

        events: List[BehaviorEvent] = []
        if self.store is not None:
            try:
                events = self.store.get(fingerprint, now=self._clock())
            except (TransientStoreFailure, PermanentStoreFailure) as exc:
                logger.warning("Behavior history unavailable for %s: %s", fingerprint, exc)
        used = sorted({event.feature for event in events if event.feature} | {event.kind.value for event in events})
        match = self.identify(
            events,
            PersonaContext(
                session_duration_ms=session_duration_ms,
                device_class=device_class,
                features_used=tuple(used),
                time_of_day=time_of_day,
            ),
        )
        sessions = {event.session_id for event in events}
        return VisitorProfile(user_type="returning" if len(sessions) > 1 else "new", persona_id=match.persona.id)


__all__ = [
    "PERSONAS",
    "Persona",
    "PersonaContext",
    "PersonaMatch",
    "PersonaService",
    "VisitorProfile",
    "device_score",
    "feature_usage_score",
    "interaction_frequency",
    "session_duration_score",
    "time_of_day",
]
