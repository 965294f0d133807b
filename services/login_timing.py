"""Behavioral scoring that predicts when to prompt a visitor to sign in.

Five factor scores in ``[0, 1]`` are computed over recent sub-windows of the
visitor's event history and blended into a composite score that drives the
trigger decision. Every coefficient lives in :class:`ScoringConfig` so the
model can be recalibrated without code changes.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence

from core.env import env_float, env_int
from core.logging import get_logger
from core.trial_constants import BehaviorEventKind, DeviceClass
from services.behavior_store import BehaviorEvent, BehaviorStore
from services.trial_types import utcnow

logger = get_logger(__name__)

_INTERACTION_KINDS = {
    BehaviorEventKind.FEATURE_CLICK,
    BehaviorEventKind.SEARCH,
    BehaviorEventKind.EXPORT_ATTEMPT,
    BehaviorEventKind.SAVE_ATTEMPT,
}
_HIGH_INTENT_KINDS = {
    BehaviorEventKind.SAVE_ATTEMPT,
    BehaviorEventKind.EXPORT_ATTEMPT,
    BehaviorEventKind.SHARE_ATTEMPT,
}
_MEDIUM_INTENT_KINDS = {BehaviorEventKind.SEARCH, BehaviorEventKind.FEATURE_CLICK}
_DEEP_KINDS = {
    BehaviorEventKind.SAVE_ATTEMPT,
    BehaviorEventKind.EXPORT_ATTEMPT,
    BehaviorEventKind.SEARCH,
    BehaviorEventKind.SHARE_ATTEMPT,
}
_SHALLOW_KINDS = {BehaviorEventKind.FEATURE_CLICK, BehaviorEventKind.PAGE_VIEW, BehaviorEventKind.SCROLL}


class TriggerType(str, Enum):
    IMMEDIATE = "immediate"
    DELAYED = "delayed"
    CONTEXTUAL = "contextual"
    EXIT_INTENT = "exit_intent"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PatternType(str, Enum):
    POWER_USER = "power_user"
    GOAL_ORIENTED = "goal_oriented"
    EXPLORER = "explorer"
    CASUAL = "casual"


TRIGGER_MESSAGES: Mapping[TriggerType, Mapping[Urgency, str]] = {
    TriggerType.IMMEDIATE: {
        Urgency.HIGH: "Sign in now to unlock every feature!",
        Urgency.MEDIUM: "Sign in to save your progress",
        Urgency.LOW: "Consider signing in for a better experience",
    },
    TriggerType.DELAYED: {
        Urgency.HIGH: "More features are about to unlock for you",
        Urgency.MEDIUM: "Sign in to save and manage your analyses",
        Urgency.LOW: "Signing in gives you more handy features",
    },
    TriggerType.CONTEXTUAL: {
        Urgency.HIGH: "Saving this analysis requires signing in",
        Urgency.MEDIUM: "Sign in to access advanced features",
        Urgency.LOW: "Sign in to enjoy the full service",
    },
    TriggerType.EXIT_INTENT: {
        Urgency.HIGH: "Wait! Sign in to keep your work",
        Urgency.MEDIUM: "Consider saving your progress before you leave",
        Urgency.LOW: "Next time you can pick up right where you left off",
    },
}


@dataclass(frozen=True)
class ScoringWeights:
    engagement: float = 0.25
    intent: float = 0.30
    frustration: float = 0.15
    time_spent: float = 0.20
    action_pattern: float = 0.25

    @classmethod
    def from_env(cls) -> "ScoringWeights":
        return cls(
            engagement=env_float("TIMING_WEIGHT_ENGAGEMENT", 0.25, minimum=0.0, maximum=1.0),
            intent=env_float("TIMING_WEIGHT_INTENT", 0.30, minimum=0.0, maximum=1.0),
            frustration=env_float("TIMING_WEIGHT_FRUSTRATION", 0.15, minimum=0.0, maximum=1.0),
            time_spent=env_float("TIMING_WEIGHT_TIME_SPENT", 0.20, minimum=0.0, maximum=1.0),
            action_pattern=env_float("TIMING_WEIGHT_ACTION_PATTERN", 0.25, minimum=0.0, maximum=1.0),
        )


@dataclass(frozen=True)
class ScoringConfig:
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    engagement_window: timedelta = timedelta(minutes=30)
    intent_window: timedelta = timedelta(minutes=10)
    frustration_window: timedelta = timedelta(minutes=5)
    page_cap: int = 5
    interaction_cap: int = 10
    session_cap_ms: int = 300_000
    high_intent_weight: float = 0.8
    medium_intent_weight: float = 0.3
    intent_cap: int = 5
    urgency_blend: float = 0.3
    rapid_click_ms: int = 1000
    immediate_threshold: float = 0.8
    delayed_threshold: float = 0.6
    frustration_threshold: float = 0.7
    delayed_delay_ms: int = 2000
    contextual_delay_ms: int = 5000
    optimal_min_ms: int = 120_000
    optimal_max_ms: int = 600_000
    decay_span_ms: int = 1_200_000
    time_spent_floor: float = 0.3
    override_remaining: int = 1
    pattern_scores: Mapping[PatternType, float] = field(
        default_factory=lambda: {
            PatternType.GOAL_ORIENTED: 0.9,
            PatternType.POWER_USER: 0.8,
            PatternType.EXPLORER: 0.6,
            PatternType.CASUAL: 0.4,
        }
    )

    @classmethod
    def from_env(cls) -> "ScoringConfig":
        return cls(
            weights=ScoringWeights.from_env(),
            immediate_threshold=env_float("TIMING_IMMEDIATE_THRESHOLD", 0.8, minimum=0.0, maximum=1.0),
            delayed_threshold=env_float("TIMING_DELAYED_THRESHOLD", 0.6, minimum=0.0, maximum=1.0),
            frustration_threshold=env_float("TIMING_FRUSTRATION_THRESHOLD", 0.7, minimum=0.0, maximum=1.0),
            delayed_delay_ms=env_int("TIMING_DELAYED_DELAY_MS", 2000, minimum=0),
            contextual_delay_ms=env_int("TIMING_CONTEXTUAL_DELAY_MS", 5000, minimum=0),
            override_remaining=env_int("TIMING_OVERRIDE_REMAINING", 1, minimum=0),
        )


@dataclass(frozen=True)
class TimingContext:
    session_duration_ms: int
    trial_remaining: int
    device_class: Optional[DeviceClass] = None
    current_page: Optional[str] = None


@dataclass(frozen=True)
class TimingFactors:
    engagement: float
    intent: float
    frustration: float
    time_spent: float
    action_pattern: float

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class TimingPrediction:
    should_trigger: bool
    confidence: float
    recommended_delay_ms: int
    trigger_type: TriggerType
    urgency: Urgency
    message: str
    reason: str
    factors: TimingFactors


@dataclass(frozen=True)
class BehaviorPattern:
    pattern_type: PatternType
    confidence: float
    average_session_ms: float = 0.0
    features_used: Sequence[str] = ()
    interaction_depth: float = 0.0


@dataclass(frozen=True)
class RealtimeRecommendation:
    should_show: bool
    timing: str
    confidence: float
    message: str


def _within(events: Sequence[BehaviorEvent], now: datetime, window: timedelta) -> List[BehaviorEvent]:
    cutoff = now - window
    return [event for event in events if event.timestamp > cutoff]


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def engagement_score(
    events: Sequence[BehaviorEvent], context: TimingContext, now: datetime, config: ScoringConfig
) -> float:
    recent = _within(events, now, config.engagement_window)
    if not recent:
        return 0.0
    pages = {event.page for event in recent if event.page}
    interactions = sum(1 for event in recent if event.kind in _INTERACTION_KINDS)
    depths = [
        float(event.data.get("scroll_depth") or event.data.get("scrollDepth") or 0.0)
        for event in recent
        if event.kind is BehaviorEventKind.SCROLL
    ]
    page_score = min(len(pages) / config.page_cap, 1.0)
    interaction_score = min(interactions / config.interaction_cap, 1.0)
    scroll_score = _clamp(max(depths, default=0.0))
    time_score = min(max(context.session_duration_ms, 0) / config.session_cap_ms, 1.0)
    return _clamp(page_score * 0.25 + interaction_score * 0.35 + scroll_score * 0.2 + time_score * 0.2)


def trial_urgency(trial_remaining: int) -> float:
    if trial_remaining <= 2:
        return 0.8
    if trial_remaining <= 5:
        return 0.5
    return 0.2


def intent_score(
    events: Sequence[BehaviorEvent], context: TimingContext, now: datetime, config: ScoringConfig
) -> float:
    recent = _within(events, now, config.intent_window)
    high = sum(1 for event in recent if event.kind in _HIGH_INTENT_KINDS)
    medium = sum(1 for event in recent if event.kind in _MEDIUM_INTENT_KINDS)
    action_score = min((high * config.high_intent_weight + medium * config.medium_intent_weight) / config.intent_cap, 1.0)
    return min(action_score + trial_urgency(context.trial_remaining) * config.urgency_blend, 1.0)


def count_rapid_clicks(events: Sequence[BehaviorEvent], threshold_ms: int = 1000) -> int:
    clicks = sorted(
        (event.timestamp for event in events if event.kind is BehaviorEventKind.FEATURE_CLICK),
    )
    limit = timedelta(milliseconds=threshold_ms)
    return sum(1 for earlier, later in zip(clicks, clicks[1:]) if later - earlier < limit)


def count_back_and_forth(events: Sequence[BehaviorEvent]) -> int:
    pages = [event.page for event in events if event.kind is BehaviorEventKind.PAGE_VIEW]
    return sum(
        1 for index in range(2, len(pages)) if pages[index] == pages[index - 2] and pages[index] != pages[index - 1]
    )


def count_repeat_actions(events: Sequence[BehaviorEvent]) -> int:
    counts = Counter(f"{event.kind.value}:{event.feature or event.page}" for event in events)
    return sum(count - 3 for count in counts.values() if count > 3)


def frustration_score(events: Sequence[BehaviorEvent], now: datetime, config: ScoringConfig) -> float:
    recent = _within(events, now, config.frustration_window)
    rapid = count_rapid_clicks(recent, config.rapid_click_ms)
    navigation = count_back_and_forth(recent)
    idle = sum(1 for event in recent if event.kind is BehaviorEventKind.IDLE_START)
    repeats = count_repeat_actions(recent)
    return _clamp(
        min(rapid / 5, 1.0) * 0.3
        + min(navigation / 3, 1.0) * 0.25
        + min(idle / 2, 1.0) * 0.2
        + min(repeats / 3, 1.0) * 0.25
    )


def time_spent_score(session_duration_ms: int, config: ScoringConfig) -> float:
    duration = max(session_duration_ms, 0)
    if duration < config.optimal_min_ms:
        return duration / config.optimal_min_ms
    if duration <= config.optimal_max_ms:
        return 1.0
    excess = duration - config.optimal_max_ms
    return max(1.0 - excess / config.decay_span_ms, config.time_spent_floor)


def average_session_ms(events: Sequence[BehaviorEvent]) -> float:
    bounds: Dict[str, List[datetime]] = {}
    for event in events:
        span = bounds.setdefault(event.session_id, [event.timestamp, event.timestamp])
        span[0] = min(span[0], event.timestamp)
        span[1] = max(span[1], event.timestamp)
    if not bounds:
        return 0.0
    durations = [(end - start).total_seconds() * 1000 for start, end in bounds.values()]
    return sum(durations) / len(durations)


def interaction_depth(events: Sequence[BehaviorEvent]) -> float:
    deep = sum(1 for event in events if event.kind in _DEEP_KINDS)
    shallow = sum(1 for event in events if event.kind in _SHALLOW_KINDS)
    return deep / shallow if shallow else 0.0


def identify_pattern(events: Sequence[BehaviorEvent]) -> BehaviorPattern:
    if len(events) < 5:
        return BehaviorPattern(pattern_type=PatternType.CASUAL, confidence=0.5)

    features = sorted({event.feature for event in events if event.feature})
    pages = {event.page for event in events if event.page}
    avg_session = average_session_ms(events)
    usage_ratio = len(features) / max(len(events), 1)
    depth = interaction_depth(events)

    if usage_ratio > 0.3 and avg_session > 300_000:
        pattern, confidence = PatternType.POWER_USER, 0.8
    elif len(pages) > 5 and depth > 0.6:
        pattern, confidence = PatternType.EXPLORER, 0.7
    elif usage_ratio > 0.2 and avg_session > 120_000:
        pattern, confidence = PatternType.GOAL_ORIENTED, 0.8
    else:
        pattern, confidence = PatternType.CASUAL, 0.6
    return BehaviorPattern(
        pattern_type=pattern,
        confidence=confidence,
        average_session_ms=avg_session,
        features_used=tuple(features),
        interaction_depth=depth,
    )


def composite_score(factors: TimingFactors, weights: ScoringWeights) -> float:
    return _clamp(
        factors.engagement * weights.engagement
        + factors.intent * weights.intent
        - factors.frustration * weights.frustration
        + factors.time_spent * weights.time_spent
        + factors.action_pattern * weights.action_pattern
    )


def default_prediction() -> TimingPrediction:
    return TimingPrediction(
        should_trigger=False,
        confidence=0.5,
        recommended_delay_ms=5000,
        trigger_type=TriggerType.DELAYED,
        urgency=Urgency.MEDIUM,
        message="Sign in for a better experience",
        reason="default strategy",
        factors=TimingFactors(engagement=0.5, intent=0.5, frustration=0.3, time_spent=0.5, action_pattern=0.5),
    )


class LoginTimingEngine:
    def __init__(
        self,
        store: BehaviorStore,
        *,
        config: Optional[ScoringConfig] = None,
        clock=utcnow,
    ) -> None:
        self.store = store
        self.config = config or ScoringConfig()
        self._clock = clock

    def score_factors(self, events: Sequence[BehaviorEvent], context: TimingContext, now: datetime) -> TimingFactors:
        pattern = identify_pattern(events)
        return TimingFactors(
            engagement=engagement_score(events, context, now, self.config),
            intent=intent_score(events, context, now, self.config),
            frustration=frustration_score(events, now, self.config),
            time_spent=time_spent_score(context.session_duration_ms, self.config),
            action_pattern=self.config.pattern_scores.get(pattern.pattern_type, 0.5),
        )

    def decide(self, factors: TimingFactors, context: TimingContext) -> TimingPrediction:
        config = self.config
        score = composite_score(factors, config.weights)
        should_trigger = score > config.delayed_threshold

        if score > config.immediate_threshold:
            trigger, urgency, delay = TriggerType.IMMEDIATE, Urgency.HIGH, 0
            reason = "strong usage intent; prompt immediately"
        elif score > config.delayed_threshold:
            trigger, urgency, delay = TriggerType.DELAYED, Urgency.MEDIUM, config.delayed_delay_ms
            reason = "high engagement; prompt after a short delay"
        elif factors.frustration > config.frustration_threshold:
            trigger, urgency, delay = TriggerType.EXIT_INTENT, Urgency.LOW, 0
            reason = "frustration detected; prompt on exit intent"
        else:
            trigger, urgency, delay = TriggerType.CONTEXTUAL, Urgency.LOW, config.contextual_delay_ms
            reason = "waiting for a better contextual moment"

        if context.trial_remaining <= config.override_remaining:
            trigger, urgency, delay = TriggerType.IMMEDIATE, Urgency.HIGH, 0
            should_trigger = True
            reason = "trial nearly exhausted; prompt immediately"

        return TimingPrediction(
            should_trigger=should_trigger,
            confidence=score,
            recommended_delay_ms=delay,
            trigger_type=trigger,
            urgency=urgency,
            message=TRIGGER_MESSAGES[trigger][urgency],
            reason=reason,
            factors=factors,
        )

    def predict(self, fingerprint: str, context: TimingContext) -> TimingPrediction:
        try:
            now = self._clock()
            events = self.store.get(fingerprint, now=now)
            return self.decide(self.score_factors(events, context, now), context)
        except Exception:  # scoring must never block the user action
            logger.exception("Login timing prediction failed for %s; using default.", fingerprint)
            return default_prediction()

    def realtime_recommendation(self, fingerprint: str, context: TimingContext) -> RealtimeRecommendation:
        prediction = self.predict(fingerprint, context)
        if not prediction.should_trigger:
            timing = "never"
        elif prediction.trigger_type is TriggerType.IMMEDIATE:
            timing = "now"
        elif prediction.recommended_delay_ms < 5000:
            timing = "soon"
        else:
            timing = "later"
        return RealtimeRecommendation(
            should_show=prediction.should_trigger,
            timing=timing,
            confidence=prediction.confidence,
            message=prediction.message,
        )


__all__ = [
    "BehaviorPattern",
    "LoginTimingEngine",
    "PatternType",
    "RealtimeRecommendation",
    "ScoringConfig",
    "ScoringWeights",
    "TRIGGER_MESSAGES",
    "TimingContext",
    "TimingFactors",
    "TimingPrediction",
    "TriggerType",
    "Urgency",
    "composite_score",
    "count_back_and_forth",
    "count_rapid_clicks",
    "count_repeat_actions",
    "default_prediction",
    "engagement_score",
    "frustration_score",
    "identify_pattern",
    "intent_score",
    "time_spent_score",
    "trial_urgency",
]
