from datetime import datetime, timedelta, timezone

import pytest

from core.trial_constants import BehaviorEventKind
from services.behavior_store import BehaviorEvent, InMemoryBehaviorStore
from services.login_timing import (
    LoginTimingEngine,
    PatternType,
    ScoringConfig,
    TimingContext,
    TriggerType,
    Urgency,
    count_back_and_forth,
    count_rapid_clicks,
    count_repeat_actions,
    default_prediction,
    frustration_score,
    identify_pattern,
    time_spent_score,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _event(kind, offset_seconds, **data):
    return BehaviorEvent(
        fingerprint="fp-timing",
        session_id="s-1",
        kind=kind,
        timestamp=NOW - timedelta(seconds=offset_seconds),
        data=data,
    )


def _engine(events):
    store = InMemoryBehaviorStore()
    for event in events:
        store.put(event)
    return LoginTimingEngine(store, config=ScoringConfig(), clock=lambda: NOW)


def _engaged_session():
    events = [_event(BehaviorEventKind.PAGE_VIEW, 480 - index * 10, page=f"/p{index}") for index in range(5)]
    events += [
        _event(BehaviorEventKind.SAVE_ATTEMPT, 290 - index * 20, feature=f"feature-{index}") for index in range(10)
    ]
    events.append(_event(BehaviorEventKind.SCROLL, 60, scroll_depth=1.0))
    return events


def _frustrated_session():
    events = [_event(BehaviorEventKind.FEATURE_CLICK, 60 - index * 0.5, feature="filter") for index in range(8)]
    events += [_event(BehaviorEventKind.PAGE_VIEW, 120 - index * 10, page=page) for index, page in enumerate("ababa")]
    events += [_event(BehaviorEventKind.IDLE_START, 30), _event(BehaviorEventKind.IDLE_START, 20)]
    return events


def test_quiet_visitor_waits_for_context():
    prediction = _engine([]).predict("fp-timing", TimingContext(session_duration_ms=0, trial_remaining=10))

    assert prediction.should_trigger is False
    assert prediction.trigger_type is TriggerType.CONTEXTUAL
    assert prediction.urgency is Urgency.LOW
    assert prediction.recommended_delay_ms == 5000
    assert prediction.confidence == pytest.approx(0.118)


def test_engaged_visitor_is_prompted_immediately():
    prediction = _engine(_engaged_session()).predict(
        "fp-timing", TimingContext(session_duration_ms=300_000, trial_remaining=4)
    )

    assert prediction.should_trigger is True
    assert prediction.trigger_type is TriggerType.IMMEDIATE
    assert prediction.recommended_delay_ms == 0
    assert prediction.factors.engagement == pytest.approx(1.0)
    assert prediction.factors.intent == pytest.approx(1.0)
    assert prediction.factors.frustration == 0.0


def test_frustrated_visitor_gets_exit_intent_prompt():
    prediction = _engine(_frustrated_session()).predict(
        "fp-timing", TimingContext(session_duration_ms=10_000, trial_remaining=10)
    )

    assert prediction.factors.frustration == pytest.approx(1.0)
    assert prediction.should_trigger is False
    assert prediction.trigger_type is TriggerType.EXIT_INTENT
    assert prediction.urgency is Urgency.LOW
    assert prediction.message == "Next time you can pick up right where you left off"


def test_nearly_exhausted_trial_overrides_score():
    prediction = _engine([]).predict("fp-timing", TimingContext(session_duration_ms=0, trial_remaining=1))

    assert prediction.should_trigger is True
    assert prediction.trigger_type is TriggerType.IMMEDIATE
    assert prediction.urgency is Urgency.HIGH
    assert prediction.recommended_delay_ms == 0


@pytest.mark.parametrize("session", [_engaged_session, _frustrated_session, list])
def test_confidence_and_factors_stay_in_unit_interval(session):
    prediction = _engine(session()).predict(
        "fp-timing", TimingContext(session_duration_ms=2_000_000, trial_remaining=3)
    )

    assert 0.0 <= prediction.confidence <= 1.0
    for value in prediction.factors.as_dict().values():
        assert 0.0 <= value <= 1.0


class _BrokenStore(InMemoryBehaviorStore):
    def get(self, fingerprint, *, now=None):
        raise RuntimeError("event store offline")


def test_prediction_falls_back_to_default_on_error():
    engine = LoginTimingEngine(_BrokenStore(), clock=lambda: NOW)

    prediction = engine.predict("fp-timing", TimingContext(session_duration_ms=0, trial_remaining=0))

    assert prediction == default_prediction()


def test_realtime_recommendation_maps_trigger_to_timing():
    engine = _engine([])

    assert engine.realtime_recommendation("fp-timing", TimingContext(0, trial_remaining=1)).timing == "now"
    assert engine.realtime_recommendation("fp-timing", TimingContext(0, trial_remaining=10)).timing == "never"


@pytest.mark.parametrize(
    "duration_ms, expected",
    [(0, 0.0), (60_000, 0.5), (300_000, 1.0), (1_200_000, 0.5), (5_000_000, 0.3)],
)
def test_time_spent_score_curve(duration_ms, expected):
    assert time_spent_score(duration_ms, ScoringConfig()) == pytest.approx(expected)


def test_frustration_signal_counters():
    events = _frustrated_session()

    assert count_rapid_clicks(events) == 7
    assert count_back_and_forth(events) == 3


def test_short_history_is_casual():
    pattern = identify_pattern(_frustrated_session()[:3])

    assert pattern.pattern_type is PatternType.CASUAL
    assert pattern.confidence == 0.5


def test_long_feature_rich_session_is_power_user():
    assert identify_pattern(_engaged_session()).pattern_type is PatternType.POWER_USER


def test_repeated_action_counts_beyond_three():
    events = [_event(BehaviorEventKind.FEATURE_CLICK, 100 - index * 2, feature="filter") for index in range(5)]
    events.append(_event(BehaviorEventKind.FEATURE_CLICK, 50, feature="sort"))

    assert count_repeat_actions(events) == 2
    assert count_repeat_actions(events[:3]) == 0


def test_repeated_action_raises_frustration():
    config = ScoringConfig()
    # two seconds apart, so none of these count as rapid clicks
    repeated = [_event(BehaviorEventKind.FEATURE_CLICK, 100 - index * 2, feature="filter") for index in range(5)]
    varied = [
        _event(BehaviorEventKind.FEATURE_CLICK, 100 - index * 2, feature=f"filter-{index}") for index in range(5)
    ]

    assert frustration_score(varied, NOW, config) == 0.0
    assert frustration_score(repeated, NOW, config) == pytest.approx(0.25 * 2 / 3)
