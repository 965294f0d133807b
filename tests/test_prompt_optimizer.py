import math
import random
from datetime import datetime, timedelta, timezone

import pytest

from services.prompt_candidate_store import (
    ArmPerformance,
    InMemoryPromptCandidateStore,
    InteractionKind,
    PromptCandidate,
    PromptInteraction,
    SqlPromptCandidateStore,
)
from services.prompt_optimizer import (
    DEFAULT_EXPERIMENT,
    MultiArmedBandit,
    OptimizerConfig,
    PromptContext,
    PromptOptimizer,
    UnknownCandidateError,
    segment_matches,
    spawn_variants,
)
from services.trial_events import PromptShown

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _optimizer(store=None, *, dispatcher=None, **config):
    settings = {"exploration_rate": 0.0, "min_sample_size": 2}
    settings.update(config)
    return PromptOptimizer(
        store if store is not None else InMemoryPromptCandidateStore(),
        config=OptimizerConfig(**settings),
        dispatcher=dispatcher,
        rng=random.Random(7),
        clock=lambda: NOW,
    )


def _arm(arm_id, impressions=0, conversions=0, clicks=0, **config):
    return PromptCandidate(
        id=arm_id,
        name=arm_id,
        config=config,
        performance=ArmPerformance(impressions=impressions, clicks=clicks, conversions=conversions),
    )


def test_optimizer_seeds_default_candidates():
    store = InMemoryPromptCandidateStore()

    optimizer = _optimizer(store)

    assert [arm.id for arm in optimizer.candidates()] == ["default_blue", "green_cta", "orange_urgent"]
    assert len(store.list_candidates(DEFAULT_EXPERIMENT)) == 3


def test_cold_start_serves_each_arm_until_min_samples():
    optimizer = _optimizer()

    assert optimizer.select_for().id == "default_blue"
    for _ in range(2):
        optimizer.record_interaction("default_blue", InteractionKind.IMPRESSION)

    assert optimizer.select_for().id == "green_cta"


def test_ucb_prefers_higher_reward_at_equal_samples():
    bandit = MultiArmedBandit(
        [_arm("low", impressions=40, conversions=2), _arm("high", impressions=40, conversions=12)],
        OptimizerConfig(exploration_rate=0.0, min_sample_size=10),
    )

    assert bandit.select(rng=random.Random(1)).id == "high"


def test_reward_is_monotonic_in_conversions():
    config = OptimizerConfig(exploration_rate=0.0, min_sample_size=10)
    rewards = []
    for conversions in range(0, 20, 4):
        bandit = MultiArmedBandit([_arm("arm", impressions=40, conversions=conversions)], config)
        rewards.append(bandit.reward(bandit.arms["arm"]))

    assert rewards == sorted(rewards)
    assert rewards[0] < rewards[-1]


def test_click_through_target_rewards_clicks():
    bandit = MultiArmedBandit(
        [_arm("arm", impressions=10, clicks=4, conversions=1)],
        OptimizerConfig(target="click_through_rate"),
    )

    assert bandit.reward(bandit.arms["arm"]) == pytest.approx(0.4)


def test_confidence_grows_with_samples():
    bandit = MultiArmedBandit([_arm("few", impressions=5), _arm("many", impressions=500)], OptimizerConfig())

    assert bandit.arms["few"].performance.confidence == 0.0
    assert bandit.arms["many"].performance.confidence == pytest.approx(0.95 * (1 - math.exp(-1)))


def test_unknown_arm_feedback_is_rejected():
    optimizer = _optimizer()

    with pytest.raises(UnknownCandidateError):
        optimizer.record_interaction("ghost", InteractionKind.CLICK)


def test_impression_publishes_prompt_shown(dispatcher, recorder):
    optimizer = _optimizer(dispatcher=dispatcher)

    optimizer.record_interaction("green_cta", InteractionKind.IMPRESSION, {"fingerprint": "fp-1"})
    optimizer.record_interaction("green_cta", InteractionKind.CLICK, {"fingerprint": "fp-1"})

    shown = recorder.of_type(PromptShown)
    assert [(event.fingerprint, event.candidate_id) for event in shown] == [("fp-1", "green_cta")]


def test_segment_matching_and_fallback():
    mobile_only = {"segment": {"device_class": "mobile"}}
    store = InMemoryPromptCandidateStore()
    store.save_candidates(DEFAULT_EXPERIMENT, [_arm("mobile_card", **mobile_only)])
    optimizer = _optimizer(store)

    assert segment_matches(mobile_only["segment"], PromptContext(device_class="mobile")) is True
    assert segment_matches(mobile_only["segment"], PromptContext(device_class="desktop")) is False
    assert segment_matches({}, PromptContext()) is True
    assert optimizer.select_for(PromptContext(device_class="desktop")).id == "mobile_card"


def test_segmented_arm_is_only_offered_to_its_segment():
    store = InMemoryPromptCandidateStore()
    store.save_candidates(
        DEFAULT_EXPERIMENT,
        [
            _arm("evening_card", segment={"time_of_day": "evening"}),
            _arm("general", impressions=5),
        ],
    )
    optimizer = _optimizer(store)

    # the clock sits at noon, so the evening arm is filtered out
    assert optimizer.select_for(PromptContext(device_class="desktop")).id == "general"
    assert optimizer.select_for(PromptContext(time_of_day="evening")).id == "evening_card"


def test_batch_update_is_idempotent_over_buffered_interactions():
    store = InMemoryPromptCandidateStore()
    optimizer = _optimizer(store)
    for index in range(3):
        store.append_interaction(
            DEFAULT_EXPERIMENT,
            PromptInteraction(
                candidate_id="orange_urgent",
                kind=InteractionKind.IMPRESSION,
                occurred_at=NOW - timedelta(seconds=30 - index),
            ),
        )

    first = optimizer.run_batch_update(now=NOW)
    second = optimizer.run_batch_update(now=NOW + timedelta(minutes=1))

    assert first.applied == 3
    assert second.applied == 0
    arm = next(arm for arm in optimizer.candidates() if arm.id == "orange_urgent")
    assert arm.performance.impressions == 3
    assert optimizer.last_run == NOW + timedelta(minutes=1)


def test_batch_skips_interactions_applied_inline():
    optimizer = _optimizer()
    interaction = optimizer.record_interaction(
        "default_blue", InteractionKind.IMPRESSION, now=NOW - timedelta(seconds=5)
    )

    result = optimizer.run_batch_update(now=NOW)
    replay = optimizer.record_interaction(
        "default_blue", InteractionKind.IMPRESSION, interaction_id=interaction.id
    )

    assert result.applied == 0
    assert replay.id == interaction.id
    arm = next(arm for arm in optimizer.candidates() if arm.id == "default_blue")
    assert arm.performance.impressions == 1


def test_confident_winner_spawns_variants_once():
    optimizer = _optimizer(min_sample_size=1)
    for _ in range(30):
        optimizer.record_interaction("green_cta", InteractionKind.IMPRESSION)
    for _ in range(10):
        optimizer.record_interaction("green_cta", InteractionKind.CONVERSION)

    first = optimizer.run_batch_update(now=NOW + timedelta(seconds=1))
    second = optimizer.run_batch_update(now=NOW + timedelta(seconds=2))

    assert sorted(first.spawned) == [
        "green_cta_color_0",
        "green_cta_color_1",
        "green_cta_color_2",
        "green_cta_size_0",
        "green_cta_size_1",
    ]
    assert second.spawned == []
    report = optimizer.report()
    assert report["best"] == "green_cta"
    assert {row["parentId"] for row in report["candidates"] if row["id"].startswith("green_cta_")} == {"green_cta"}


def test_spawned_variants_adjust_style_only():
    base = PromptCandidate(
        id="base",
        name="Base",
        config={"copy": {"title": "Hi"}, "style": {"button_color": "#000000", "font_size": 10, "padding_x": 10, "padding_y": 10}},
    )

    variants = {variant.id: variant for variant in spawn_variants(base)}

    assert variants["base_color_1"].config["style"]["button_color"] == "#8B5CF6"
    assert variants["base_size_0"].config["style"]["font_size"] == 11
    assert variants["base_size_1"].config["style"]["padding_x"] == 8
    assert all(variant.config["copy"] == {"title": "Hi"} for variant in variants.values())
    assert base.config["style"]["button_color"] == "#000000"


def test_sql_store_persists_arms_and_interaction_buffer(session_factory):
    store = SqlPromptCandidateStore(session_factory)
    optimizer = _optimizer(store)
    optimizer.record_interaction("default_blue", InteractionKind.IMPRESSION, now=NOW - timedelta(seconds=10))
    store.append_interaction(
        DEFAULT_EXPERIMENT,
        PromptInteraction(
            candidate_id="default_blue", kind=InteractionKind.CLICK, occurred_at=NOW - timedelta(seconds=5)
        ),
    )

    result = optimizer.run_batch_update(now=NOW)

    assert result.applied == 1
    assert store.pending_interactions(DEFAULT_EXPERIMENT, until=NOW + timedelta(minutes=1)) == []
    persisted = {arm.id: arm for arm in store.list_candidates(DEFAULT_EXPERIMENT)}
    assert persisted["default_blue"].performance.impressions == 1
    assert persisted["default_blue"].performance.clicks == 1

    reloaded = _optimizer(store)
    assert next(arm for arm in reloaded.candidates() if arm.id == "default_blue").performance.clicks == 1


def test_sql_store_save_keeps_stored_counters(session_factory):
    store = SqlPromptCandidateStore(session_factory)
    store.save_candidates(DEFAULT_EXPERIMENT, [_arm("arm", impressions=10, conversions=3)])

    store.save_candidates(DEFAULT_EXPERIMENT, [_arm("arm", impressions=4, conversions=1)])

    arm = store.list_candidates(DEFAULT_EXPERIMENT)[0]
    assert (arm.performance.impressions, arm.performance.conversions) == (10, 3)


def test_workers_sharing_sql_store_add_up_counts(session_factory):
    store = SqlPromptCandidateStore(session_factory)
    worker_a = _optimizer(store)
    worker_b = _optimizer(store)

    for _ in range(10):
        worker_a.record_interaction("default_blue", InteractionKind.IMPRESSION, now=NOW - timedelta(seconds=20))
    for _ in range(5):
        worker_b.record_interaction("default_blue", InteractionKind.IMPRESSION, now=NOW - timedelta(seconds=10))
    worker_a.run_batch_update(now=NOW)
    worker_b.run_batch_update(now=NOW)

    persisted = {arm.id: arm for arm in store.list_candidates(DEFAULT_EXPERIMENT)}
    assert persisted["default_blue"].performance.impressions == 15
    for worker in (worker_a, worker_b):
        arm = next(arm for arm in worker.candidates() if arm.id == "default_blue")
        assert arm.performance.impressions == 15


def test_batch_folds_interactions_another_worker_could_not_aggregate(session_factory):
    store = SqlPromptCandidateStore(session_factory)
    worker_a = _optimizer(store)
    worker_b = _optimizer(store)
    store.append_interaction(
        DEFAULT_EXPERIMENT,
        PromptInteraction(
            candidate_id="green_cta", kind=InteractionKind.CONVERSION, occurred_at=NOW - timedelta(seconds=5)
        ),
    )

    first = worker_a.run_batch_update(now=NOW)
    second = worker_b.run_batch_update(now=NOW)

    assert (first.applied, second.applied) == (1, 0)
    arm = next(arm for arm in worker_b.candidates() if arm.id == "green_cta")
    assert arm.performance.conversions == 1


def test_replayed_interaction_is_ignored_after_batches():
    store = InMemoryPromptCandidateStore()
    optimizer = _optimizer(store)
    first = optimizer.record_interaction("orange_urgent", InteractionKind.CLICK, now=NOW - timedelta(seconds=5))
    optimizer.run_batch_update(now=NOW)
    optimizer.run_batch_update(now=NOW + timedelta(minutes=1))

    optimizer.record_interaction("orange_urgent", InteractionKind.CLICK, interaction_id=first.id)
    optimizer.run_batch_update(now=NOW + timedelta(minutes=2))

    arm = next(arm for arm in optimizer.candidates() if arm.id == "orange_urgent")
    assert arm.performance.clicks == 1


def test_in_memory_aggregate_folds_each_interaction_once():
    store = InMemoryPromptCandidateStore()
    store.save_candidates(DEFAULT_EXPERIMENT, [_arm("arm")])
    interaction = PromptInteraction(candidate_id="arm", kind=InteractionKind.IMPRESSION, occurred_at=NOW)
    assert store.append_interaction(DEFAULT_EXPERIMENT, interaction) is True
    assert store.append_interaction(DEFAULT_EXPERIMENT, interaction) is False

    assert store.aggregate(DEFAULT_EXPERIMENT, [interaction.id], at=NOW) == [interaction.id]
    assert store.aggregate(DEFAULT_EXPERIMENT, [interaction.id], at=NOW) == []
    assert store.list_candidates(DEFAULT_EXPERIMENT)[0].performance.impressions == 1


def test_persona_segment_targets_matching_visitors():
    store = InMemoryPromptCandidateStore()
    store.save_candidates(
        DEFAULT_EXPERIMENT,
        [
            _arm("power_card", segment={"persona": "power_user"}),
            _arm("general", impressions=5),
        ],
    )
    optimizer = _optimizer(store)

    assert optimizer.select_for(PromptContext(persona="power_user")).id == "power_card"
    assert optimizer.select_for(PromptContext(persona="mobile_first")).id == "general"
