"""Multi-armed bandit selection of login-prompt variants."""

from __future__ import annotations

import copy
import math
import random
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from core.env import env_choice, env_float, env_int, env_str
from core.logging import get_logger
from services import metrics
from services.persona_service import time_of_day
from services.prompt_candidate_store import (
    ArmPerformance,
    InteractionKind,
    PromptCandidate,
    PromptCandidateStore,
    PromptInteraction,
)
from services.store_retry import call_with_backoff
from services.trial_errors import TransientStoreFailure
from services.trial_events import EventDispatcher, PromptShown
from services.trial_types import utcnow

logger = get_logger(__name__)

DEFAULT_EXPERIMENT = "login_prompt"
OPTIMIZATION_TARGETS = ("conversion_rate", "click_through_rate")
_SEGMENT_KEYS = ("device_class", "user_type", "persona", "time_of_day")

VARIANT_COLORS: Sequence[str] = ("#EF4444", "#8B5CF6", "#F59E0B")
# (font multiplier, padding multiplier)
VARIANT_SIZES: Sequence[tuple] = ((1.1, 1.2), (0.9, 0.8))


class UnknownCandidateError(LookupError):
    """Raised when feedback references an arm the optimizer does not know."""


@dataclass(frozen=True)
class OptimizerConfig:
    target: str = "conversion_rate"
    exploration_rate: float = 0.1
    min_sample_size: int = 50
    confidence_threshold: float = 0.8
    update_interval_seconds: float = 60.0
    variant_reward_threshold: float = 0.1
    variant_confidence_threshold: float = 0.9

    @classmethod
    def from_env(cls) -> "OptimizerConfig":
        return cls(
            target=env_choice("PROMPT_OPTIMIZER_TARGET", "conversion_rate", OPTIMIZATION_TARGETS),
            exploration_rate=env_float("PROMPT_OPTIMIZER_EXPLORATION_RATE", 0.1, minimum=0.0, maximum=1.0),
            min_sample_size=env_int("PROMPT_OPTIMIZER_MIN_SAMPLE_SIZE", 50, minimum=1),
            confidence_threshold=env_float("PROMPT_OPTIMIZER_CONFIDENCE_THRESHOLD", 0.8, minimum=0.0, maximum=1.0),
            update_interval_seconds=env_float("PROMPT_OPTIMIZER_INTERVAL_SECONDS", 60.0, minimum=1.0),
            variant_reward_threshold=env_float("PROMPT_OPTIMIZER_VARIANT_REWARD", 0.1, minimum=0.0),
            variant_confidence_threshold=env_float(
                "PROMPT_OPTIMIZER_VARIANT_CONFIDENCE", 0.9, minimum=0.0, maximum=1.0
            ),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "explorationRate": self.exploration_rate,
            "minSampleSize": self.min_sample_size,
            "confidenceThreshold": self.confidence_threshold,
            "updateIntervalSeconds": self.update_interval_seconds,
        }


@dataclass(frozen=True)
class PromptContext:
    fingerprint: Optional[str] = None
    device_class: Optional[str] = None
    user_type: Optional[str] = None
    persona: Optional[str] = None
    time_of_day: Optional[str] = None
    trial_remaining: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            key: value
            for key, value in {
                "fingerprint": self.fingerprint,
                "device_class": self.device_class,
                "user_type": self.user_type,
                "persona": self.persona,
                "time_of_day": self.time_of_day,
                "trial_remaining": self.trial_remaining,
            }.items()
            if value is not None
        }


@dataclass(frozen=True)
class BatchResult:
    applied: int
    spawned: List[str] = field(default_factory=list)


def _style(color: str, radius: int, font_size: int, font_weight: int, padding_x: int, padding_y: int) -> Dict[str, Any]:
    return {
        "button_color": color,
        "border_radius": radius,
        "font_size": font_size,
        "font_weight": font_weight,
        "padding_x": padding_x,
        "padding_y": padding_y,
    }


def default_candidates() -> List[PromptCandidate]:
    return [
        PromptCandidate(
            id="default_blue",
            name="Default blue",
            config={
                "copy": {"title": "Sign in to keep going", "button_text": "Sign in now"},
                "style": _style("#3B82F6", 8, 14, 500, 16, 8),
            },
        ),
        PromptCandidate(
            id="green_cta",
            name="Green call to action",
            config={
                "copy": {"title": "Unlock every analysis for free", "button_text": "Start free"},
                "style": _style("#10B981", 12, 16, 600, 20, 10),
            },
        ),
        PromptCandidate(
            id="orange_urgent",
            name="Orange urgency",
            config={
                "copy": {"title": "Your free trials are running out", "button_text": "Unlock now"},
                "style": _style("#F59E0B", 6, 15, 700, 18, 9),
            },
        ),
    ]


class MultiArmedBandit:
    """UCB1 with epsilon-greedy exploration and a cold-start sweep."""

    def __init__(self, candidates: Iterable[PromptCandidate], config: OptimizerConfig) -> None:
        self.config = config
        self.arms: Dict[str, PromptCandidate] = {candidate.id: candidate for candidate in candidates}
        for arm in self.arms.values():
            arm.performance.confidence = self.confidence(arm)

    def reward(self, arm: PromptCandidate) -> float:
        perf = arm.performance
        if self.config.target == "click_through_rate":
            return perf.clicks / perf.impressions if perf.impressions else 0.0
        return perf.conversions / perf.impressions if perf.impressions else 0.0

    def confidence(self, arm: PromptCandidate) -> float:
        samples = arm.performance.impressions
        if samples < self.config.min_sample_size:
            return 0.0
        return 0.95 * (1 - math.exp(-0.1 * samples / self.config.min_sample_size))

    def select(
        self,
        total_trials: Optional[int] = None,
        rng: Optional[random.Random] = None,
        *,
        arm_ids: Optional[Sequence[str]] = None,
    ) -> Optional[PromptCandidate]:
        rng = rng or random
        pool = [self.arms[arm_id] for arm_id in arm_ids if arm_id in self.arms] if arm_ids else list(self.arms.values())
        if not pool:
            return None

        for arm in pool:
            if arm.performance.impressions < self.config.min_sample_size:
                return arm

        if rng.random() < self.config.exploration_rate:
            return rng.choice(pool)

        if total_trials is None:
            total_trials = sum(arm.performance.impressions for arm in pool)
        log_total = math.log(max(total_trials, 1))
        best = pool[0]
        best_value = -math.inf
        for arm in pool:
            value = self.reward(arm) + math.sqrt(2 * log_total / arm.performance.impressions)
            if value > best_value:
                best, best_value = arm, value
        return best

    def update_performance(
        self,
        arm_id: str,
        *,
        impression: bool = False,
        click: bool = False,
        conversion: bool = False,
    ) -> PromptCandidate:
        arm = self.arms.get(arm_id)
        if arm is None:
            raise UnknownCandidateError(arm_id)
        if impression:
            arm.performance.impressions += 1
        if click:
            arm.performance.clicks += 1
        if conversion:
            arm.performance.conversions += 1
        arm.performance.confidence = self.confidence(arm)
        return arm

    def best_candidate(self) -> Optional[PromptCandidate]:
        eligible = [
            arm
            for arm in self.arms.values()
            if arm.performance.impressions >= self.config.min_sample_size
            and arm.performance.confidence >= self.config.confidence_threshold
        ]
        if not eligible:
            return None
        return max(eligible, key=self.reward)

    def add(self, candidate: PromptCandidate) -> None:
        candidate.performance.confidence = self.confidence(candidate)
        self.arms[candidate.id] = candidate

    def report(self) -> List[Dict[str, Any]]:
        rows = []
        for arm in sorted(self.arms.values(), key=self.reward, reverse=True):
            rows.append(
                {
                    "id": arm.id,
                    "name": arm.name,
                    "parentId": arm.parent_id,
                    "impressions": arm.performance.impressions,
                    "clicks": arm.performance.clicks,
                    "conversions": arm.performance.conversions,
                    "reward": round(self.reward(arm), 6),
                    "confidence": round(arm.performance.confidence, 6),
                }
            )
        return rows


def segment_matches(segment: Mapping[str, Any], context: PromptContext) -> bool:
    if not segment:
        return True
    for key in _SEGMENT_KEYS:
        expected = segment.get(key)
        if expected is None:
            continue
        if getattr(context, key) != expected:
            return False
    return True


def spawn_variants(base: PromptCandidate) -> List[PromptCandidate]:
    style = base.style
    if not style:
        return []
    variants: List[PromptCandidate] = []
    for index, color in enumerate(VARIANT_COLORS):
        config = copy.deepcopy(base.config)
        config["style"]["button_color"] = color
        variants.append(
            PromptCandidate(
                id=f"{base.id}_color_{index}",
                name=f"{base.name} (color {color})",
                config=config,
                parent_id=base.id,
            )
        )
    for index, (font_scale, padding_scale) in enumerate(VARIANT_SIZES):
        config = copy.deepcopy(base.config)
        variant_style = config["style"]
        variant_style["font_size"] = round(style.get("font_size", 14) * font_scale)
        variant_style["padding_x"] = round(style.get("padding_x", 16) * padding_scale)
        variant_style["padding_y"] = round(style.get("padding_y", 8) * padding_scale)
        variants.append(
            PromptCandidate(
                id=f"{base.id}_size_{index}",
                name=f"{base.name} (size x{font_scale})",
                config=config,
                parent_id=base.id,
            )
        )
    return variants


class PromptOptimizer:
    """Chooses login-prompt arms and folds user feedback into their counters.

    The candidate store owns the counters. Feedback is buffered in the store
    and folded into the stored counters straight away; the in-process arms
    are a cache that is bumped immediately for this worker and reloaded from
    the store on every ``run_batch_update``. The batch also folds interactions
    whose inline aggregation failed and spawns colour/size variants of a
    confidently winning arm.
    """

    def __init__(
        self,
        store: PromptCandidateStore,
        *,
        experiment: str = DEFAULT_EXPERIMENT,
        config: Optional[OptimizerConfig] = None,
        dispatcher: Optional[EventDispatcher] = None,
        rng: Optional[random.Random] = None,
        clock=utcnow,
    ) -> None:
        self.store = store
        self.experiment = experiment
        self.config = config or OptimizerConfig.from_env()
        self.dispatcher = dispatcher or EventDispatcher()
        self._rng = rng or random.Random()
        self._clock = clock
        self._lock = threading.RLock()
        self._spawned_from: set = set()
        self.last_run: Optional[datetime] = None
        self.bandit = MultiArmedBandit(self._load_candidates(), self.config)

    @classmethod
    def from_env(cls, store: PromptCandidateStore, **kwargs: Any) -> "PromptOptimizer":
        experiment = env_str("PROMPT_OPTIMIZER_EXPERIMENT", DEFAULT_EXPERIMENT) or DEFAULT_EXPERIMENT
        return cls(store, experiment=experiment, config=OptimizerConfig.from_env(), **kwargs)

    def _list_candidates(self) -> List[PromptCandidate]:
        candidates = call_with_backoff(
            lambda: self.store.list_candidates(self.experiment),
            description="prompt candidate load",
        )
        self._spawned_from = {candidate.parent_id for candidate in candidates if candidate.parent_id}
        return candidates

    def _load_candidates(self) -> List[PromptCandidate]:
        candidates = self._list_candidates()
        if not candidates:
            candidates = default_candidates()
            call_with_backoff(
                lambda: self.store.save_candidates(self.experiment, candidates),
                description="prompt candidate seed",
            )
            logger.info("Seeded %s default prompt candidates for %s.", len(candidates), self.experiment)
        return candidates

    def candidates(self) -> List[PromptCandidate]:
        with self._lock:
            return [copy.deepcopy(arm) for arm in self.bandit.arms.values()]

    def select_for(self, context: Optional[PromptContext] = None) -> Optional[PromptCandidate]:
        context = context or PromptContext()
        if context.time_of_day is None:
            context = replace(context, time_of_day=time_of_day(self._clock()))
        with self._lock:
            matching = [arm.id for arm in self.bandit.arms.values() if segment_matches(arm.segment, context)]
            if not matching:
                matching = list(self.bandit.arms)
            total = sum(self.bandit.arms[arm_id].performance.impressions for arm_id in matching)
            chosen = self.bandit.select(total, self._rng, arm_ids=matching)
            return copy.deepcopy(chosen) if chosen is not None else None

    def record_interaction(
        self,
        candidate_id: str,
        kind: InteractionKind,
        context: Optional[Mapping[str, Any]] = None,
        *,
        interaction_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PromptInteraction:
        kind = InteractionKind(kind)
        moment = now or self._clock()
        with self._lock:
            if candidate_id not in self.bandit.arms:
                raise UnknownCandidateError(candidate_id)
            fields: Dict[str, Any] = {
                "candidate_id": candidate_id,
                "kind": kind,
                "occurred_at": moment,
                "context": dict(context or {}),
            }
            if interaction_id:
                fields["id"] = interaction_id
            interaction = PromptInteraction(**fields)
            recorded = call_with_backoff(
                lambda: self.store.append_interaction(self.experiment, interaction),
                description="prompt interaction write",
            )
            if not recorded:
                logger.debug("Prompt interaction %s already recorded; ignoring replay.", interaction.id)
                return interaction
            try:
                self.store.aggregate(self.experiment, [interaction.id], at=moment)
            except TransientStoreFailure as exc:  # still pending, so the next batch folds it
                logger.warning("Could not aggregate prompt interaction %s: %s", interaction.id, exc)
            self.bandit.update_performance(
                candidate_id,
                impression=kind is InteractionKind.IMPRESSION,
                click=kind is InteractionKind.CLICK,
                conversion=kind is InteractionKind.CONVERSION,
            )

        metrics.record_prompt_interaction(self.experiment, kind.value)
        if kind is InteractionKind.IMPRESSION:
            self.dispatcher.publish(
                PromptShown(
                    (context or {}).get("fingerprint"),
                    candidate_id=candidate_id,
                    experiment=self.experiment,
                    context=dict(context or {}),
                )
            )
        return interaction

    def run_batch_update(self, now: Optional[datetime] = None) -> BatchResult:
        started = time.perf_counter()
        moment = now or self._clock()
        with self._lock:
            pending = call_with_backoff(
                lambda: self.store.pending_interactions(self.experiment, until=moment),
                description="prompt interaction sweep",
            )
            applied: List[str] = []
            if pending:
                applied = call_with_backoff(
                    lambda: self.store.aggregate(self.experiment, [interaction.id for interaction in pending], at=moment),
                    description="prompt interaction aggregate",
                )
            candidates = self._list_candidates()
            if candidates:
                self.bandit = MultiArmedBandit(candidates, self.config)
            spawned = self._maybe_spawn_variants()
            self.last_run = moment
        metrics.observe_prompt_batch(time.perf_counter() - started)
        if applied or spawned:
            logger.info(
                "Prompt batch for %s applied %s interactions, spawned %s variants.",
                self.experiment,
                len(applied),
                len(spawned),
            )
        return BatchResult(applied=len(applied), spawned=spawned)

    def _maybe_spawn_variants(self) -> List[str]:
        best = self.bandit.best_candidate()
        if best is None or best.id in self._spawned_from:
            return []
        if self.bandit.reward(best) <= self.config.variant_reward_threshold:
            return []
        if best.performance.confidence <= self.config.variant_confidence_threshold:
            return []
        variants = [variant for variant in spawn_variants(best) if variant.id not in self.bandit.arms]
        if variants:
            call_with_backoff(
                lambda: self.store.save_candidates(self.experiment, variants),
                description="prompt variant save",
            )
        for variant in variants:
            self.bandit.add(variant)
        self._spawned_from.add(best.id)
        return [variant.id for variant in variants]

    def report(self) -> Dict[str, Any]:
        with self._lock:
            best = self.bandit.best_candidate()
            return {
                "experiment": self.experiment,
                "candidates": self.bandit.report(),
                "best": best.id if best else None,
                "config": self.config.as_dict(),
                "lastRun": self.last_run.isoformat() if self.last_run else None,
            }


__all__ = [
    "ArmPerformance",
    "BatchResult",
    "DEFAULT_EXPERIMENT",
    "MultiArmedBandit",
    "OptimizerConfig",
    "PromptContext",
    "PromptOptimizer",
    "UnknownCandidateError",
    "default_candidates",
    "segment_matches",
    "spawn_variants",
]
