"""Runtime trial settings resolved from the environment."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Mapping, Optional

from core.env import env_float, env_int
from core.trial_constants import ACTION_WEIGHTS, ActionKind
from services.trial_errors import TrialValidationError


@dataclass(frozen=True)
class TrialSettings:
    default_trial_count: int = 5
    max_trial_count: int = 10
    reset_hours: int = 24
    blocked_duration_hours: int = 24
    max_actions_per_hour: int = 20
    store_retries: int = 3
    store_retry_delay: float = 0.2
    cas_retries: int = 5

    @classmethod
    def from_env(cls) -> "TrialSettings":
        default_count = env_int("TRIAL_DEFAULT_COUNT", 5, minimum=1)
        max_count = max(env_int("TRIAL_MAX_COUNT", 10, minimum=1), default_count)
        return cls(
            default_trial_count=default_count,
            max_trial_count=max_count,
            reset_hours=env_int("TRIAL_RESET_HOURS", 24, minimum=1),
            blocked_duration_hours=env_int("TRIAL_BLOCKED_DURATION_HOURS", 24, minimum=1),
            max_actions_per_hour=env_int("TRIAL_MAX_ACTIONS_PER_HOUR", 20, minimum=1),
            store_retries=env_int("TRIAL_STORE_RETRIES", 3, minimum=1),
            store_retry_delay=env_float("TRIAL_STORE_RETRY_DELAY", 0.2, minimum=0.0),
            cas_retries=env_int("TRIAL_CAS_RETRIES", 5, minimum=1),
        )


@lru_cache(maxsize=1)
def get_trial_settings() -> TrialSettings:
    return TrialSettings.from_env()


def clear_trial_settings_cache() -> None:
    get_trial_settings.cache_clear()


def parse_action_kind(value: Optional[str]) -> ActionKind:
    """Map a wire value onto :class:`ActionKind`; unknown values are rejected."""
    text = (value or "").strip().lower()
    try:
        return ActionKind(text)
    except ValueError as exc:
        raise TrialValidationError("invalid action type", code="trial.invalid_action") from exc


def weight_of(kind: ActionKind, weights: Optional[Mapping[ActionKind, int]] = None) -> int:
    table = weights or ACTION_WEIGHTS
    try:
        return table[kind]
    except KeyError as exc:
        raise TrialValidationError("invalid action type", code="trial.invalid_action") from exc


__all__ = [
    "TrialSettings",
    "clear_trial_settings_cache",
    "get_trial_settings",
    "parse_action_kind",
    "weight_of",
]
