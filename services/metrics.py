"""Prometheus collectors for trial consumption, sync and prompt experiments."""

from __future__ import annotations

from typing import Optional

from core.logging import get_logger
from services.prometheus_helpers import build_counter, build_gauge, build_histogram

logger = get_logger(__name__)

_TRIAL_CONSUME_COUNTER = build_counter(
    "trial_consume_total",
    "Trial consumption attempts grouped by action and outcome.",
    ("action", "result"),
)
_TRIAL_RATE_LIMIT_COUNTER = build_counter(
    "trial_rate_limit_total",
    "Trial rate limiter invocations.",
    ("backend", "result"),
)
_TRIAL_RATE_LIMIT_REMAINING_GAUGE = build_gauge(
    "trial_rate_limit_remaining",
    "Latest remaining hourly allowance reported by the trial rate limiter.",
    ("backend",),
)
_TRIAL_STORE_FAILURE_COUNTER = build_counter(
    "trial_store_failures_total",
    "Ledger store calls that failed after all retries.",
    ("operation",),
)
_TRIAL_SYNC_FAILURE_COUNTER = build_counter(
    "trial_sync_failures_total",
    "Client-side trial reconciliation attempts that exhausted retries.",
)
_BEHAVIOR_INGEST_COUNTER = build_counter(
    "behavior_ingest_total",
    "Behavioral events processed by the ingestion pool.",
    ("result",),
)
_BEHAVIOR_DEGRADED_GAUGE = build_gauge(
    "behavior_tracking_degraded",
    "1 when behavioral ingestion is in the degraded state.",
)
_PROMPT_INTERACTION_COUNTER = build_counter(
    "prompt_interactions_total",
    "Login prompt impressions, clicks and conversions.",
    ("experiment", "interaction"),
)
_PROMPT_BATCH_DURATION = build_histogram(
    "prompt_optimizer_batch_seconds",
    "Duration of prompt optimizer batch updates.",
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
)


def record_trial_consume(action: str, result: str) -> None:
    if _TRIAL_CONSUME_COUNTER is None:
        return
    _TRIAL_CONSUME_COUNTER.labels(action=action, result=result).inc()


def record_rate_limit(backend: str, allowed: bool) -> None:
    """Increment the rate limit counter for ``backend``."""

    if _TRIAL_RATE_LIMIT_COUNTER is None:
        return
    result = "allowed" if allowed else "blocked"
    _TRIAL_RATE_LIMIT_COUNTER.labels(backend=backend, result=result).inc()


def record_rate_limit_remaining(backend: str, remaining: Optional[int]) -> None:
    """Update the remaining gauge if available."""

    if _TRIAL_RATE_LIMIT_REMAINING_GAUGE is None or remaining is None:
        return
    try:
        _TRIAL_RATE_LIMIT_REMAINING_GAUGE.labels(backend=backend).set(float(remaining))
    except ValueError:
        logger.debug("Failed to set remaining gauge for backend=%s value=%s", backend, remaining)


def record_store_failure(operation: str) -> None:
    if _TRIAL_STORE_FAILURE_COUNTER is None:
        return
    _TRIAL_STORE_FAILURE_COUNTER.labels(operation=operation).inc()


def record_sync_failure() -> None:
    if _TRIAL_SYNC_FAILURE_COUNTER is None:
        return
    _TRIAL_SYNC_FAILURE_COUNTER.inc()


def record_behavior_ingest(success: bool) -> None:
    if _BEHAVIOR_INGEST_COUNTER is None:
        return
    _BEHAVIOR_INGEST_COUNTER.labels(result="success" if success else "failure").inc()


def set_behavior_degraded(degraded: bool) -> None:
    if _BEHAVIOR_DEGRADED_GAUGE is None:
        return
    _BEHAVIOR_DEGRADED_GAUGE.set(1.0 if degraded else 0.0)


def record_prompt_interaction(experiment: str, interaction: str) -> None:
    if _PROMPT_INTERACTION_COUNTER is None:
        return
    _PROMPT_INTERACTION_COUNTER.labels(experiment=experiment, interaction=interaction).inc()


def observe_prompt_batch(duration_seconds: float) -> None:
    if _PROMPT_BATCH_DURATION is None:
        return
    _PROMPT_BATCH_DURATION.observe(max(duration_seconds, 0.0))


__all__ = [
    "observe_prompt_batch",
    "record_behavior_ingest",
    "record_prompt_interaction",
    "record_rate_limit",
    "record_rate_limit_remaining",
    "record_store_failure",
    "record_sync_failure",
    "record_trial_consume",
    "set_behavior_degraded",
]
