"""Trial quota engine: the only component that mutates trial ledgers."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, TypeVar, Union

from core.logging import get_logger
from core.trial_constants import ActionKind, TRIAL_RECENT_ACTIONS
from services import metrics
from services.login_analytics import LoginAnalyticsRecorder, LoginEventType
from services.store_retry import call_with_backoff
from services.trial_config import TrialSettings, get_trial_settings, parse_action_kind, weight_of
from services.trial_errors import (
    LedgerVersionConflict,
    PermanentStoreFailure,
    QuotaExhausted,
    RateLimited,
    TrialBlocked,
    TrialValidationError,
)
from services.trial_events import (
    EventDispatcher,
    TrialBlockedEvent,
    TrialConsumed,
    TrialExhausted,
    TrialRateLimited,
    TrialReset,
    TrialUnblocked,
)
from services.trial_ledger_store import LedgerStore
from services.trial_rate_limiter import TrialRateLimiter
from services.trial_types import (
    ConsumeResult,
    TrialAction,
    TrialLedger,
    TrialStats,
    TrialStatus,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")
DEFAULT_LOCK_STRIPES = 256

MESSAGE_CONSUMED = "trial consumed"
MESSAGE_BLOCKED = "trial access blocked; please sign in to continue"
MESSAGE_EXHAUSTED = "insufficient trials remaining"
MESSAGE_RATE_LIMITED = "too many requests; please try again later"
MESSAGE_MISSING_PARAMETER = "missing required parameter"


def _require_fingerprint(fingerprint: Optional[str]) -> str:
    value = (fingerprint or "").strip()
    if not value:
        raise TrialValidationError(MESSAGE_MISSING_PARAMETER, code="trial.missing_parameter")
    return value


class TrialManager:
    """Load, consume, reset and block per-fingerprint trial ledgers.

    Consumption for one fingerprint is serialized by an in-process lock and
    committed with a compare-and-swap on the ledger version, so concurrent
    requests (including ones served by other processes) can never spend the
    same unit twice.
    """

    def __init__(
        self,
        store: LedgerStore,
        *,
        settings: Optional[TrialSettings] = None,
        rate_limiter: Optional[TrialRateLimiter] = None,
        dispatcher: Optional[EventDispatcher] = None,
        analytics: Optional[LoginAnalyticsRecorder] = None,
        weights: Optional[Mapping[ActionKind, int]] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        lock_stripes: int = DEFAULT_LOCK_STRIPES,
    ) -> None:
        self.store = store
        self.settings = settings or get_trial_settings()
        self.rate_limiter = rate_limiter or TrialRateLimiter(limit=self.settings.max_actions_per_hour)
        self.dispatcher = dispatcher or EventDispatcher()
        self.analytics = analytics
        self._weights = weights
        self._clock = clock
        self._sleep = sleep
        # Fingerprints hash onto a fixed pool of locks; two visitors may share one.
        self._locks: Tuple[threading.Lock, ...] = tuple(threading.Lock() for _ in range(max(lock_stripes, 1)))

    # ------------------------------------------------------------------ helpers

    def _lock_for(self, fingerprint: str) -> threading.Lock:
        return self._locks[hash(fingerprint) % len(self._locks)]

    def _store_call(self, operation_name: str, operation: Callable[[], T]) -> T:
        try:
            return call_with_backoff(
                operation,
                description=f"ledger {operation_name}",
                max_attempts=self.settings.store_retries,
                base_delay=self.settings.store_retry_delay,
                sleep=self._sleep,
            )
        except PermanentStoreFailure:
            metrics.record_store_failure(operation_name)
            raise

    def _record_analytics(self, event_type: LoginEventType, **kwargs: Any) -> None:
        if self.analytics is None:
            return
        self.analytics.record(event_type, **kwargs)

    def _renew_if_expired(self, ledger: TrialLedger, now: datetime) -> Optional[TrialLedger]:
        """Return the renewed ledger when the reset window elapsed, else ``None``."""

        changes: Dict[str, Any] = {}
        if ledger.is_blocked and ledger.blocked_until is not None and ledger.blocked_until <= now:
            changes.update(is_blocked=False, blocked_until=None)
        reset_at = ledger.reset_at(self.settings.reset_hours)
        if reset_at is None or reset_at <= now:
            total = self.settings.default_trial_count
            changes.update(remaining=total, total=total, actions=[], last_reset_at=now)
        if not changes:
            return None
        return ledger.evolve(**changes)

    def _load_or_create(self, fingerprint: str) -> TrialLedger:
        now = self._clock()
        ledger = self._store_call("get", lambda: self.store.get(fingerprint))
        if ledger is None:
            fresh = TrialLedger.fresh(fingerprint, self.settings.default_trial_count, now=now)
            ledger = self._store_call("create", lambda: self.store.create(fresh))
            logger.info("Created trial ledger for %s with %s trials.", fingerprint, ledger.total)
        renewed = self._renew_if_expired(ledger, now)
        if renewed is None:
            return ledger
        current = ledger
        try:
            stored = self._store_call("put", lambda: self.store.put(renewed, expected_version=current.version))
        except LedgerVersionConflict:
            return self._store_call("get", lambda: self.store.get(fingerprint)) or ledger
        if ledger.is_blocked and not stored.is_blocked:
            self.dispatcher.publish(TrialUnblocked(fingerprint))
        if stored.remaining != ledger.remaining or stored.last_reset_at != ledger.last_reset_at:
            self.dispatcher.publish(TrialReset(fingerprint, reason="expired"))
            logger.info("Renewed expired trial ledger for %s.", fingerprint)
        return stored

    def _mutate(self, fingerprint: str, change: Callable[[TrialLedger, datetime], TrialLedger]) -> TrialLedger:
        """Apply ``change`` under the fingerprint lock with CAS retries."""

        with self._lock_for(fingerprint):
            for _ in range(self.settings.cas_retries):
                ledger = self._load_or_create(fingerprint)
                updated = change(ledger, self._clock())
                try:
                    return self._store_call(
                        "put", lambda: self.store.put(updated, expected_version=ledger.version)
                    )
                except LedgerVersionConflict:
                    logger.debug("Version conflict updating ledger %s; reloading.", fingerprint)
        metrics.record_store_failure("put")
        raise PermanentStoreFailure(f"ledger {fingerprint} stayed contended after {self.settings.cas_retries} attempts")

    # --------------------------------------------------------------- operations

    def initialize(self, fingerprint: str) -> TrialLedger:
        """Load the ledger for ``fingerprint``, creating a fresh one on first sight."""

        key = _require_fingerprint(fingerprint)
        with self._lock_for(key):
            return self._load_or_create(key)

    def get_ledger(self, fingerprint: str) -> Optional[TrialLedger]:
        """Read-only lookup; never creates a ledger."""

        key = _require_fingerprint(fingerprint)
        return self._store_call("get", lambda: self.store.get(key))

    def can_consume(self, ledger: TrialLedger, kind: Union[ActionKind, str]) -> bool:
        action_kind = kind if isinstance(kind, ActionKind) else parse_action_kind(kind)
        return not ledger.is_blocked and ledger.remaining >= weight_of(action_kind, self._weights)

    def consume(
        self,
        fingerprint: Optional[str],
        kind: Union[ActionKind, str, None],
        metadata: Optional[Mapping[str, Any]] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ConsumeResult:
        key = _require_fingerprint(fingerprint)
        if kind is None or kind == "":
            raise TrialValidationError(MESSAGE_MISSING_PARAMETER, code="trial.missing_parameter")
        action_kind = kind if isinstance(kind, ActionKind) else parse_action_kind(kind)
        weight = weight_of(action_kind, self._weights)
        details = {key_: value for key_, value in (metadata or {}).items() if key_ != "weight"}

        with self._lock_for(key):
            ledger = self._load_or_create(key)
            limit = self.rate_limiter.check(key, ip_address, ledger=ledger, now=self._clock())
            backend = "redis" if self.rate_limiter.uses_redis and not limit.backend_error else "ledger"
            metrics.record_rate_limit(backend, limit.allowed)
            metrics.record_rate_limit_remaining(backend, limit.remaining)
            if not limit.allowed:
                return self._rate_limited(key, action_kind, ledger, limit.retry_after, ip_address, user_agent)

            for _ in range(self.settings.cas_retries):
                if ledger.is_blocked:
                    return self._denied(key, action_kind, ledger, ip_address, user_agent, blocked=True)
                if ledger.remaining < weight:
                    return self._denied(key, action_kind, ledger, ip_address, user_agent, blocked=False)

                now = self._clock()
                action = TrialAction(
                    kind=action_kind,
                    weight=weight,
                    timestamp=now,
                    metadata=details,
                    ip_address=ip_address,
                )
                updated = ledger.evolve(
                    remaining=ledger.remaining - weight,
                    actions=[*ledger.actions, action],
                    last_action_at=now,
                )
                current = ledger
                try:
                    stored = self._store_call(
                        "put", lambda: self.store.put(updated, expected_version=current.version)
                    )
                except LedgerVersionConflict:
                    logger.debug("Version conflict consuming %s for %s; reloading.", action_kind.value, key)
                    ledger = self._load_or_create(key)
                    continue
                return self._consumed(key, action, stored, ip_address, user_agent)

        metrics.record_trial_consume(action_kind.value, "error")
        metrics.record_store_failure("put")
        raise PermanentStoreFailure(f"ledger {key} stayed contended after {self.settings.cas_retries} attempts")

    def _consumed(
        self,
        fingerprint: str,
        action: TrialAction,
        ledger: TrialLedger,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> ConsumeResult:
        metrics.record_trial_consume(action.kind.value, "success")
        logger.info(
            "trial.consumed",
            extra={
                "fingerprint": fingerprint,
                "action": action.kind.value,
                "weight": action.weight,
                "remaining": ledger.remaining,
            },
        )
        self.dispatcher.publish(
            TrialConsumed(fingerprint, action=action.kind.value, weight=action.weight, remaining=ledger.remaining)
        )
        if ledger.remaining == 0:
            self.dispatcher.publish(TrialExhausted(fingerprint, total=ledger.total))
        self._record_analytics(
            LoginEventType.TRIAL_CONSUMED,
            fingerprint=fingerprint,
            trigger_type="success",
            context={"action": action.kind.value, "weight": action.weight, "remaining": ledger.remaining},
            ip=ip_address,
            user_agent=user_agent,
        )
        return ConsumeResult(
            success=True,
            remaining=ledger.remaining,
            message=MESSAGE_CONSUMED,
            next_reset_at=ledger.next_reset_at(self.settings.reset_hours),
            action=action,
        )

    def _denied(
        self,
        fingerprint: str,
        kind: ActionKind,
        ledger: TrialLedger,
        ip_address: Optional[str],
        user_agent: Optional[str],
        *,
        blocked: bool,
    ) -> ConsumeResult:
        outcome = "blocked" if blocked else "exhausted"
        metrics.record_trial_consume(kind.value, outcome)
        logger.info("Trial consume denied for %s (%s): %s.", fingerprint, kind.value, outcome)
        self._record_analytics(
            LoginEventType.TRIAL_CONSUMED,
            fingerprint=fingerprint,
            trigger_type=outcome,
            context={"action": kind.value, "remaining": ledger.remaining, "blocked": blocked},
            ip=ip_address,
            user_agent=user_agent,
        )
        return ConsumeResult(
            success=False,
            remaining=ledger.remaining,
            blocked=blocked,
            exhausted=not blocked,
            message=MESSAGE_BLOCKED if blocked else MESSAGE_EXHAUSTED,
            next_reset_at=ledger.next_reset_at(self.settings.reset_hours),
        )

    def _rate_limited(
        self,
        fingerprint: str,
        kind: ActionKind,
        ledger: TrialLedger,
        retry_after: int,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> ConsumeResult:
        retry = max(int(retry_after or 0), 1)
        metrics.record_trial_consume(kind.value, "rate_limited")
        logger.warning(
            "trial.rate_limited",
            extra={"fingerprint": fingerprint, "action": kind.value, "ip": ip_address, "retry_after": retry},
        )
        self.dispatcher.publish(TrialRateLimited(fingerprint, ip_address=ip_address, retry_after=retry))
        self._record_analytics(
            LoginEventType.RATE_LIMITED,
            fingerprint=fingerprint,
            trigger_type="trial_consume",
            context={"action": kind.value, "remaining": ledger.remaining},
            ip=ip_address,
            user_agent=user_agent,
        )
        return ConsumeResult(
            success=False,
            remaining=ledger.remaining,
            blocked=ledger.is_blocked,
            rate_limited=True,
            retry_after=retry,
            message=MESSAGE_RATE_LIMITED,
            next_reset_at=ledger.next_reset_at(self.settings.reset_hours),
        )

    def status(self, fingerprint: str) -> TrialStatus:
        key = _require_fingerprint(fingerprint)
        now = self._clock()
        ledger = self._store_call("get", lambda: self.store.get(key))
        if ledger is None or self._renew_if_expired(ledger, now) is not None:
            # creation and renewal are the only writes on this path
            ledger = self.initialize(key)
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        hour_ago = now - timedelta(hours=1)
        actions = ledger.actions
        stats = TrialStats(
            total_actions=len(actions),
            actions_today=sum(1 for action in actions if action.timestamp >= day_start),
            actions_this_hour=sum(1 for action in actions if action.timestamp > hour_ago),
            last_action_at=ledger.last_action_at,
        )
        return TrialStatus(
            fingerprint=ledger.fingerprint,
            remaining=ledger.remaining,
            total=ledger.total,
            is_blocked=ledger.is_blocked,
            next_reset_at=ledger.next_reset_at(self.settings.reset_hours),
            recent_actions=list(actions[-TRIAL_RECENT_ACTIONS:]),
            stats=stats,
        )

    def reset(
        self,
        fingerprint: str,
        *,
        preserve_actions: bool = False,
        reason: Optional[str] = None,
    ) -> TrialLedger:
        """Restore the full quota; administrative resets also lift any block."""

        key = _require_fingerprint(fingerprint)

        def _change(ledger: TrialLedger, now: datetime) -> TrialLedger:
            total = self.settings.default_trial_count
            return ledger.evolve(
                remaining=total,
                total=total,
                actions=list(ledger.actions) if preserve_actions else [],
                is_blocked=False,
                blocked_until=None,
                last_reset_at=now,
            )

        ledger = self._mutate(key, _change)
        label = reason or "manual"
        logger.info("Trial ledger for %s reset (reason=%s, preserve_actions=%s).", key, label, preserve_actions)
        self.dispatcher.publish(TrialReset(key, reason=label, preserve_actions=preserve_actions))
        return ledger

    def block(
        self,
        fingerprint: str,
        *,
        reason: str = "fraud_signal",
        duration_hours: Optional[int] = None,
    ) -> TrialLedger:
        key = _require_fingerprint(fingerprint)
        hours = duration_hours if duration_hours is not None else self.settings.blocked_duration_hours

        def _change(ledger: TrialLedger, now: datetime) -> TrialLedger:
            return ledger.evolve(is_blocked=True, blocked_until=now + timedelta(hours=hours))

        ledger = self._mutate(key, _change)
        logger.warning("Trial ledger for %s blocked until %s (reason=%s).", key, ledger.blocked_until, reason)
        self.dispatcher.publish(TrialBlockedEvent(key, reason=reason, blocked_until=ledger.blocked_until))
        return ledger

    def clear_block(self, fingerprint: str) -> TrialLedger:
        key = _require_fingerprint(fingerprint)
        ledger = self._mutate(key, lambda current, _now: current.evolve(is_blocked=False, blocked_until=None))
        logger.info("Trial ledger block cleared for %s.", key)
        self.dispatcher.publish(TrialUnblocked(key))
        return ledger

    def mark_converted(self, fingerprint: str, user_id: str) -> TrialLedger:
        key = _require_fingerprint(fingerprint)
        if not user_id:
            raise TrialValidationError(MESSAGE_MISSING_PARAMETER, code="trial.missing_parameter")
        ledger = self._mutate(key, lambda current, _now: current.evolve(converted_user_id=user_id))
        self._record_analytics(
            LoginEventType.LOGIN_SUCCESS,
            fingerprint=key,
            trigger_type="trial_conversion",
            context={"user_id": user_id, "remaining": ledger.remaining},
        )
        return ledger


def raise_for_result(result: ConsumeResult) -> None:
    """Translate a denied :class:`ConsumeResult` into the matching exception."""

    if result.success:
        return
    if result.rate_limited:
        raise RateLimited(result.message or MESSAGE_RATE_LIMITED, retry_after=result.retry_after or 1)
    if result.blocked:
        raise TrialBlocked(result.message or MESSAGE_BLOCKED)
    if result.exhausted:
        raise QuotaExhausted(result.message or MESSAGE_EXHAUSTED)


__all__ = [
    "MESSAGE_BLOCKED",
    "MESSAGE_EXHAUSTED",
    "MESSAGE_MISSING_PARAMETER",
    "MESSAGE_RATE_LIMITED",
    "TrialManager",
    "raise_for_result",
]
