"""Client-side trial mirror and its reconciliation with the server ledger.

The mirror only drives immediate UI feedback. Blocking and exhaustion are
always decided by the server; :func:`reconcile` copies server counters over
the mirror and never the other way round.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import httpx

from core.env import env_float, env_str
from core.logging import get_logger
from core.trial_constants import ACTION_WEIGHTS, ActionKind
from services import metrics
from services.trial_config import parse_action_kind
from services.trial_errors import TrialValidationError
from services.trial_events import EventDispatcher, TrialSynced, TrialSyncFailed
from services.trial_mirror_store import MirrorStore, default_mirror_store
from services.trial_types import ConsumeResult, TrialAction, parse_timestamp, utcnow

logger = get_logger(__name__)

DEFAULT_SYNC_TIMEOUT = env_float("TRIAL_SYNC_TIMEOUT", 10.0, minimum=0.5)
SYNC_MAX_ATTEMPTS = 3
SYNC_BASE_DELAY = 1.0


@dataclass(frozen=True)
class PendingAction:
    """Locally recorded action not yet confirmed by a status fetch."""

    kind: ActionKind
    timestamp: datetime
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.kind.value, "timestamp": self.timestamp.isoformat(), "metadata": dict(self.metadata)}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PendingAction":
        return cls(
            kind=ActionKind(str(payload.get("type"))),
            timestamp=parse_timestamp(payload.get("timestamp")) or utcnow(),
            metadata=dict(payload.get("metadata") or {}),
        )


@dataclass(frozen=True)
class LocalMirror:
    fingerprint: str
    remaining: int
    total: int
    is_blocked: bool = False
    next_reset_at: Optional[datetime] = None
    pending_actions: List[PendingAction] = field(default_factory=list)
    last_synced_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @classmethod
    def empty(cls, fingerprint: str, total: int) -> "LocalMirror":
        return cls(fingerprint=fingerprint, remaining=total, total=total)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "remaining": self.remaining,
            "total": self.total,
            "isBlocked": self.is_blocked,
            "nextResetAt": self.next_reset_at.isoformat() if self.next_reset_at else None,
            "pendingActions": [action.to_payload() for action in self.pending_actions],
            "lastSyncedAt": self.last_synced_at.isoformat() if self.last_synced_at else None,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "LocalMirror":
        total = max(int(payload.get("total") or 1), 1)
        return cls(
            fingerprint=str(payload["fingerprint"]),
            remaining=min(max(int(payload.get("remaining") or 0), 0), total),
            total=total,
            is_blocked=bool(payload.get("isBlocked")),
            next_reset_at=parse_timestamp(payload.get("nextResetAt")),
            pending_actions=[
                PendingAction.from_payload(item)
                for item in payload.get("pendingActions") or []
                if isinstance(item, Mapping)
            ],
            last_synced_at=parse_timestamp(payload.get("lastSyncedAt")),
        )


@dataclass(frozen=True)
class AuthoritativeLedger:
    """Server view of a ledger as returned by ``GET /trial/status``."""

    fingerprint: str
    remaining: int
    total: int
    is_blocked: bool
    next_reset_at: Optional[datetime]
    recent_actions: List[TrialAction] = field(default_factory=list)
    last_action_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, fingerprint: str, payload: Mapping[str, Any]) -> "AuthoritativeLedger":
        stats = payload.get("stats") or {}
        recent = [
            TrialAction.from_payload(item) for item in payload.get("recentActions") or [] if isinstance(item, Mapping)
        ]
        last_action_at = parse_timestamp(stats.get("lastActionAt"))
        if last_action_at is None and recent:
            last_action_at = max(action.timestamp for action in recent)
        return cls(
            fingerprint=fingerprint,
            remaining=int(payload["remaining"]),
            total=int(payload.get("total") or payload["remaining"] or 1),
            is_blocked=bool(payload.get("isBlocked")),
            next_reset_at=parse_timestamp(payload.get("nextResetAt")),
            recent_actions=recent,
            last_action_at=last_action_at,
        )


def reconcile(mirror: LocalMirror, authoritative: AuthoritativeLedger, *, now: Optional[datetime] = None) -> LocalMirror:
    """Overwrite mirror counters with the server view.

    Pending local actions newer than the latest server-reported action are kept;
    older ones are considered confirmed and dropped.
    """

    cutoff = authoritative.last_action_at
    pending = [action for action in mirror.pending_actions if cutoff is None or action.timestamp > cutoff]
    return replace(
        mirror,
        remaining=authoritative.remaining,
        total=authoritative.total,
        is_blocked=authoritative.is_blocked,
        next_reset_at=authoritative.next_reset_at,
        pending_actions=pending,
        last_synced_at=now or utcnow(),
        last_error=None,
    )


class TrialSyncClient:
    """HTTP client keeping a :class:`LocalMirror` aligned with the trial API."""

    def __init__(
        self,
        fingerprint: str,
        *,
        base_url: Optional[str] = None,
        mirror_store: Optional[MirrorStore] = None,
        dispatcher: Optional[EventDispatcher] = None,
        http_client: Optional[httpx.Client] = None,
        timeout: float = DEFAULT_SYNC_TIMEOUT,
        default_total: int = 5,
        max_attempts: int = SYNC_MAX_ATTEMPTS,
        base_delay: float = SYNC_BASE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not fingerprint:
            raise TrialValidationError("missing required parameter", code="trial.missing_parameter")
        self.fingerprint = fingerprint
        resolved_base = base_url or env_str("TRIAL_API_BASE_URL") or "http://localhost:8000"
        self._client = http_client or httpx.Client(
            base_url=resolved_base,
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
        )
        self._owns_client = http_client is None
        self._mirror_store = mirror_store if mirror_store is not None else default_mirror_store()
        self.dispatcher = dispatcher or EventDispatcher()
        self._max_attempts = max(1, max_attempts)
        self._base_delay = base_delay
        self._sleep = sleep
        self.mirror = self._restore_mirror(default_total)

    def _restore_mirror(self, default_total: int) -> LocalMirror:
        if self._mirror_store is not None:
            payload = self._mirror_store.load(self.fingerprint)
            if payload is not None:
                try:
                    return LocalMirror.from_payload(payload)
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning("Discarding unreadable trial mirror for %s: %s", self.fingerprint, exc)
        return LocalMirror.empty(self.fingerprint, default_total)

    def _persist(self) -> None:
        if self._mirror_store is None:
            return
        try:
            self._mirror_store.save(self.mirror.to_payload())
        except OSError as exc:
            logger.warning("Failed to persist trial mirror for %s: %s", self.fingerprint, exc)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "TrialSyncClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def can_consume(self, kind: Union[ActionKind, str]) -> bool:
        """Optimistic check for UI feedback; the server still decides."""

        action_kind = kind if isinstance(kind, ActionKind) else parse_action_kind(kind)
        return not self.mirror.is_blocked and self.mirror.remaining >= ACTION_WEIGHTS[action_kind]

    def _fetch_status(self) -> AuthoritativeLedger:
        response = self._client.get("/api/v1/trial/status", params={"fingerprint": self.fingerprint})
        response.raise_for_status()
        return AuthoritativeLedger.from_payload(self.fingerprint, response.json())

    def sync(self) -> LocalMirror:
        """Fetch the authoritative ledger and reconcile the mirror.

        Transport errors and 5xx responses are retried with exponential backoff.
        When every attempt fails the mirror is kept as-is with ``last_error`` set
        and :class:`TrialSyncFailed` is published.
        """

        delay = self._base_delay
        error_message = ""
        for attempt in range(1, self._max_attempts + 1):
            try:
                authoritative = self._fetch_status()
            except httpx.HTTPStatusError as exc:
                error_message = f"status {exc.response.status_code}"
                logger.warning("Trial sync HTTP error (attempt %s/%s): %s", attempt, self._max_attempts, error_message)
                if exc.response.status_code < 500:
                    break
            except httpx.RequestError as exc:
                error_message = str(exc) or type(exc).__name__
                logger.warning("Trial sync request error (attempt %s/%s): %s", attempt, self._max_attempts, exc)
            except (KeyError, TypeError, ValueError) as exc:
                error_message = f"malformed status payload: {exc}"
                logger.warning("Trial sync received malformed payload: %s", exc)
                break
            else:
                self.mirror = reconcile(self.mirror, authoritative)
                self._persist()
                self.dispatcher.publish(
                    TrialSynced(self.fingerprint, remaining=self.mirror.remaining, is_blocked=self.mirror.is_blocked)
                )
                return self.mirror
            if attempt < self._max_attempts:
                self._sleep(delay)
                delay *= 2

        metrics.record_sync_failure()
        self.mirror = replace(self.mirror, last_error=error_message or "sync failed")
        self.dispatcher.publish(TrialSyncFailed(self.fingerprint, attempts=attempt, error=self.mirror.last_error))
        return self.mirror

    def consume(self, kind: Union[ActionKind, str], metadata: Optional[Mapping[str, Any]] = None) -> ConsumeResult:
        """Ask the server to consume ``kind`` and fold the answer into the mirror.

        Consumption is never retried automatically: a lost response could
        otherwise charge the visitor twice.
        """

        action_kind = kind if isinstance(kind, ActionKind) else parse_action_kind(kind)
        body = {"action": action_kind.value, "fingerprint": self.fingerprint, "metadata": dict(metadata or {})}
        # Stamped before sending so the server-side action always sorts at or after it.
        sent_at = utcnow()
        try:
            response = self._client.post("/api/v1/trial/consume", json=body)
        except httpx.RequestError as exc:
            logger.warning("Trial consume request failed for %s: %s", self.fingerprint, exc)
            self.mirror = replace(self.mirror, last_error=str(exc) or type(exc).__name__)
            return ConsumeResult(success=False, remaining=self.mirror.remaining, message="trial service unavailable")

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if isinstance(payload, Mapping) and isinstance(payload.get("detail"), Mapping):
            payload = payload["detail"]
        if response.status_code == 400:
            raise TrialValidationError(
                str(payload.get("message") or "invalid request"),
                code=str(payload.get("code") or "trial.invalid_request"),
            )
        if response.status_code >= 500:
            self.mirror = replace(self.mirror, last_error=f"status {response.status_code}")
            return ConsumeResult(
                success=False,
                remaining=self.mirror.remaining,
                message=str(payload.get("message") or "trial service unavailable"),
            )

        success = bool(payload.get("success")) and response.status_code == 200
        remaining = int(payload.get("remaining", self.mirror.remaining))
        denied = response.status_code == 403
        exhausted = denied and payload.get("code") == "trial.exhausted"
        blocked = denied and not exhausted
        rate_limited = response.status_code == 429 or bool(payload.get("rateLimited"))
        retry_after = response.headers.get("Retry-After")
        pending = list(self.mirror.pending_actions)
        if success:
            pending.append(PendingAction(kind=action_kind, timestamp=sent_at, metadata=dict(metadata or {})))
        self.mirror = replace(
            self.mirror,
            remaining=min(max(remaining, 0), self.mirror.total),
            is_blocked=self.mirror.is_blocked or (denied and payload.get("code") == "trial.blocked"),
            next_reset_at=parse_timestamp(payload.get("nextResetAt")) or self.mirror.next_reset_at,
            pending_actions=pending,
            last_error=None,
        )
        self._persist()
        return ConsumeResult(
            success=success,
            remaining=self.mirror.remaining,
            blocked=blocked,
            exhausted=exhausted,
            rate_limited=rate_limited,
            retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            message=str(payload.get("message") or ""),
            next_reset_at=self.mirror.next_reset_at,
        )


__all__ = ["AuthoritativeLedger", "LocalMirror", "PendingAction", "TrialSyncClient", "reconcile"]
