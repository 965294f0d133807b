"""Domain records for trial ledgers and consumption outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from core.trial_constants import ActionKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    try:
        return ensure_aware(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


class LedgerState(str, Enum):
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class TrialAction:
    kind: ActionKind
    weight: int
    timestamp: datetime
    metadata: Mapping[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "weight": self.weight,
            "timestamp": self.timestamp.isoformat(),
            "metadata": dict(self.metadata),
            "ipAddress": self.ip_address,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "TrialAction":
        timestamp = parse_timestamp(payload.get("timestamp")) or utcnow()
        return cls(
            kind=ActionKind(str(payload.get("type"))),
            weight=max(int(payload.get("weight") or 1), 1),
            timestamp=timestamp,
            metadata=dict(payload.get("metadata") or {}),
            ip_address=payload.get("ipAddress"),
        )


@dataclass(frozen=True)
class TrialLedger:
    """Authoritative quota state for one fingerprint.

    Instances are immutable; the manager derives a new ledger per mutation and
    hands it to the store together with the version it was read at.
    """

    fingerprint: str
    remaining: int
    total: int
    actions: List[TrialAction] = field(default_factory=list)
    is_blocked: bool = False
    blocked_until: Optional[datetime] = None
    last_reset_at: Optional[datetime] = None
    last_action_at: Optional[datetime] = None
    converted_user_id: Optional[str] = None
    version: int = 0

    def __post_init__(self) -> None:
        if self.total <= 0:
            raise ValueError("total must be positive")
        if not 0 <= self.remaining <= self.total:
            raise ValueError(f"remaining must be within [0, {self.total}], got {self.remaining}")

    @classmethod
    def fresh(cls, fingerprint: str, total: int, *, now: Optional[datetime] = None) -> "TrialLedger":
        moment = now or utcnow()
        return cls(fingerprint=fingerprint, remaining=total, total=total, last_reset_at=moment)

    @property
    def state(self) -> LedgerState:
        if self.is_blocked:
            return LedgerState.BLOCKED
        if self.remaining == 0:
            return LedgerState.EXHAUSTED
        return LedgerState.ACTIVE

    def reset_at(self, reset_hours: int) -> Optional[datetime]:
        if self.last_reset_at is None:
            return None
        return self.last_reset_at + timedelta(hours=reset_hours)

    def next_reset_at(self, reset_hours: int) -> Optional[datetime]:
        if self.is_blocked and self.blocked_until is not None:
            return self.blocked_until
        return self.reset_at(reset_hours)

    def evolve(self, **changes: Any) -> "TrialLedger":
        return replace(self, **changes)


@dataclass(frozen=True)
class ConsumeResult:
    success: bool
    remaining: int
    blocked: bool = False
    exhausted: bool = False
    rate_limited: bool = False
    retry_after: Optional[int] = None
    message: str = ""
    next_reset_at: Optional[datetime] = None
    action: Optional[TrialAction] = None

    @property
    def denied_for_quota(self) -> bool:
        return not self.success and (self.blocked or self.exhausted)


@dataclass(frozen=True)
class TrialStats:
    total_actions: int
    actions_today: int
    actions_this_hour: int
    last_action_at: Optional[datetime]


@dataclass(frozen=True)
class TrialStatus:
    fingerprint: str
    remaining: int
    total: int
    is_blocked: bool
    next_reset_at: Optional[datetime]
    recent_actions: List[TrialAction]
    stats: TrialStats


__all__ = [
    "ConsumeResult",
    "LedgerState",
    "TrialAction",
    "TrialLedger",
    "TrialStats",
    "TrialStatus",
    "ensure_aware",
    "parse_timestamp",
    "utcnow",
]
