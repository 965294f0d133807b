"""Typed domain events and the single dispatch point consumers subscribe to."""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, DefaultDict, Dict, List, Mapping, Optional, Type, TypeVar

from core.logging import get_logger
from services.trial_types import utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class DomainEvent:
    fingerprint: Optional[str]
    occurred_at: datetime = field(default_factory=utcnow, kw_only=True)

    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class TrialConsumed(DomainEvent):
    action: str
    weight: int
    remaining: int


@dataclass(frozen=True)
class TrialExhausted(DomainEvent):
    total: int


@dataclass(frozen=True)
class TrialBlockedEvent(DomainEvent):
    reason: str
    blocked_until: Optional[datetime] = None


@dataclass(frozen=True)
class TrialUnblocked(DomainEvent):
    pass


@dataclass(frozen=True)
class TrialReset(DomainEvent):
    reason: str
    preserve_actions: bool = False


@dataclass(frozen=True)
class TrialRateLimited(DomainEvent):
    ip_address: Optional[str]
    retry_after: int


@dataclass(frozen=True)
class TrialSynced(DomainEvent):
    remaining: int
    is_blocked: bool


@dataclass(frozen=True)
class TrialSyncFailed(DomainEvent):
    attempts: int
    error: str


@dataclass(frozen=True)
class AccessDenied(DomainEvent):
    feature: str
    reason: str


@dataclass(frozen=True)
class PromptShown(DomainEvent):
    candidate_id: str
    experiment: str
    context: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BehaviorTrackingDegraded(DomainEvent):
    consecutive_failures: int
    error: str


E = TypeVar("E", bound=DomainEvent)
EventHandler = Callable[[Any], None]


class EventDispatcher:
    """Synchronous publish/subscribe hub.

    Handlers registered for ``DomainEvent`` receive every event. A failing
    handler is logged and never interrupts the publisher or other handlers.
    """

    def __init__(self) -> None:
        self._handlers: DefaultDict[Type[DomainEvent], List[EventHandler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        with self._lock:
            self._handlers[event_type].append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(event_type, [])
                if handler in handlers:
                    handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            handlers: List[EventHandler] = []
            for event_type, registered in self._handlers.items():
                if isinstance(event, event_type):
                    handlers.extend(registered)
        for handler in handlers:
            try:
                handler(event)
            except Exception as exc:  # pragma: no cover - subscriber bugs must not leak
                logger.warning("Event handler %r failed for %s: %s", handler, event.name, exc, exc_info=True)

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()


class RecordingSubscriber:
    """Collects published events; used by analytics bridges and tests."""

    def __init__(self) -> None:
        self.events: List[DomainEvent] = []

    def __call__(self, event: DomainEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: Type[E]) -> List[E]:
        return [event for event in self.events if isinstance(event, event_type)]

    def names(self) -> List[str]:
        return [event.name for event in self.events]


def event_payload(event: DomainEvent) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"event": event.name, "occurredAt": event.occurred_at.isoformat()}
    for key, value in vars(event).items():
        if key in {"occurred_at"}:
            continue
        payload[key] = value.isoformat() if isinstance(value, datetime) else value
    return payload


__all__ = [
    "AccessDenied",
    "BehaviorTrackingDegraded",
    "DomainEvent",
    "EventDispatcher",
    "PromptShown",
    "RecordingSubscriber",
    "TrialBlockedEvent",
    "TrialConsumed",
    "TrialExhausted",
    "TrialRateLimited",
    "TrialReset",
    "TrialSyncFailed",
    "TrialSynced",
    "TrialUnblocked",
    "event_payload",
]
