"""Rolling per-fingerprint windows of behavioral events."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import OperationalError, SQLAlchemyError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from core.env import env_int
from core.logging import get_logger
from core.trial_constants import BehaviorEventKind, DeviceClass
from models.behavior_event import BehaviorEventRecord
from services.trial_errors import PermanentStoreFailure, TransientStoreFailure
from services.trial_types import ensure_aware, utcnow

logger = get_logger(__name__)

DEFAULT_MAX_EVENTS = env_int("BEHAVIOR_WINDOW_MAX_EVENTS", 1000, minimum=10)
DEFAULT_WINDOW_DAYS = env_int("BEHAVIOR_WINDOW_DAYS", 7, minimum=1)


@dataclass(frozen=True)
class BehaviorEvent:
    fingerprint: str
    session_id: str
    kind: BehaviorEventKind
    timestamp: datetime
    device_class: DeviceClass = DeviceClass.DESKTOP
    data: Mapping[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None

    @property
    def page(self) -> Optional[str]:
        value = self.data.get("page")
        return str(value) if value else None

    @property
    def feature(self) -> Optional[str]:
        value = self.data.get("feature")
        return str(value) if value else None


class BehaviorStore(Protocol):
    def get(self, fingerprint: str, *, now: Optional[datetime] = None) -> List[BehaviorEvent]:
        """Events inside the retention window, oldest first."""

    def put(self, event: BehaviorEvent) -> None:
        ...

    def evict(self, *, now: Optional[datetime] = None) -> int:
        """Drop events older than the retention window; returns the count removed."""


class InMemoryBehaviorStore:
    """Bounded deques keyed by fingerprint; oldest events fall off first."""

    def __init__(self, *, max_events: int = DEFAULT_MAX_EVENTS, window_days: int = DEFAULT_WINDOW_DAYS) -> None:
        self.max_events = max_events
        self.window = timedelta(days=window_days)
        self._events: Dict[str, Deque[BehaviorEvent]] = {}
        self._lock = threading.Lock()

    def get(self, fingerprint: str, *, now: Optional[datetime] = None) -> List[BehaviorEvent]:
        cutoff = (now or utcnow()) - self.window
        with self._lock:
            events = self._events.get(fingerprint)
            if not events:
                return []
            return [event for event in events if event.timestamp >= cutoff]

    def put(self, event: BehaviorEvent) -> None:
        with self._lock:
            events = self._events.get(event.fingerprint)
            if events is None:
                events = deque(maxlen=self.max_events)
                self._events[event.fingerprint] = events
            events.append(event)

    def evict(self, *, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - self.window
        removed = 0
        with self._lock:
            for fingerprint in list(self._events):
                events = self._events[fingerprint]
                while events and events[0].timestamp < cutoff:
                    events.popleft()
                    removed += 1
                if not events:
                    del self._events[fingerprint]
        return removed


def _to_domain(record: BehaviorEventRecord) -> BehaviorEvent:
    return BehaviorEvent(
        fingerprint=record.fingerprint,
        session_id=record.session_id,
        kind=BehaviorEventKind(record.event_kind),
        timestamp=ensure_aware(record.occurred_at),
        device_class=DeviceClass(record.device_class),
        data=dict(record.event_data or {}),
        user_id=record.user_id,
    )


class SqlBehaviorStore:
    """Behavior events persisted in ``behavior_events``."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        max_events: int = DEFAULT_MAX_EVENTS,
        window_days: int = DEFAULT_WINDOW_DAYS,
    ) -> None:
        self._session_factory = session_factory
        self.max_events = max_events
        self.window = timedelta(days=window_days)

    def get(self, fingerprint: str, *, now: Optional[datetime] = None) -> List[BehaviorEvent]:
        cutoff = (now or utcnow()) - self.window
        session = self._session_factory()
        try:
            statement = (
                select(BehaviorEventRecord)
                .where(BehaviorEventRecord.fingerprint == fingerprint, BehaviorEventRecord.occurred_at >= cutoff)
                .order_by(BehaviorEventRecord.occurred_at.desc())
                .limit(self.max_events)
            )
            records = session.execute(statement).scalars().all()
            return [_to_domain(record) for record in reversed(records)]
        except (OperationalError, PoolTimeoutError) as exc:
            raise TransientStoreFailure(f"behavior read failed: {exc}") from exc
        except SQLAlchemyError as exc:
            raise PermanentStoreFailure(f"behavior read failed: {exc}") from exc
        finally:
            session.close()

    def put(self, event: BehaviorEvent) -> None:
        session = self._session_factory()
        try:
            session.add(
                BehaviorEventRecord(
                    fingerprint=event.fingerprint,
                    session_id=event.session_id,
                    user_id=event.user_id,
                    event_kind=event.kind.value,
                    event_data=dict(event.data),
                    device_class=event.device_class.value,
                    occurred_at=event.timestamp,
                )
            )
            session.commit()
        except (OperationalError, PoolTimeoutError) as exc:
            session.rollback()
            raise TransientStoreFailure(f"behavior write failed: {exc}") from exc
        except SQLAlchemyError as exc:
            session.rollback()
            raise PermanentStoreFailure(f"behavior write failed: {exc}") from exc
        finally:
            session.close()

    def evict(self, *, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - self.window
        session = self._session_factory()
        try:
            result = session.execute(delete(BehaviorEventRecord).where(BehaviorEventRecord.occurred_at < cutoff))
            session.commit()
            removed = int(result.rowcount or 0)
            if removed:
                logger.info("Evicted %s behavior events older than %s.", removed, cutoff.isoformat())
            return removed
        except SQLAlchemyError as exc:
            session.rollback()
            raise TransientStoreFailure(f"behavior eviction failed: {exc}") from exc
        finally:
            session.close()


__all__ = ["BehaviorEvent", "BehaviorStore", "InMemoryBehaviorStore", "SqlBehaviorStore"]
