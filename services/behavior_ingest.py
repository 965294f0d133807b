"""Fire-and-forget ingestion of behavioral events."""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

from core.env import env_int
from core.logging import get_logger
from services import metrics
from services.behavior_store import BehaviorEvent, BehaviorStore
from services.store_retry import call_with_backoff
from services.trial_events import BehaviorTrackingDegraded, EventDispatcher

logger = get_logger(__name__)

DEFAULT_DEGRADED_AFTER = env_int("BEHAVIOR_DEGRADED_AFTER", 5, minimum=1)


class BehaviorIngestor:
    """Writes events to a :class:`BehaviorStore` off the request thread.

    Lost events are tolerated. After ``degraded_after`` consecutive failures a
    single :class:`BehaviorTrackingDegraded` event is published; the next
    successful write clears the degraded state.
    """

    def __init__(
        self,
        store: BehaviorStore,
        *,
        dispatcher: Optional[EventDispatcher] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        max_workers: int = 2,
        degraded_after: int = DEFAULT_DEGRADED_AFTER,
        store_attempts: int = 2,
        retry_delay: float = 0.1,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher or EventDispatcher()
        self._executor = executor or ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="behavior-ingest")
        self._owns_executor = executor is None
        self._degraded_after = max(1, degraded_after)
        self._store_attempts = store_attempts
        self._retry_delay = retry_delay
        self._consecutive_failures = 0
        self._degraded = False
        self._lock = threading.Lock()

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def submit(self, event: BehaviorEvent) -> Future:
        return self._executor.submit(self.process, event)

    def process(self, event: BehaviorEvent) -> bool:
        try:
            call_with_backoff(
                lambda: self.store.put(event),
                description="behavior event write",
                max_attempts=self._store_attempts,
                base_delay=self._retry_delay,
            )
        except Exception as exc:  # event loss is acceptable; surface it through the degraded signal
            logger.warning("Dropped behavior event %s for %s: %s", event.kind.value, event.fingerprint, exc)
            self._record_failure(event, exc)
            return False
        self._record_success()
        return True

    def _record_success(self) -> None:
        metrics.record_behavior_ingest(True)
        with self._lock:
            self._consecutive_failures = 0
            recovered = self._degraded
            self._degraded = False
        if recovered:
            metrics.set_behavior_degraded(False)
            logger.info("Behavior tracking recovered.")

    def _record_failure(self, event: BehaviorEvent, exc: Exception) -> None:
        metrics.record_behavior_ingest(False)
        with self._lock:
            self._consecutive_failures += 1
            failures = self._consecutive_failures
            trip = failures >= self._degraded_after and not self._degraded
            if trip:
                self._degraded = True
        if trip:
            metrics.set_behavior_degraded(True)
            logger.error("Behavior tracking degraded after %s consecutive failures.", failures)
            self.dispatcher.publish(
                BehaviorTrackingDegraded(event.fingerprint, consecutive_failures=failures, error=str(exc))
            )

    def shutdown(self, *, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)


__all__ = ["BehaviorIngestor"]
