import threading
from datetime import timedelta

import pytest

from core.trial_constants import ActionKind
from services.trial_config import TrialSettings
from services.trial_errors import (
    PermanentStoreFailure,
    QuotaExhausted,
    RateLimited,
    TransientStoreFailure,
    TrialBlocked,
    TrialValidationError,
)
from services.trial_events import (
    TrialBlockedEvent,
    TrialConsumed,
    TrialExhausted,
    TrialRateLimited,
    TrialReset,
    TrialUnblocked,
)
from services.trial_ledger_store import InMemoryLedgerStore, SqlLedgerStore
from services.trial_manager import (
    MESSAGE_BLOCKED,
    MESSAGE_EXHAUSTED,
    TrialManager,
    raise_for_result,
)
from services.trial_rate_limiter import TrialRateLimiter


def _manager(store=None, *, settings=None, dispatcher=None, clock=None, **kwargs):
    settings = settings or TrialSettings(store_retry_delay=0.0)
    extra = {"clock": clock} if clock is not None else {}
    return TrialManager(
        store if store is not None else InMemoryLedgerStore(),
        settings=settings,
        dispatcher=dispatcher,
        sleep=lambda _delay: None,
        **extra,
        **kwargs,
    )


def test_consume_f1_scenario_keeps_remaining_when_weight_exceeds_balance():
    manager = _manager()

    for expected in (4, 3, 2, 1):
        result = manager.consume("f1", "video_analysis")
        assert result.success is True
        assert result.remaining == expected

    result = manager.consume("f1", "channel_analysis")

    assert result.success is False
    assert result.exhausted is True
    assert result.remaining == 1
    assert result.message == MESSAGE_EXHAUSTED
    assert manager.get_ledger("f1").remaining == 1


def test_consume_records_action_and_publishes_events(dispatcher, recorder):
    manager = _manager(dispatcher=dispatcher)

    result = manager.consume("fp-events", ActionKind.BATCH_ANALYSIS, {"videoId": "abc", "weight": 0})

    ledger = manager.get_ledger("fp-events")
    assert result.success is True
    assert ledger.remaining == 2
    assert len(ledger.actions) == 1
    action = ledger.actions[0]
    assert action.weight == 3
    assert dict(action.metadata) == {"videoId": "abc"}
    consumed = recorder.of_type(TrialConsumed)
    assert [(event.action, event.weight, event.remaining) for event in consumed] == [("batch_analysis", 3, 2)]


def test_consume_to_zero_publishes_exhausted(dispatcher, recorder):
    manager = _manager(settings=TrialSettings(default_trial_count=2, store_retry_delay=0.0), dispatcher=dispatcher)

    manager.consume("fp-zero", "channel_analysis")

    assert manager.get_ledger("fp-zero").remaining == 0
    assert [event.total for event in recorder.of_type(TrialExhausted)] == [2]


def test_blocked_ledger_denies_without_touching_remaining():
    manager = _manager()
    manager.initialize("fp-blocked")
    manager.block("fp-blocked")

    result = manager.consume("fp-blocked", "video_analysis")

    assert result.success is False
    assert result.blocked is True
    assert result.message == MESSAGE_BLOCKED
    assert manager.get_ledger("fp-blocked").remaining == 5


@pytest.mark.parametrize(
    "fingerprint, kind, code",
    [
        ("", "video_analysis", "trial.missing_parameter"),
        ("fp", "", "trial.missing_parameter"),
        ("fp", None, "trial.missing_parameter"),
        ("fp", "teleport", "trial.invalid_action"),
    ],
)
def test_consume_validates_input(fingerprint, kind, code):
    manager = _manager()

    with pytest.raises(TrialValidationError) as exc:
        manager.consume(fingerprint, kind)

    assert exc.value.code == code


def test_concurrent_consume_of_last_unit_succeeds_exactly_once():
    store = InMemoryLedgerStore()
    settings = TrialSettings(default_trial_count=1, store_retry_delay=0.0)
    managers = [_manager(store, settings=settings), _manager(store, settings=settings)]
    managers[0].initialize("fp-race")
    barrier = threading.Barrier(8)
    results = []
    results_lock = threading.Lock()

    def _worker(index: int) -> None:
        barrier.wait()
        outcome = managers[index % 2].consume("fp-race", "video_analysis")
        with results_lock:
            results.append(outcome)

    threads = [threading.Thread(target=_worker, args=(index,)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for outcome in results if outcome.success) == 1
    assert store.get("fp-race").remaining == 0


def test_reset_restores_default_quota_and_lifts_block(dispatcher, recorder):
    manager = _manager(dispatcher=dispatcher)
    manager.consume("fp-reset", "batch_analysis")
    manager.block("fp-reset")

    ledger = manager.reset("fp-reset")

    assert ledger.remaining == ledger.total == 5
    assert ledger.is_blocked is False
    assert ledger.actions == []
    assert [event.reason for event in recorder.of_type(TrialReset)] == ["manual"]


def test_reset_can_preserve_action_history():
    manager = _manager()
    manager.consume("fp-keep", "video_analysis")

    ledger = manager.reset("fp-keep", preserve_actions=True)

    assert len(ledger.actions) == 1
    assert ledger.remaining == 5


def test_remaining_stays_within_bounds_over_mixed_operations():
    manager = _manager()
    sequence = ["video_analysis", "batch_analysis", "channel_analysis", "reset", "batch_analysis", "batch_analysis"]

    for step in sequence:
        if step == "reset":
            manager.reset("fp-bounds")
        else:
            manager.consume("fp-bounds", step)
        ledger = manager.get_ledger("fp-bounds")
        assert 0 <= ledger.remaining <= ledger.total


def test_expired_ledger_renews_on_next_load(clock, dispatcher, recorder):
    manager = _manager(dispatcher=dispatcher, clock=clock)
    manager.consume("fp-expire", "batch_analysis")
    assert manager.get_ledger("fp-expire").remaining == 2

    clock.advance(hours=24, seconds=1)
    trial_status = manager.status("fp-expire")

    assert trial_status.remaining == 5
    assert trial_status.recent_actions == []
    assert any(event.reason == "expired" for event in recorder.of_type(TrialReset))


def test_block_expires_after_blocked_until(clock, dispatcher, recorder):
    manager = _manager(dispatcher=dispatcher, clock=clock)
    manager.initialize("fp-temp")
    manager.block("fp-temp", duration_hours=1)
    assert manager.consume("fp-temp", "video_analysis").blocked is True

    clock.advance(hours=1, minutes=1)
    result = manager.consume("fp-temp", "video_analysis")

    assert result.success is True
    assert recorder.of_type(TrialBlockedEvent)
    assert recorder.of_type(TrialUnblocked)


def test_clear_block_publishes_unblocked(dispatcher, recorder):
    manager = _manager(dispatcher=dispatcher)
    manager.block("fp-clear")

    ledger = manager.clear_block("fp-clear")

    assert ledger.is_blocked is False
    assert ledger.blocked_until is None
    assert len(recorder.of_type(TrialUnblocked)) == 1


def test_rate_limit_from_ledger_window(clock, dispatcher, recorder):
    settings = TrialSettings(default_trial_count=10, max_actions_per_hour=3, store_retry_delay=0.0)
    manager = _manager(settings=settings, dispatcher=dispatcher, clock=clock)

    for _ in range(3):
        assert manager.consume("fp-burst", "video_analysis", ip_address="10.0.0.1").success
        clock.advance(minutes=1)
    result = manager.consume("fp-burst", "video_analysis", ip_address="10.0.0.1")

    assert result.success is False
    assert result.rate_limited is True
    assert result.retry_after >= 1
    assert manager.get_ledger("fp-burst").remaining == 7
    assert recorder.of_type(TrialRateLimited)[0].retry_after == result.retry_after


def test_status_reports_recent_actions_and_stats(clock):
    manager = _manager(settings=TrialSettings(default_trial_count=10, store_retry_delay=0.0), clock=clock)
    manager.consume("fp-status", "video_analysis")
    clock.advance(hours=2)
    manager.consume("fp-status", "comment_analysis")

    trial_status = manager.status("fp-status")

    assert trial_status.remaining == 8
    assert [action.kind for action in trial_status.recent_actions] == [
        ActionKind.VIDEO_ANALYSIS,
        ActionKind.COMMENT_ANALYSIS,
    ]
    assert trial_status.stats.total_actions == 2
    assert trial_status.stats.actions_today == 2
    assert trial_status.stats.actions_this_hour == 1
    assert trial_status.next_reset_at == clock.now - timedelta(hours=2) + timedelta(hours=24)


def test_get_ledger_never_creates():
    store = InMemoryLedgerStore()
    manager = _manager(store)

    assert manager.get_ledger("fp-ghost") is None
    assert len(store) == 0


class _FlakyStore(InMemoryLedgerStore):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    def get(self, fingerprint):
        if self.failures > 0:
            self.failures -= 1
            raise TransientStoreFailure("database hiccup")
        return super().get(fingerprint)


def test_transient_store_failures_are_retried():
    manager = _manager(_FlakyStore(failures=2))

    assert manager.consume("fp-flaky", "video_analysis").success is True


def test_store_outage_fails_closed():
    manager = _manager(_FlakyStore(failures=100))

    with pytest.raises(PermanentStoreFailure):
        manager.consume("fp-down", "video_analysis")


def test_raise_for_result_maps_denials():
    manager = _manager(settings=TrialSettings(default_trial_count=1, store_retry_delay=0.0))
    manager.consume("fp-map", "video_analysis")

    with pytest.raises(QuotaExhausted):
        raise_for_result(manager.consume("fp-map", "video_analysis"))

    manager.block("fp-map")
    with pytest.raises(TrialBlocked):
        raise_for_result(manager.consume("fp-map", "video_analysis"))


def test_raise_for_result_carries_retry_after(clock):
    settings = TrialSettings(default_trial_count=5, max_actions_per_hour=1, store_retry_delay=0.0)
    manager = _manager(settings=settings, clock=clock)
    manager.consume("fp-rl", "video_analysis")

    with pytest.raises(RateLimited) as exc:
        raise_for_result(manager.consume("fp-rl", "video_analysis"))

    assert exc.value.retry_after >= 1
    assert exc.value.to_detail()["retryAfter"] == exc.value.retry_after


def test_sql_store_round_trip_through_manager(session_factory):
    store = SqlLedgerStore(session_factory)
    manager = _manager(store, rate_limiter=TrialRateLimiter(limit=20))

    manager.consume("fp-sql", "channel_analysis", {"channelId": "c1"})
    manager.consume("fp-sql", "video_analysis")

    ledger = store.get("fp-sql")
    assert ledger.remaining == 2
    assert ledger.version == 2
    assert [action.kind for action in ledger.actions] == [ActionKind.CHANNEL_ANALYSIS, ActionKind.VIDEO_ANALYSIS]
    assert ledger.actions[0].metadata == {"channelId": "c1"}
    assert ledger.last_reset_at is not None and ledger.last_reset_at.tzinfo is not None


def test_mark_converted_records_user():
    manager = _manager()

    ledger = manager.mark_converted("fp-conv", "user-1")

    assert ledger.converted_user_id == "user-1"


def test_lock_pool_stays_fixed_across_many_fingerprints():
    manager = _manager(lock_stripes=8)

    for index in range(500):
        manager.initialize(f"fp-visitor-{index}")

    assert len(manager._locks) == 8
    assert manager._lock_for("fp-visitor-1") is manager._lock_for("fp-visitor-1")


def test_status_read_does_not_wait_for_writer_lock():
    manager = _manager()
    manager.initialize("fp-reader")
    results = []

    with manager._lock_for("fp-reader"):
        reader = threading.Thread(target=lambda: results.append(manager.status("fp-reader")))
        reader.start()
        reader.join(timeout=2)
        finished = not reader.is_alive()

    reader.join(timeout=2)
    assert finished is True
    assert results[0].remaining == 5


def test_status_creates_ledger_on_first_sight():
    store = InMemoryLedgerStore()
    manager = _manager(store)

    trial_status = manager.status("fp-new")

    assert trial_status.remaining == 5
    assert len(store) == 1


def test_quota_renewal_keeps_a_running_block(clock):
    manager = _manager(clock=clock)
    manager.consume("fp-long-block", "video_analysis")
    manager.block("fp-long-block", duration_hours=48)

    clock.advance(hours=24, seconds=1)
    ledger = manager.initialize("fp-long-block")

    assert ledger.remaining == ledger.total
    assert ledger.actions == []
    assert ledger.is_blocked is True
