import pytest

from services.store_retry import call_with_backoff
from services.trial_errors import PermanentStoreFailure, TransientStoreFailure


def _flaky(failures):
    state = {"calls": 0}

    def _operation():
        state["calls"] += 1
        if state["calls"] <= failures:
            raise TransientStoreFailure("timeout")
        return "ok"

    return _operation, state


def test_retries_with_exponential_delays():
    operation, state = _flaky(2)
    delays = []

    result = call_with_backoff(operation, description="ledger read", base_delay=0.5, sleep=delays.append)

    assert result == "ok"
    assert state["calls"] == 3
    assert delays == [0.5, 1.0]


def test_exhausted_retries_raise_permanent_failure():
    operation, state = _flaky(10)

    with pytest.raises(PermanentStoreFailure) as exc:
        call_with_backoff(operation, description="ledger write", max_attempts=3, sleep=lambda _delay: None)

    assert state["calls"] == 3
    assert isinstance(exc.value.__cause__, TransientStoreFailure)


def test_non_retryable_errors_propagate_immediately():
    calls = []

    def _operation():
        calls.append(1)
        raise KeyError("bug")

    with pytest.raises(KeyError):
        call_with_backoff(_operation, description="ledger read", sleep=lambda _delay: None)

    assert len(calls) == 1
