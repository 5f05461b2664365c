import random

import pytest

from gestor.core.backoff import (
    MIN_DELAY_MS,
    BackoffConfig,
    BackoffManager,
    calculate_backoff_delay,
    execute_with_backoff,
)

FAST = BackoffConfig(base_delay_ms=1, max_attempts=3, jitter_factor=0)


def test_delay_grows_exponentially_without_jitter():
    cfg = BackoffConfig(base_delay_ms=1000, max_delay_ms=60000, jitter_factor=0, backoff_factor=2)
    assert [calculate_backoff_delay(a, cfg) for a in range(4)] == [1000, 2000, 4000, 8000]


def test_delay_is_capped_and_floored():
    capped = BackoffConfig(base_delay_ms=1000, max_delay_ms=5000, jitter_factor=0)
    assert calculate_backoff_delay(10, capped) == 5000

    tiny = BackoffConfig(base_delay_ms=10, jitter_factor=0)
    assert calculate_backoff_delay(0, tiny) == MIN_DELAY_MS


def test_jitter_stays_within_range():
    cfg = BackoffConfig(base_delay_ms=1000, jitter_factor=0.3)
    rng = random.Random(42)
    for _ in range(50):
        assert 700 <= calculate_backoff_delay(0, cfg, rng=rng) <= 1300


def test_manager_tracks_failures_and_success():
    manager = BackoffManager(BackoffConfig(max_attempts=2), clock=lambda: 100.0)
    manager.record_failure()
    manager.record_failure()

    state = manager.get_state()
    assert state.attempt == 2
    assert state.consecutive_failures == 2
    assert state.last_attempt_at == 100.0
    assert manager.should_retry() is False
    assert manager.next_delay_ms() == 0

    manager.record_success()
    state = manager.get_state()
    assert state.attempt == 0
    assert state.consecutive_failures == 0
    assert state.consecutive_successes == 1


def test_get_state_returns_a_copy():
    manager = BackoffManager()
    snapshot = manager.get_state()
    snapshot.attempt = 99
    assert manager.get_state().attempt == 0


@pytest.mark.anyio
async def test_schedule_retry_ignores_second_request_while_pending():
    manager = BackoffManager(BackoffConfig(base_delay_ms=100000, jitter_factor=0))
    first = manager.schedule_retry(lambda: None)
    second = manager.schedule_retry(lambda: None)

    assert first == 100000
    assert second is None
    assert manager.get_state().is_retrying is True
    assert manager.time_until_retry_ms() is not None

    manager.cancel_retry()
    assert manager.get_state().is_retrying is False
    assert manager.time_until_retry_ms() is None


@pytest.mark.anyio
async def test_schedule_retry_refuses_after_max_attempts():
    manager = BackoffManager(BackoffConfig(max_attempts=1))
    manager.record_failure()
    assert manager.schedule_retry(lambda: None) is None


@pytest.mark.anyio
async def test_execute_with_backoff_retries_until_success():
    attempts = []
    retries = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise RuntimeError("falhou")
        return "ok"

    result = await execute_with_backoff(flaky, FAST, lambda n, d: retries.append(n))
    assert result == "ok"
    assert retries == [1, 2]


@pytest.mark.anyio
async def test_execute_with_backoff_raises_last_error():
    async def always_fails():
        raise ValueError("sempre")

    with pytest.raises(ValueError, match="sempre"):
        await execute_with_backoff(always_fails, FAST)
