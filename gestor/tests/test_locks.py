import pytest

from gestor.core.errors import OperationLockedError
from gestor.core.locks import OperationLocks


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_acquire_blocks_second_holder_until_release():
    locks = OperationLocks()
    assert locks.acquire("client:1") is True
    assert locks.acquire("client:1") is False
    locks.release("client:1")
    assert locks.acquire("client:1") is True


def test_stale_lock_expires_after_timeout():
    clock = _Clock()
    locks = OperationLocks(timeout_ms=5000, clock=clock)
    locks.acquire("op")
    clock.now = 4.0
    assert locks.is_locked("op") is True
    clock.now = 5.5
    assert locks.is_locked("op") is False
    assert locks.acquire("op") is True


def test_hold_releases_on_error():
    locks = OperationLocks()
    with pytest.raises(RuntimeError):
        with locks.hold("op"):
            raise RuntimeError("boom")
    assert locks.is_locked("op") is False


def test_hold_raises_when_already_locked():
    locks = OperationLocks()
    locks.acquire("op")
    with pytest.raises(OperationLockedError):
        with locks.hold("op"):
            pass
