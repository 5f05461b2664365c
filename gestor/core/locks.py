from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator

from .errors import OperationLockedError

LOCK_TIMEOUT_MS = 5000


class OperationLocks:
    """Trava em memória por id de operação; travas mais velhas que o timeout são liberadas."""

    def __init__(self, *, timeout_ms: int = LOCK_TIMEOUT_MS, clock: Callable[[], float] = time.monotonic):
        self._timeout_ms = timeout_ms
        self._clock = clock
        self._locks: Dict[str, float] = {}

    def is_locked(self, key: str) -> bool:
        acquired_at = self._locks.get(key)
        if acquired_at is None:
            return False
        if (self._clock() - acquired_at) * 1000 > self._timeout_ms:
            self._locks.pop(key, None)
            return False
        return True

    def acquire(self, key: str) -> bool:
        if self.is_locked(key):
            return False
        self._locks[key] = self._clock()
        return True

    def release(self, key: str) -> None:
        self._locks.pop(key, None)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        if not self.acquire(key):
            raise OperationLockedError(key)
        try:
            yield
        finally:
            self.release(key)
