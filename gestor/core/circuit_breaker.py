from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"

TRANSIENT_MARKERS = ("timeout", "network", "500", "502", "503", "504")


def is_transient_send_error(message: str) -> bool:
    s = str(message or "")
    return any(m in s for m in TRANSIENT_MARKERS)


@dataclass
class CircuitState:
    state: str = CLOSED
    failure_count: int = 0
    success_count: int = 0
    failure_threshold: int = 5
    success_threshold: int = 3
    reset_timeout_ms: int = 30000
    opened_at: Optional[float] = None
    last_failure_at: Optional[float] = None
    last_success_at: Optional[float] = None
    last_error: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "CircuitState":
        return cls(
            state=str(row.get("state") or CLOSED),
            failure_count=int(row.get("failure_count") or 0),
            success_count=int(row.get("success_count") or 0),
            failure_threshold=int(row.get("failure_threshold") or 5),
            success_threshold=int(row.get("success_threshold") or 3),
            reset_timeout_ms=int(row.get("reset_timeout_ms") or 30000),
            opened_at=_parse_ts(row.get("opened_at")),
            last_error=row.get("last_error"),
        )


class CircuitBreaker:
    def __init__(self, state: Optional[CircuitState] = None, *, clock: Callable[[], float] = time.time):
        self.state = state or CircuitState()
        self._clock = clock

    @property
    def is_open(self) -> bool:
        return self.state.state == OPEN

    def should_try_half_open(self) -> bool:
        if self.state.state != OPEN or self.state.opened_at is None:
            return False
        return (self._clock() - self.state.opened_at) * 1000 >= self.state.reset_timeout_ms

    def allow_request(self) -> bool:
        """Fechado ou meio-aberto libera; aberto só libera após o reset_timeout (vira half_open)."""
        if self.state.state != OPEN:
            return True
        if self.should_try_half_open():
            self.state.state = HALF_OPEN
            self.state.success_count = 0
            logger.info("[CircuitBreaker] Transitioning to HALF_OPEN (testing)")
            return True
        return False

    def record_success(self) -> None:
        s = self.state
        s.success_count += 1
        s.last_success_at = self._clock()
        s.failure_count = 0
        if s.state == HALF_OPEN and s.success_count >= s.success_threshold:
            s.state = CLOSED
            s.opened_at = None
            logger.info("[CircuitBreaker] Transitioning to CLOSED (recovered)")

    def record_failure(self, error: str) -> None:
        s = self.state
        s.failure_count += 1
        s.last_failure_at = self._clock()
        s.last_error = error
        s.success_count = 0
        if s.state == CLOSED and s.failure_count >= s.failure_threshold:
            s.state = OPEN
            s.opened_at = self._clock()
            logger.warning("[CircuitBreaker] Transitioning to OPEN (failures exceeded threshold)")
        elif s.state == HALF_OPEN:
            s.state = OPEN
            s.opened_at = self._clock()
            logger.warning("[CircuitBreaker] Transitioning back to OPEN (test failed)")

    def to_row(self) -> dict:
        s = self.state
        return {
            "state": s.state,
            "failure_count": s.failure_count,
            "success_count": s.success_count,
            "last_error": s.last_error,
            "opened_at": _format_ts(s.opened_at),
        }


def _parse_ts(value: Any) -> Optional[float]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def _format_ts(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()
