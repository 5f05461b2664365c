"""
Backoff exponencial com jitter.

- delay = base * fator^tentativa, limitado ao máximo
- jitter aleatório de +/- jitter_factor sobre o delay
- nunca abaixo de 100ms
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_DELAY_MS = 100


@dataclass(frozen=True)
class BackoffConfig:
    base_delay_ms: float = 1000
    max_delay_ms: float = 60000
    max_attempts: int = 5
    jitter_factor: float = 0.3
    backoff_factor: float = 2


@dataclass
class BackoffState:
    attempt: int = 0
    last_attempt_at: Optional[float] = None
    next_retry_at: Optional[float] = None
    is_retrying: bool = False
    consecutive_failures: int = 0
    consecutive_successes: int = 0


def calculate_backoff_delay(
    attempt: int,
    config: Optional[BackoffConfig] = None,
    *,
    rng: Optional[random.Random] = None,
) -> int:
    cfg = config or BackoffConfig()
    exponential = cfg.base_delay_ms * (cfg.backoff_factor ** attempt)
    capped = min(exponential, cfg.max_delay_ms)
    jitter_range = capped * cfg.jitter_factor
    jitter = ((rng or random).random() * 2 - 1) * jitter_range
    return max(MIN_DELAY_MS, round(capped + jitter))


class BackoffManager:
    """Rastreia tentativas e agenda no máximo um retry por vez."""

    def __init__(
        self,
        config: Optional[BackoffConfig] = None,
        *,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config or BackoffConfig()
        self._rng = rng
        self._clock = clock
        self._state = BackoffState()
        self._task: Optional[asyncio.Task] = None

    @property
    def config(self) -> BackoffConfig:
        return self._config

    def get_state(self) -> BackoffState:
        return replace(self._state)

    def record_success(self) -> None:
        self._state = replace(
            self._state,
            attempt=0,
            consecutive_failures=0,
            consecutive_successes=self._state.consecutive_successes + 1,
            is_retrying=False,
            next_retry_at=None,
        )

    def record_failure(self) -> None:
        self._state = replace(
            self._state,
            attempt=self._state.attempt + 1,
            last_attempt_at=self._clock(),
            consecutive_failures=self._state.consecutive_failures + 1,
            consecutive_successes=0,
        )

    def should_retry(self) -> bool:
        return self._state.attempt < self._config.max_attempts

    def next_delay_ms(self) -> int:
        if self._state.attempt >= self._config.max_attempts:
            return 0
        return calculate_backoff_delay(self._state.attempt, self._config, rng=self._rng)

    def schedule_retry(self, callback: Callable[[], Any]) -> Optional[int]:
        """Agenda callback no loop atual. Retorna o delay em ms ou None se ignorado."""
        if self._state.is_retrying:
            logger.info("[Backoff] Retry já em andamento, ignorando")
            return None
        if self._state.attempt >= self._config.max_attempts:
            logger.info("[Backoff] Máximo de tentativas atingido")
            return None

        delay_ms = calculate_backoff_delay(self._state.attempt, self._config, rng=self._rng)
        self._state = replace(self._state, is_retrying=True, next_retry_at=self._clock() + delay_ms / 1000)
        logger.info(
            f"[Backoff] Retry agendado em {delay_ms}ms (tentativa {self._state.attempt + 1}/{self._config.max_attempts})"
        )
        self._task = asyncio.get_running_loop().create_task(self._fire(delay_ms, callback))
        return delay_ms

    async def _fire(self, delay_ms: int, callback: Callable[[], Any]) -> None:
        await asyncio.sleep(delay_ms / 1000)
        self._state = replace(self._state, is_retrying=False)
        result = callback()
        if asyncio.iscoroutine(result):
            await result

    def cancel_retry(self) -> None:
        self._cancel_task()
        self._state = replace(self._state, is_retrying=False, next_retry_at=None)

    def reset(self) -> None:
        self._cancel_task()
        self._state = BackoffState()

    def time_until_retry_ms(self) -> Optional[int]:
        if self._state.next_retry_at is None:
            return None
        return max(0, round((self._state.next_retry_at - self._clock()) * 1000))

    def _cancel_task(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None


async def execute_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: Optional[BackoffConfig] = None,
    on_retry: Optional[Callable[[int, int], None]] = None,
    *,
    rng: Optional[random.Random] = None,
) -> T:
    cfg = config or BackoffConfig()
    last_error: Optional[BaseException] = None
    for attempt in range(cfg.max_attempts):
        try:
            return await fn()
        except Exception as e:
            last_error = e
            if attempt < cfg.max_attempts - 1:
                delay_ms = calculate_backoff_delay(attempt, cfg, rng=rng)
                if on_retry:
                    on_retry(attempt + 1, delay_ms)
                await asyncio.sleep(delay_ms / 1000)
    raise last_error or RuntimeError("Nenhuma tentativa executada")
