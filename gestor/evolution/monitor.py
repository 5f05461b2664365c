"""
Monitor periódico da conexão WhatsApp de um revendedor.

Consulta o heartbeat a cada intervalo; falhas entram em backoff exponencial
e mudanças de estado geram notificações em português.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.backoff import BackoffConfig, BackoffManager, BackoffState

logger = logging.getLogger(__name__)

MONITOR_BACKOFF = BackoffConfig(
    base_delay_ms=2000,
    max_delay_ms=120000,
    max_attempts=8,
    jitter_factor=0.4,
    backoff_factor=1.8,
)
DEFAULT_HEARTBEAT_INTERVAL_S = 60.0

MSG_RECONNECTED = "WhatsApp reconectado automaticamente!"
MSG_SESSION_EXPIRED = "Sessão expirada. Escaneie o QR Code novamente."

StatusFetcher = Callable[[], Awaitable[Dict[str, Any]]]
AlertsFetcher = Callable[[], Awaitable[Dict[str, Any]]]
Notifier = Callable[[str, str], None]


def _log_notifier(level: str, message: str) -> None:
    logger.info(f"[ConnectionMonitor] notify level={level} message={message}")


class ConnectionMonitor:
    def __init__(
        self,
        fetch_status: StatusFetcher,
        *,
        fetch_alerts: Optional[AlertsFetcher] = None,
        notify: Notifier = _log_notifier,
        on_connection_change: Optional[Callable[[bool], None]] = None,
        on_alert: Optional[Callable[[Dict[str, Any]], None]] = None,
        backoff: Optional[BackoffConfig] = None,
        heartbeat_interval_s: float = DEFAULT_HEARTBEAT_INTERVAL_S,
    ):
        self._fetch_status = fetch_status
        self._fetch_alerts = fetch_alerts
        self._notify = notify
        self._on_connection_change = on_connection_change
        self._on_alert = on_alert
        self._backoff = BackoffManager(backoff or MONITOR_BACKOFF)
        self._interval_s = heartbeat_interval_s

        self.status: Optional[Dict[str, Any]] = None
        self.alerts: List[Dict[str, Any]] = []
        self.error: Optional[str] = None
        self._previous_connected: Optional[bool] = None
        self._in_flight = False
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def backoff_state(self) -> BackoffState:
        return self._backoff.get_state()

    @property
    def is_connected(self) -> bool:
        return bool((self.status or {}).get("connected"))

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def check_connection(self) -> Optional[Dict[str, Any]]:
        if self._in_flight:
            logger.info("[ConnectionMonitor] Request already in flight, skipping")
            return None
        self._in_flight = True
        self.error = None
        try:
            data = await self._fetch_status()
        except Exception as e:
            logger.error(f"[ConnectionMonitor] Check error: {e}")
            self.error = str(e)
            self._backoff.record_failure()
            if self._backoff.should_retry():
                delay = self._backoff.schedule_retry(self.check_connection)
                if delay:
                    state = self._backoff.get_state()
                    logger.info(
                        f"[ConnectionMonitor] Backoff: next retry in {delay}ms "
                        f"(attempt {state.attempt}/{self._backoff.config.max_attempts})"
                    )
            else:
                logger.info("[ConnectionMonitor] Max backoff attempts reached, waiting for next interval")
            return None
        finally:
            self._in_flight = False

        self.status = data
        self._backoff.record_success()
        connected = bool(data.get("connected"))
        if self._previous_connected is not None and self._previous_connected != connected:
            if self._on_connection_change:
                self._on_connection_change(connected)
            if connected:
                self._notify("success", MSG_RECONNECTED)
            elif not data.get("session_valid", True):
                self._notify("error", MSG_SESSION_EXPIRED)
        self._previous_connected = connected
        return data

    async def fetch_alerts(self) -> List[Dict[str, Any]]:
        if self._fetch_alerts is None:
            return self.alerts
        try:
            data = await self._fetch_alerts()
        except Exception as e:
            logger.error(f"Error fetching alerts: {e}")
            return self.alerts
        new_alerts = list(data.get("alerts") or [])
        known = {a.get("id") for a in self.alerts}
        for alert in new_alerts:
            if alert.get("severity") == "critical" and alert.get("id") not in known:
                if self._on_alert:
                    self._on_alert(alert)
                self._notify("error", str(alert.get("message") or ""))
        self.alerts = new_alerts
        return new_alerts

    def start(self) -> None:
        if self.is_running:
            return
        self._loop_task = asyncio.get_running_loop().create_task(self._run())
        logger.info(f"Connection monitoring started (interval: {int(self._interval_s * 1000)}ms)")

    async def _run(self) -> None:
        await self.check_connection()
        await self.fetch_alerts()
        while True:
            await asyncio.sleep(self._interval_s)
            await self.check_connection()

    def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            self._loop_task = None
            logger.info("Connection monitoring stopped")
        self._backoff.cancel_retry()
        self._backoff.reset()

    def reset_backoff(self) -> None:
        self._backoff.reset()
