import pytest

from gestor.core.backoff import BackoffConfig
from gestor.evolution.monitor import MSG_RECONNECTED, MSG_SESSION_EXPIRED, ConnectionMonitor


class _Statuses:
    def __init__(self, *items):
        self.items = list(items)

    async def __call__(self):
        item = self.items.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.mark.anyio
async def test_notifies_on_reconnect_and_expired_session():
    notes = []
    changes = []
    monitor = ConnectionMonitor(
        _Statuses(
            {"connected": True},
            {"connected": False, "session_valid": False},
            {"connected": True},
        ),
        notify=lambda level, msg: notes.append((level, msg)),
        on_connection_change=changes.append,
    )

    await monitor.check_connection()
    await monitor.check_connection()
    await monitor.check_connection()

    assert notes == [("error", MSG_SESSION_EXPIRED), ("success", MSG_RECONNECTED)]
    assert changes == [False, True]
    assert monitor.is_connected is True


@pytest.mark.anyio
async def test_failure_schedules_backoff_retry():
    monitor = ConnectionMonitor(
        _Statuses(RuntimeError("offline")),
        backoff=BackoffConfig(base_delay_ms=100000, jitter_factor=0),
    )
    assert await monitor.check_connection() is None
    assert monitor.error == "offline"

    state = monitor.backoff_state
    assert state.attempt == 1
    assert state.is_retrying is True
    monitor.stop()
    assert monitor.backoff_state.attempt == 0


@pytest.mark.anyio
async def test_only_new_critical_alerts_notify():
    notes = []
    seen = []
    alerts = _Statuses(
        {"alerts": [{"id": "a1", "severity": "critical", "message": "Sessão expirou"}]},
        {"alerts": [{"id": "a1", "severity": "critical", "message": "Sessão expirou"}, {"id": "a2", "severity": "info"}]},
    )
    monitor = ConnectionMonitor(
        _Statuses({"connected": True}),
        fetch_alerts=alerts,
        notify=lambda level, msg: notes.append(msg),
        on_alert=seen.append,
    )

    await monitor.fetch_alerts()
    await monitor.fetch_alerts()

    assert notes == ["Sessão expirou"]
    assert [a["id"] for a in seen] == ["a1"]
    assert len(monitor.alerts) == 2
