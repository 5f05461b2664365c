"""
Heartbeat das instâncias WhatsApp dos revendedores.

Verifica o estado na Evolution, tenta reconectar sem QR (restart) e mantém
`whatsapp_seller_instances`, `connection_alerts` e o log de eventos em dia.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.errors import GestorError
from ..core.observability import LogContext, Observability
from .client import EvolutionClient

logger = logging.getLogger(__name__)

# atrasos progressivos: 30s, 1min, 3min, 5min, 10min
RETRY_DELAYS_MS = (30000, 60000, 180000, 300000, 600000)
CHECK_TIMEOUT_S = 10.0
OFFLINE_ALERT_MINUTES = 5
SESSION_FAILURE_LIMIT = 3
PAUSE_BETWEEN_INSTANCES_S = 0.5

Sleep = Callable[[float], Awaitable[Any]]


@dataclass
class ConnectionCheck:
    connected: bool
    state: str = "unknown"
    error: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class ReconnectResult:
    success: bool
    needs_qr: bool = False
    error: Optional[str] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_iso(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


async def check_evolution_connection(
    client: EvolutionClient,
    instance_name: str,
    *,
    retries: int = 2,
    sleep: Sleep = asyncio.sleep,
) -> ConnectionCheck:
    for attempt in range(retries + 1):
        try:
            result = await client.fetch_instances(instance_name, timeout_s=CHECK_TIMEOUT_S)
        except GestorError as e:
            if attempt < retries:
                await sleep(1.0 * (attempt + 1))
                continue
            status = (e.details or {}).get("status_code")
            error = f"API error: {status}" if status else str(e)
            return ConnectionCheck(connected=False, state="error", error=error)

        data = result[0] if isinstance(result, list) and result else (result if isinstance(result, dict) else None)
        if not data:
            return ConnectionCheck(connected=False, state="not_found", error="Instance not found")

        instance = data.get("instance") if isinstance(data.get("instance"), dict) else {}
        state = str(data.get("connectionStatus") or instance.get("state") or "unknown")
        owner = data.get("ownerJid") or data.get("owner") or instance.get("owner")
        phone = str(owner).split("@", 1)[0] if owner else None
        logger.info(f"[checkEvolutionConnection] Instance: {instance_name}, State: {state}, Phone: {phone or 'not available'}")
        return ConnectionCheck(connected=state == "open", state=state, phone=phone)
    return ConnectionCheck(connected=False, state="error", error="Max retries exceeded")


async def attempt_reconnect(client: EvolutionClient, instance_name: str, *, sleep: Sleep = asyncio.sleep) -> ReconnectResult:
    """Restart sem QR; se não voltar, um QR no /connect indica sessão inválida."""
    try:
        restarted = True
        try:
            await client.restart(instance_name)
        except GestorError as e:
            restarted = False
            logger.info(f"[reconnect] restart failed for {instance_name}: {e}")

        if restarted:
            await sleep(3.0)
            check = await check_evolution_connection(client, instance_name, sleep=sleep)
            if check.connected:
                return ReconnectResult(success=True)

        try:
            result = await client.connect(instance_name)
        except GestorError:
            result = None
        if isinstance(result, dict) and (result.get("base64") or result.get("code") or result.get("qrcode")):
            return ReconnectResult(success=False, needs_qr=True)
        return ReconnectResult(success=False, error="Reconnection failed")
    except Exception as e:
        return ReconnectResult(success=False, error=str(e))


class HeartbeatService:
    def __init__(
        self,
        db: Any,
        client: EvolutionClient,
        *,
        obs: Optional[Observability] = None,
        sleep: Sleep = asyncio.sleep,
        now: Callable[[], datetime] = _now,
    ):
        self._db = db
        self._client = client
        self._obs = obs or Observability(logger)
        self._sleep = sleep
        self._now = now

    # ---- helpers de banco ----

    def _get_instance(self, seller_id: str) -> Optional[Dict[str, Any]]:
        rows = self._db.table("whatsapp_seller_instances").select("*").eq("seller_id", seller_id).limit(1).execute().data or []
        return rows[0] if rows else None

    def _update_instance(self, column: str, value: str, data: Dict[str, Any]) -> None:
        self._db.table("whatsapp_seller_instances").update(data).eq(column, value).execute()

    def log_connection_event(
        self,
        *,
        seller_id: str,
        instance_name: str,
        event_type: str,
        event_source: str,
        previous_state: str,
        new_state: str,
        is_connected: bool,
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        params: Dict[str, Any] = {
            "p_seller_id": seller_id,
            "p_instance_name": instance_name,
            "p_event_type": event_type,
            "p_event_source": event_source,
            "p_previous_state": previous_state,
            "p_new_state": new_state,
            "p_is_connected": is_connected,
        }
        if error_message is not None:
            params["p_error_message"] = error_message
        if metadata is not None:
            params["p_metadata"] = metadata
        try:
            self._db.rpc("log_connection_event", params).execute()
        except Exception as e:
            self._obs.warning("heartbeat.log_event_failed", ctx=LogContext(seller_id=seller_id), error=str(e))

    def create_alert(self, *, seller_id: str, instance_name: str, alert_type: str, message: str) -> None:
        try:
            self._db.rpc(
                "create_connection_alert",
                {
                    "p_seller_id": seller_id,
                    "p_instance_name": instance_name,
                    "p_alert_type": alert_type,
                    "p_severity": "critical",
                    "p_message": message,
                },
            ).execute()
        except Exception as e:
            self._obs.warning("heartbeat.create_alert_failed", ctx=LogContext(seller_id=seller_id), error=str(e))

    # ---- ações ----

    async def check_single(self, seller_id: str) -> Dict[str, Any]:
        instance = self._get_instance(seller_id)
        if not instance or not instance.get("instance_name"):
            return {"configured": False, "connected": False}

        name = instance["instance_name"]
        check = await check_evolution_connection(self._client, name, sleep=self._sleep)
        failures = int(instance.get("heartbeat_failures") or 0)
        now_iso = self._now().isoformat()
        session_valid = check.connected or failures < SESSION_FAILURE_LIMIT

        update: Dict[str, Any] = {
            "is_connected": check.connected,
            "last_heartbeat_at": now_iso,
            "last_evolution_state": check.state,
            "heartbeat_failures": 0 if check.connected else failures + 1,
            "offline_since": None if check.connected else (instance.get("offline_since") or now_iso),
            "session_valid": session_valid,
            "updated_at": now_iso,
        }
        if check.phone:
            update["connected_phone"] = check.phone
        self._update_instance("seller_id", seller_id, update)

        if bool(instance.get("is_connected")) != check.connected:
            self.log_connection_event(
                seller_id=seller_id,
                instance_name=name,
                event_type="connected" if check.connected else "disconnected",
                event_source="heartbeat",
                previous_state="connected" if instance.get("is_connected") else "disconnected",
                new_state="connected" if check.connected else "disconnected",
                is_connected=check.connected,
                error_message=check.error,
                metadata={"evolution_state": check.state, "phone": check.phone},
            )

        return {
            "configured": True,
            "connected": check.connected,
            "state": check.state,
            "instance_name": name,
            "last_heartbeat": now_iso,
            "session_valid": session_valid,
            "connected_phone": check.phone or instance.get("connected_phone"),
        }

    async def check_all(self) -> Dict[str, Any]:
        instances = self._db.table("whatsapp_seller_instances").select("*").eq("instance_blocked", False).execute().data or []
        if not instances:
            return {"message": "No instances to check", "checked": 0}

        results = {"checked": 0, "connected": 0, "disconnected": 0, "errors": 0, "reconnected": 0, "needs_qr": 0}
        for instance in instances:
            name = instance.get("instance_name")
            if not name:
                continue
            results["checked"] += 1
            try:
                await self._check_one(instance, results)
            except Exception as e:
                results["errors"] += 1
                self._obs.exception(
                    "heartbeat.check_failed",
                    ctx=LogContext(seller_id=instance.get("seller_id"), instance_name=name),
                    error=str(e),
                )
            await self._sleep(PAUSE_BETWEEN_INSTANCES_S)

        logger.info(f"Heartbeat batch completed: {results}")
        return {"success": True, "results": results, "timestamp": self._now().isoformat()}

    async def _check_one(self, instance: Dict[str, Any], results: Dict[str, int]) -> None:
        name = instance["instance_name"]
        seller_id = instance.get("seller_id")
        now = self._now()
        now_iso = now.isoformat()
        check = await check_evolution_connection(self._client, name, sleep=self._sleep)

        if check.connected:
            results["connected"] += 1
            self._update_instance(
                "id",
                instance["id"],
                {
                    "is_connected": True,
                    "last_heartbeat_at": now_iso,
                    "last_evolution_state": check.state,
                    "heartbeat_failures": 0,
                    "reconnect_attempts": 0,
                    "offline_since": None,
                    "session_valid": True,
                    "updated_at": now_iso,
                },
            )
            (
                self._db.table("connection_alerts")
                .update({"is_resolved": True, "resolved_at": now_iso})
                .eq("seller_id", seller_id)
                .eq("is_resolved", False)
                .execute()
            )
            return

        results["disconnected"] += 1
        failures = int(instance.get("heartbeat_failures") or 0) + 1
        reconnect_attempts = int(instance.get("reconnect_attempts") or 0)

        if reconnect_attempts < len(RETRY_DELAYS_MS):
            reconnect = await attempt_reconnect(self._client, name, sleep=self._sleep)
            if reconnect.success:
                results["reconnected"] += 1
                self._update_instance(
                    "id",
                    instance["id"],
                    {
                        "is_connected": True,
                        "last_heartbeat_at": now_iso,
                        "heartbeat_failures": 0,
                        "reconnect_attempts": 0,
                        "last_reconnect_attempt_at": now_iso,
                        "offline_since": None,
                        "session_valid": True,
                        "updated_at": now_iso,
                    },
                )
                self.log_connection_event(
                    seller_id=seller_id,
                    instance_name=name,
                    event_type="auto_reconnect_success",
                    event_source="heartbeat",
                    previous_state="disconnected",
                    new_state="connected",
                    is_connected=True,
                    metadata={"attempt": reconnect_attempts + 1},
                )
                return
            if reconnect.needs_qr:
                results["needs_qr"] += 1
                self._update_instance(
                    "id",
                    instance["id"],
                    {
                        "is_connected": False,
                        "session_valid": False,
                        "last_heartbeat_at": now_iso,
                        "reconnect_attempts": reconnect_attempts + 1,
                        "last_reconnect_attempt_at": now_iso,
                        "updated_at": now_iso,
                    },
                )
                self.create_alert(
                    seller_id=seller_id,
                    instance_name=name,
                    alert_type="session_invalid",
                    message="Sessão do WhatsApp expirou. É necessário escanear o QR Code novamente.",
                )
                return

        self._update_instance(
            "id",
            instance["id"],
            {
                "is_connected": False,
                "last_heartbeat_at": now_iso,
                "last_evolution_state": check.state,
                "heartbeat_failures": failures,
                "reconnect_attempts": reconnect_attempts + 1,
                "last_reconnect_attempt_at": now_iso,
                "offline_since": instance.get("offline_since") or now_iso,
                "session_valid": failures < SESSION_FAILURE_LIMIT,
                "updated_at": now_iso,
            },
        )

        offline_since = _parse_iso(instance.get("offline_since"))
        if offline_since:
            minutes = (now - offline_since).total_seconds() / 60
            if minutes > OFFLINE_ALERT_MINUTES:
                self.create_alert(
                    seller_id=seller_id,
                    instance_name=name,
                    alert_type="offline_too_long",
                    message=f"WhatsApp offline há {round(minutes)} minutos. Verifique sua conexão.",
                )

    async def reconnect(self, seller_id: str) -> Dict[str, Any]:
        instance = self._get_instance(seller_id)
        if not instance or not instance.get("instance_name"):
            return {"success": False, "error": "Instance not found"}

        name = instance["instance_name"]
        result = await attempt_reconnect(self._client, name, sleep=self._sleep)
        now_iso = self._now().isoformat()

        if result.success:
            self._update_instance(
                "seller_id",
                seller_id,
                {
                    "is_connected": True,
                    "last_heartbeat_at": now_iso,
                    "heartbeat_failures": 0,
                    "reconnect_attempts": 0,
                    "offline_since": None,
                    "session_valid": True,
                    "connection_source": "manual_reconnect",
                    "updated_at": now_iso,
                },
            )
            self.log_connection_event(
                seller_id=seller_id,
                instance_name=name,
                event_type="manual_reconnect_success",
                event_source="frontend",
                previous_state="disconnected",
                new_state="connected",
                is_connected=True,
            )
            return {"success": True, "connected": True, "needsQR": False}

        self._update_instance(
            "seller_id",
            seller_id,
            {
                "session_valid": not result.needs_qr,
                "last_reconnect_attempt_at": now_iso,
                "reconnect_attempts": int(instance.get("reconnect_attempts") or 0) + 1,
                "updated_at": now_iso,
            },
        )
        self.log_connection_event(
            seller_id=seller_id,
            instance_name=name,
            event_type="manual_reconnect_failed",
            event_source="frontend",
            previous_state="disconnected",
            new_state="disconnected",
            is_connected=False,
            error_message=result.error or ("Needs new QR code" if result.needs_qr else "Unknown error"),
        )
        return {"success": False, "connected": False, "needsQR": result.needs_qr, "error": result.error}

    def get_alerts(self, seller_id: str) -> Dict[str, List[Dict[str, Any]]]:
        alerts = (
            self._db.table("connection_alerts")
            .select("*")
            .eq("seller_id", seller_id)
            .eq("is_resolved", False)
            .order("created_at", desc=True)
            .execute()
            .data
        )
        return {"alerts": alerts or []}

    def cleanup(self) -> Dict[str, Any]:
        result = self._db.rpc("cleanup_old_connection_logs", {}).execute()
        return {"success": True, "deleted": result.data}


def ping(now: Callable[[], datetime] = _now) -> Dict[str, str]:
    return {"status": "ok", "service": "connection-heartbeat", "timestamp": now().isoformat()}
