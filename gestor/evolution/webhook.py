"""
Eventos recebidos do Evolution (`{event, instance, data}`).

Atualiza o estado de conexão da instância, registra o evento e, em
`messages.upsert`, encaminha cada mensagem individual:

- enviada pela própria instância: detecção de renovação;
- começando com `/`: comando do revendedor (`process-whatsapp-command`);
- demais: chatbot (`BotDispatcher`).
"""
from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.errors import NotFoundError, ProviderRequestError, ValidationError
from ..core.observability import LogContext, Observability
from ..utils.phone_utils import normalize_jid_to_phone
from .delivery import MessageDelivery
from .settings import EvolutionSettings, load_evolution_settings

logger = logging.getLogger(__name__)

INSTANCES_TABLE = "whatsapp_seller_instances"
DEFAULT_RENEWAL_KEYWORDS = (
    "renovado",
    "renovação",
    "renovacao",
    "renewed",
    "prorrogado",
    "estendido",
    "renovou",
    "extensão",
)
RENEWAL_MIN_LENGTH = 10

_EVENT_MAP = {
    "messages_upsert": "messages.upsert",
    "connection_update": "connection.update",
    "qrcode_updated": "qrcode.updated",
    "instance_ready": "instance.ready",
    "connection_lost": "connection.lost",
    "logout": "logout",
}

_WRAPPERS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
)


def normalize_webhook_event(raw: Any) -> str:
    """`MESSAGES_UPSERT` -> `messages.upsert`; nomes com ponto passam em minúsculas."""
    event = str(raw or "").strip()
    if not event:
        return ""
    lower = event.lower()
    if "." in lower:
        return lower
    key = re.sub(r"\s+", "", lower).replace("-", "_")
    return _EVENT_MAP.get(key) or key.replace("_", ".")


def _get(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def unwrap_message(message: Any) -> Any:
    if not isinstance(message, dict):
        return message
    for wrapper in _WRAPPERS:
        inner = _get(message, wrapper, "message")
        if inner:
            return inner
    return message


def extract_message_text(msg: Any) -> str:
    nested = unwrap_message(_get(msg, "message"))
    direct = unwrap_message(msg)
    candidates = (
        _get(nested, "conversation"),
        _get(nested, "extendedTextMessage", "text"),
        _get(direct, "conversation"),
        _get(direct, "extendedTextMessage", "text"),
        _get(nested, "imageMessage", "caption"),
        _get(nested, "videoMessage", "caption"),
        _get(nested, "documentMessage", "caption"),
        _get(direct, "imageMessage", "caption"),
        _get(direct, "videoMessage", "caption"),
        _get(direct, "documentMessage", "caption"),
        _get(nested, "buttonsResponseMessage", "selectedDisplayText"),
        _get(nested, "buttonsResponseMessage", "selectedButtonId"),
        _get(nested, "listResponseMessage", "singleSelectReply", "selectedRowId"),
        _get(nested, "listResponseMessage", "title"),
        _get(nested, "templateButtonReplyMessage", "selectedDisplayText"),
        _get(nested, "templateButtonReplyMessage", "selectedId"),
        _get(direct, "buttonsResponseMessage", "selectedDisplayText"),
        _get(direct, "listResponseMessage", "singleSelectReply", "selectedRowId"),
        _get(msg, "messageBody"),
        _get(msg, "body"),
        _get(msg, "text"),
        _get(msg, "message") if isinstance(_get(msg, "message"), str) else None,
        _get(msg, "conversation"),
    )
    for value in candidates:
        if value:
            return str(value)
    return ""


def sender_phone_from_webhook(msg: Any, event_data: Any, body: Any, instance_phone: Optional[str] = None) -> str:
    """
    Telefone real de quem enviou a mensagem.

    Recebidas: `remoteJid` é o cliente. Enviadas (fromMe): `remoteJid` é o
    destinatário. Grupos: `participant`. Nunca devolve o número da própria
    instância para mensagens recebidas.
    """
    remote_jid = str(_get(msg, "key", "remoteJid") or _get(msg, "remoteJid") or "")
    is_group = "@g.us" in remote_jid
    from_me = _get(msg, "key", "fromMe") is True

    if is_group:
        candidates = [
            _get(msg, "key", "participantAlt"),
            _get(msg, "participantAlt"),
            _get(msg, "key", "participant"),
            _get(msg, "participant"),
        ]
    elif from_me:
        candidates = [_get(msg, "key", "remoteJid"), _get(msg, "remoteJid")]
    else:
        candidates = [
            _get(msg, "key", "remoteJid"),
            _get(msg, "remoteJid"),
            _get(msg, "key", "participantAlt"),
            _get(msg, "participantAlt"),
        ]
        webhook_sender = _get(event_data, "sender") or _get(body, "sender")
        if webhook_sender and isinstance(webhook_sender, str):
            sender_phone = normalize_jid_to_phone(webhook_sender)
            if sender_phone and sender_phone != instance_phone:
                candidates.append(webhook_sender)

    for candidate in candidates:
        if not candidate:
            continue
        phone = normalize_jid_to_phone(str(candidate))
        if not phone:
            continue
        if not from_me and instance_phone and phone == instance_phone:
            logger.info("webhook_sender_skipped reason=instance_phone")
            continue
        return phone
    return ""


def extract_instance_name(body: Dict[str, Any]) -> Optional[str]:
    instance = body.get("instance")
    if isinstance(instance, str) and instance:
        return instance
    for path in (
        ("instance", "instanceName"),
        ("instance", "name"),
        ("data", "instance", "instanceName"),
        ("data", "instance", "name"),
        ("data", "instance"),
        ("instanceName",),
        ("sender", "instance"),
        ("apikey", "instanceName"),
        ("server", "instanceName"),
        ("data", "instanceName"),
        ("destination", "instanceName"),
        ("source", "instance"),
    ):
        value = _get(body, *path)
        if isinstance(value, str) and value:
            return value
    return None


def extract_messages(event_data: Dict[str, Any], body: Dict[str, Any]) -> List[Dict[str, Any]]:
    # v2 manda a própria mensagem em `data` ({key, pushName, message})
    if isinstance(_get(event_data, "key"), dict):
        return [event_data]
    raw = (
        _get(event_data, "messages")
        or _get(event_data, "data", "messages")
        or _get(event_data, "message")
        or _get(event_data, "data", "message")
        or body.get("messages")
        or body.get("message")
    )
    if isinstance(raw, list):
        return [m for m in raw if isinstance(m, dict)]
    return [raw] if isinstance(raw, dict) else []


def _digits(value: Any) -> str:
    return re.sub(r"\D", "", str(value or ""))


class EvolutionWebhookHandler:
    def __init__(
        self,
        db: Any,
        *,
        dispatcher: Any = None,
        functions: Any = None,
        settings_loader: Callable[[Any], Optional[EvolutionSettings]] = load_evolution_settings,
        obs: Optional[Observability] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._db = db
        self._dispatcher = dispatcher
        self._functions = functions
        self._settings_loader = settings_loader
        self._obs = obs or Observability(logger)
        self._sleep = sleep

    # ---- instância ----

    def find_instance(self, instance_name: str) -> Optional[Dict[str, Any]]:
        for column in ("instance_name", "original_instance_name"):
            rows = (
                self._db.table(INSTANCES_TABLE)
                .select("seller_id, instance_name, is_connected, connected_phone")
                .eq(column, instance_name)
                .limit(1)
                .execute()
                .data
                or []
            )
            if rows:
                return rows[0]
        return None

    def _command_log(self, seller_id: str, command_text: str, sender_phone: str, error_message: str) -> None:
        try:
            self._db.table("command_logs").insert(
                [
                    {
                        "owner_id": seller_id,
                        "command_text": command_text,
                        "sender_phone": sender_phone,
                        "success": False,
                        "error_message": error_message,
                    }
                ]
            ).execute()
        except Exception as e:
            logger.warning("webhook_command_log_failed error=%s", e)

    def _integration_config(self, seller_id: str, columns: str) -> Dict[str, Any]:
        rows = (
            self._db.table("test_integration_config")
            .select(columns)
            .eq("seller_id", seller_id)
            .eq("is_active", True)
            .limit(1)
            .execute()
            .data
            or []
        )
        return rows[0] if rows else {}

    # ---- entrada ----

    async def handle(self, body: Dict[str, Any], *, path_instance: Optional[str] = None) -> Dict[str, Any]:
        raw_event = body.get("webhook_event") or body.get("event")
        event = normalize_webhook_event(raw_event)
        instance_name = extract_instance_name(body) or path_instance
        event_data = body.get("data") if isinstance(body.get("data"), dict) else body

        if not instance_name:
            raise ValidationError("Instance name required", details={"received_keys": list(body.keys())})

        instance = self.find_instance(instance_name)
        if instance is None:
            raise NotFoundError("Instance not found", details={"instance_name": instance_name})

        seller_id = instance["seller_id"]
        ctx = LogContext(seller_id=seller_id, provider="evolution", instance_name=instance_name)
        self._obs.info("webhook_received", ctx=ctx, webhook_event=event or "unknown")

        try:
            self._db.table("connection_logs").insert(
                [
                    {
                        "seller_id": seller_id,
                        "instance_name": instance_name,
                        "event_type": event or "unknown",
                        "event_source": "evolution_webhook",
                        "is_connected": instance.get("is_connected"),
                        "metadata": {"raw_event": raw_event, "keys": list(body.keys())},
                    }
                ]
            ).execute()
        except Exception as e:
            self._obs.warning("webhook_log_failed", ctx=ctx, error=str(e))

        was_connected = bool(instance.get("is_connected"))
        connected = was_connected
        session_valid = True
        alert_type: Optional[str] = None
        alert_message = ""
        failed_messages = 0

        if event == "connection.update":
            state = event_data.get("state") or _get(event_data, "connection", "state")
            connected = state == "open"
            if state == "close":
                alert_type, alert_message = "connection_lost", "Conexão com WhatsApp perdida"
        elif event == "qrcode.updated":
            connected = False
        elif event == "instance.ready":
            connected = True
        elif event in ("connection.lost", "logout"):
            connected = False
            session_valid = False
            alert_type, alert_message = "session_invalid", "Sessão do WhatsApp encerrada"
        elif event == "messages.upsert":
            messages = extract_messages(event_data, body)
            self._obs.info("webhook_messages", ctx=ctx, count=len(messages))
            for msg in messages:
                # falha de uma mensagem não interrompe o lote
                try:
                    await self.handle_message(msg, event_data, body, instance, ctx)
                except Exception as e:
                    failed_messages += 1
                    self._obs.exception("webhook_message_failed", ctx=ctx, error=str(e))

        now = datetime.now(timezone.utc).isoformat()
        update: Dict[str, Any] = {
            "is_connected": connected,
            "session_valid": session_valid,
            "last_heartbeat_at": now,
            "last_evolution_state": event,
            "updated_at": now,
        }
        if connected:
            update["offline_since"] = None
            update["heartbeat_failures"] = 0
        elif was_connected:
            update["offline_since"] = now
        self._db.table(INSTANCES_TABLE).update(update).eq("seller_id", seller_id).execute()

        self._db.rpc(
            "log_connection_event",
            {
                "p_seller_id": seller_id,
                "p_instance_name": instance["instance_name"],
                "p_event_type": event,
                "p_event_source": "webhook",
                "p_previous_state": "connected" if was_connected else "disconnected",
                "p_new_state": "connected" if connected else "disconnected",
                "p_is_connected": connected,
                "p_metadata": {"webhook_data": event_data},
            },
        ).execute()

        if alert_type:
            self._db.rpc(
                "create_connection_alert",
                {
                    "p_seller_id": seller_id,
                    "p_instance_name": instance["instance_name"],
                    "p_alert_type": alert_type,
                    "p_severity": "critical",
                    "p_message": alert_message,
                },
            ).execute()

        result: Dict[str, Any] = {"success": True, "processed": event}
        if failed_messages:
            result["failed_messages"] = failed_messages
        return result

    async def handle_message(
        self,
        msg: Dict[str, Any],
        event_data: Dict[str, Any],
        body: Dict[str, Any],
        instance: Dict[str, Any],
        ctx: LogContext,
    ) -> None:
        remote_jid = str(_get(msg, "key", "remoteJid") or msg.get("remoteJid") or "")
        if "@g.us" in remote_jid:
            return

        text = extract_message_text(msg)
        instance_phone = _digits(instance.get("connected_phone")) or None
        sender = sender_phone_from_webhook(msg, event_data, body, instance_phone)
        if not sender:
            self._obs.warning("webhook_sender_missing", ctx=ctx, remote_jid=remote_jid[:30])
        ctx = ctx.with_fields(phone=sender or None)

        if _get(msg, "key", "fromMe"):
            await self.detect_renewal(instance["seller_id"], sender, text)
            return

        stripped = text.lstrip()
        if stripped.startswith("/"):
            await self.handle_command(stripped.strip(), sender, instance, ctx)
            return

        if not text.strip() or not sender or self._dispatcher is None:
            return
        replies = await self._dispatcher.handle_message(
            seller_id=instance["seller_id"], phone=sender, text=text, contact_name=msg.get("pushName")
        )
        if replies:
            await self.send_replies(instance, sender, replies, ctx)

    async def send_replies(self, instance: Dict[str, Any], phone: str, replies: List[Dict[str, Any]], ctx: LogContext) -> None:
        settings = self._settings_loader(self._db)
        if settings is None:
            self._obs.error("webhook_reply_skipped", ctx=ctx, reason="evolution_not_configured")
            return
        delivery = MessageDelivery(settings.build_client(), instance["instance_name"], obs=self._obs)
        for reply in replies:
            if reply.get("type") == "delay":
                await self._sleep(float(reply.get("delay_ms") or 0) / 1000)
                continue
            content = reply.get("content")
            if not content:
                continue
            result = await delivery.send_structured(phone, str(content))
            if not result.success:
                self._obs.error("webhook_reply_failed", ctx=ctx, mode=result.mode)

    async def handle_command(self, command_text: str, sender: str, instance: Dict[str, Any], ctx: LogContext) -> None:
        seller_id = instance["seller_id"]
        if self._functions is None:
            self._command_log(seller_id, command_text, sender, "Processing error: edge functions unavailable")
            return

        config = self._integration_config(seller_id, "logs_enabled")
        logs_enabled = config.get("logs_enabled")
        try:
            result = await self._functions.call(
                "process-whatsapp-command",
                {
                    "seller_id": seller_id,
                    "command_text": command_text,
                    "sender_phone": sender,
                    "instance_name": instance["instance_name"],
                    "logs_enabled": True if logs_enabled is None else logs_enabled,
                },
            )
        except ProviderRequestError as e:
            raw = str((e.details or {}).get("body") or "")[:200]
            self._command_log(seller_id, command_text, sender, f"process-whatsapp-command HTTP {e.status_code}: {raw}")
            self._obs.error("webhook_command_failed", ctx=ctx, status=e.status_code)
            return
        except Exception as e:
            self._command_log(seller_id, command_text, sender, f"Processing error: {e}")
            raise

        if not isinstance(result, dict):
            result = {}
        reply = result.get("response") or result.get("user_message")
        if not reply:
            if result.get("not_found"):
                self._obs.info("webhook_command_not_found", ctx=ctx)
            elif result.get("error"):
                self._command_log(seller_id, command_text, sender, str(result["error"]))
            return

        instance_phone = _digits(instance.get("connected_phone"))
        if instance_phone and _digits(sender) == instance_phone:
            self._obs.error("webhook_reply_blocked", ctx=ctx, reason="instance_phone")
            self._command_log(
                seller_id,
                command_text,
                sender,
                f"BLOCKED: Would send to instance own number ({instance_phone}). Check webhook payload extraction.",
            )
            return

        settings = self._settings_loader(self._db)
        if settings is None:
            self._command_log(seller_id, command_text, sender, "Global WhatsApp config not found or inactive")
            return

        client = settings.build_client()
        try:
            used = await client.send_text_to_variants(instance["instance_name"], sender, str(reply))
        except ProviderRequestError as e:
            self._command_log(seller_id, command_text, sender, f"Failed to send response: HTTP {e.status_code}")
            return
        if used is None:
            self._command_log(seller_id, command_text, sender, "Failed to send response - all phone formats failed")

    async def detect_renewal(self, seller_id: str, client_phone: str, message_text: str) -> None:
        """Mensagem enviada pela API do servidor com palavra de renovação sincroniza o cliente."""
        if not message_text or len(message_text) < RENEWAL_MIN_LENGTH:
            return
        config = self._integration_config(seller_id, "detect_renewal_enabled, detect_renewal_keywords")
        if not config.get("detect_renewal_enabled"):
            return
        keywords = config.get("detect_renewal_keywords")
        if not isinstance(keywords, list) or not keywords:
            keywords = list(DEFAULT_RENEWAL_KEYWORDS)

        lower = message_text.lower()
        if not any(str(k).lower() in lower for k in keywords):
            return
        if self._functions is None:
            return
        logger.info("webhook_renewal_detected seller_id=%s", seller_id)
        try:
            result = await self._functions.call(
                "sync-client-renewal",
                {
                    "seller_id": seller_id,
                    "client_phone": client_phone,
                    "message_content": message_text,
                    "source": "message_detection",
                },
            )
            logger.info("webhook_renewal_synced seller_id=%s result=%s", seller_id, result)
        except ProviderRequestError as e:
            logger.error("webhook_renewal_sync_failed seller_id=%s status=%s", seller_id, e.status_code)
