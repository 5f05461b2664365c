"""
Envio protegido por circuit breaker com fila de mensagens.

Com o circuito aberto as mensagens vão para `evolution_message_queue` e são
reenviadas depois, em ordem de prioridade.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.circuit_breaker import OPEN, CircuitBreaker, CircuitState, is_transient_send_error

logger = logging.getLogger(__name__)

QUEUE_TABLE = "evolution_message_queue"
BREAKER_TABLE = "evolution_circuit_breaker"
PROCESS_BATCH = 10
RETRY_AFTER_S = 60
DEFAULT_MAX_RETRIES = 3
DELAY_BETWEEN_MESSAGES_S = 2.0

SendFn = Callable[[str, str], Awaitable[Any]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class QueuedSender:
    def __init__(
        self,
        db: Any,
        seller_id: str,
        send: SendFn,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        now: Callable[[], datetime] = _now,
    ):
        self._db = db
        self._seller_id = seller_id
        self._send = send
        self._sleep = sleep
        self._now = now
        self._breaker: Optional[CircuitBreaker] = None
        self._processing = False

    # ---- estado do circuito ----

    def load_breaker(self) -> CircuitBreaker:
        rows = self._db.table(BREAKER_TABLE).select("*").eq("seller_id", self._seller_id).limit(1).execute().data or []
        if not rows:
            rows = self._db.table(BREAKER_TABLE).insert([{"seller_id": self._seller_id}]).execute().data or []
        if not rows:
            raise RuntimeError("Falha ao criar circuit breaker")
        self._breaker = CircuitBreaker(CircuitState.from_row(rows[0]))
        return self._breaker

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker or self.load_breaker()

    def _persist(self) -> None:
        self._db.table(BREAKER_TABLE).update(self.breaker.to_row()).eq("seller_id", self._seller_id).execute()

    def reset_circuit(self) -> None:
        self._breaker = CircuitBreaker()
        self._persist()

    # ---- fila ----

    def add_to_queue(
        self,
        phone: str,
        message: str,
        *,
        message_type: str = "manual",
        client_id: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        priority: int = 0,
    ) -> Optional[str]:
        row = {
            "seller_id": self._seller_id,
            "phone": phone,
            "message": message,
            "message_type": message_type,
            "client_id": client_id,
            "config": config or {},
            "priority": priority,
            "status": "queued",
        }
        try:
            res = self._db.table(QUEUE_TABLE).insert([row]).execute()
        except Exception as e:
            logger.error(f"[CircuitBreaker] Failed to queue message: {e}")
            return None
        return str(res.data[0]["id"]) if res.data else None

    def pending_messages(self) -> List[Dict[str, Any]]:
        rows = (
            self._db.table(QUEUE_TABLE)
            .select("*")
            .eq("seller_id", self._seller_id)
            .eq("status", "queued")
            .order("priority", desc=True)
            .order("created_at")
            .execute()
            .data
        ) or []
        now = self._now()
        ready = []
        for row in rows:
            retry_at = row.get("next_retry_at")
            if retry_at:
                try:
                    parsed = datetime.fromisoformat(str(retry_at).replace("Z", "+00:00"))
                except ValueError:
                    parsed = None
                if parsed is not None and parsed > now:
                    continue
            ready.append(row)
        return ready

    def clear_queue(self) -> None:
        self._db.table(QUEUE_TABLE).delete().eq("seller_id", self._seller_id).in_("status", ["queued", "failed"]).execute()

    # ---- envio ----

    async def send(self, phone: str, message: str, **queue_kwargs: Any) -> Dict[str, Any]:
        breaker = self.breaker
        if not breaker.allow_request():
            queue_id = self.add_to_queue(phone, message, **queue_kwargs)
            return {"success": False, "queued": True, "queueId": queue_id, "reason": "Circuit breaker open - message queued"}

        try:
            await self._send(phone, message)
        except Exception as e:
            error = str(e) or "Erro desconhecido"
            logger.warning(f"[CircuitBreaker] Send failed transient={is_transient_send_error(error)}: {error}")
            breaker.record_failure(error)
            self._persist()
            if breaker.is_open:
                queue_id = self.add_to_queue(phone, message, **queue_kwargs)
                return {"success": False, "queued": True, "queueId": queue_id, "reason": error}
            raise

        breaker.record_success()
        self._persist()
        return {"success": True, "queued": False}

    async def process_queue(self) -> Dict[str, int]:
        if self._processing:
            return {"processed": 0, "failed": 0}
        breaker = self.breaker
        if not breaker.allow_request():
            return {"processed": 0, "failed": 0}

        self._processing = True
        processed = failed = 0
        try:
            for msg in self.pending_messages()[:PROCESS_BATCH]:
                self._db.table(QUEUE_TABLE).update({"status": "processing"}).eq("id", msg["id"]).execute()
                try:
                    await self._send(str(msg.get("phone") or ""), str(msg.get("message") or ""))
                except Exception as e:
                    error = str(e) or "Erro"
                    retry_count = int(msg.get("retry_count") or 0) + 1
                    if retry_count >= int(msg.get("max_retries") or DEFAULT_MAX_RETRIES):
                        update = {"status": "failed", "error_message": error, "retry_count": retry_count}
                        failed += 1
                    else:
                        update = {
                            "status": "queued",
                            "error_message": error,
                            "retry_count": retry_count,
                            "next_retry_at": (self._now() + timedelta(seconds=RETRY_AFTER_S)).isoformat(),
                        }
                    self._db.table(QUEUE_TABLE).update(update).eq("id", msg["id"]).execute()
                    breaker.record_failure(error)
                    self._persist()
                    if breaker.state.state == OPEN:
                        break
                    continue

                self._db.table(QUEUE_TABLE).update({"status": "sent", "sent_at": self._now().isoformat()}).eq("id", msg["id"]).execute()
                breaker.record_success()
                self._persist()
                processed += 1
                await self._sleep(DELAY_BETWEEN_MESSAGES_S)
        finally:
            self._processing = False

        if processed or failed:
            logger.info(f"[CircuitBreaker] Fila: {processed} enviados, {failed} falharam")
        return {"processed": processed, "failed": failed}
