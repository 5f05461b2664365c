"""
Interceptação de comandos globais do chatbot.

Para cada mensagem: trava a sessão em `bot_sessions`, interpreta a entrada,
verifica os comandos globais (voltar, início, menu, sair, humano), atualiza
estado e pilha e destrava a sessão. Mensagens que não são comandos globais
seguem para o fluxo normal (`should_continue=True`).
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from ..utils.db_helpers import db_error_code

logger = logging.getLogger(__name__)

SESSIONS_TABLE = "bot_sessions"
LOGS_TABLE = "bot_logs"
LOCK_TIMEOUT_S = 30
PASS_THROUGH_STATES = ("ENCERRADO", "AGUARDANDO_HUMANO")

# ordem importa: "0" e "#" primeiro
GLOBAL_COMMANDS = (
    (("0",), "back_to_previous"),
    (("#",), "back_to_start"),
    (("voltar", "anterior", "retornar", "*"), "back_to_previous"),
    (("inicio", "início", "começo", "reiniciar", "start", "00", "##"), "back_to_start"),
    (("menu", "cardapio", "opcoes", "opções"), "menu"),
    (("sair", "exit", "encerrar", "tchau", "bye", "fim"), "sair"),
    (("humano", "atendente", "pessoa", "suporte", "falar com alguem"), "humano"),
)

_DIGITS_RE = re.compile(r"^\d+$")
_COMMAND_RE = re.compile(r"^[/!]")
_NON_WORD_RE = re.compile(r"[^\w\s]", re.UNICODE)


@dataclass
class ParsedInput:
    original: str
    normalized: str
    is_number: bool = False
    number: Optional[int] = None
    is_command: bool = False
    command: Optional[str] = None
    args: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)


@dataclass
class ActionResult:
    success: bool
    new_state: Optional[str] = None
    response: Optional[str] = None
    clear_stack: bool = False
    pop_stack: bool = False


def parse_input(message: str) -> ParsedInput:
    normalized = (message or "").lower().strip()
    is_number = bool(_DIGITS_RE.match(normalized))
    parsed = ParsedInput(
        original=message,
        normalized=normalized,
        is_number=is_number,
        number=int(normalized) if is_number else None,
        is_command=bool(_COMMAND_RE.match(normalized)),
    )
    if parsed.is_command:
        parts = normalized[1:].split()
        parsed.command = parts[0] if parts else None
        parsed.args = parts[1:]
    # \w já cobre letras acentuadas em str
    parsed.keywords = [w for w in _NON_WORD_RE.sub("", normalized).split() if len(w) > 2]
    return parsed


def match_global_command(parsed: ParsedInput) -> Optional[str]:
    for keywords, action in GLOBAL_COMMANDS:
        if parsed.normalized in keywords:
            return action
    return None


def execute_action(action: str, current_stack: List[str], previous_state: Optional[str]) -> ActionResult:
    """Só muda estado e pilha; as mensagens vêm dos fluxos configurados."""
    if action == "back_to_previous":
        return ActionResult(success=True, new_state=previous_state or "START", pop_stack=True)
    if action == "back_to_start":
        return ActionResult(success=True, new_state="START", clear_stack=True)
    if action == "menu":
        return ActionResult(success=True, new_state="MENU", clear_stack=True)
    if action == "sair":
        return ActionResult(success=True, new_state="ENCERRADO", clear_stack=True)
    if action == "humano":
        return ActionResult(success=True, new_state="AGUARDANDO_HUMANO")
    return ActionResult(success=False)


def apply_stack(result: ActionResult, stack: List[str]) -> List[str]:
    updated = list(stack)
    if result.clear_stack:
        return []
    if result.pop_stack and updated:
        updated.pop()
    return updated


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def _pass_through(**extra: Any) -> Dict[str, Any]:
    return {"intercepted": False, "should_continue": True, **extra}


class SessionInterceptor:
    def __init__(self, db: Any, *, now: Callable[[], datetime] = _now):
        self._db = db
        self._now = now

    def _session_query(self, query: Any, user_id: str, seller_id: str) -> Any:
        return query.eq("user_id", user_id).eq("seller_id", seller_id)

    def lock_session(self, user_id: str, seller_id: str) -> bool:
        now = self._now()
        expiry = now - timedelta(seconds=LOCK_TIMEOUT_S)
        rows = (
            self._session_query(self._db.table(SESSIONS_TABLE).select("locked, updated_at"), user_id, seller_id)
            .limit(1)
            .execute()
            .data
            or []
        )

        if rows:
            existing = rows[0]
            if existing.get("locked"):
                lock_time = _parse_ts(existing.get("updated_at"))
                if lock_time is not None and lock_time > expiry:
                    logger.info("bot_session_busy user_id=%s", user_id)
                    return False
                logger.warning("bot_session_stale_lock user_id=%s", user_id)

            try:
                updated = (
                    self._session_query(
                        self._db.table(SESSIONS_TABLE).update(
                            {"locked": True, "last_interaction": now.isoformat(), "updated_at": now.isoformat()}
                        ),
                        user_id,
                        seller_id,
                    )
                    .or_(f"locked.eq.false,updated_at.lt.{expiry.isoformat()}")
                    .execute()
                    .data
                    or []
                )
            except Exception as e:
                logger.error("bot_session_lock_update_failed user_id=%s error=%s", user_id, e)
                return False
            if not updated:
                logger.info("bot_session_lock_lost user_id=%s", user_id)
                return False
            return True

        try:
            self._db.table(SESSIONS_TABLE).insert(
                [
                    {
                        "user_id": user_id,
                        "seller_id": seller_id,
                        "phone": user_id,
                        "state": "START",
                        "previous_state": "START",
                        "stack": [],
                        "context": {},
                        "locked": True,
                        "last_interaction": now.isoformat(),
                        "updated_at": now.isoformat(),
                    }
                ]
            ).execute()
        except Exception as e:
            if db_error_code(e) == "23505":
                logger.info("bot_session_created_elsewhere user_id=%s", user_id)
            else:
                logger.error("bot_session_lock_insert_failed user_id=%s error=%s", user_id, e)
            return False
        return True

    def unlock_session(self, user_id: str, seller_id: str) -> None:
        try:
            self._session_query(
                self._db.table(SESSIONS_TABLE).update({"locked": False, "updated_at": self._now().isoformat()}),
                user_id,
                seller_id,
            ).execute()
        except Exception as e:
            logger.error("bot_session_unlock_failed user_id=%s error=%s", user_id, e)

    def log_message(self, user_id: str, seller_id: str, message: str, from_user: bool) -> None:
        self._db.table(LOGS_TABLE).insert(
            [{"user_id": user_id, "seller_id": seller_id, "message": message, "from_user": from_user}]
        ).execute()

    def is_engine_enabled(self, seller_id: str) -> bool:
        rows = (
            self._db.table("bot_engine_config")
            .select("is_enabled")
            .eq("seller_id", seller_id)
            .eq("is_enabled", True)
            .limit(1)
            .execute()
            .data
            or []
        )
        return bool(rows)

    def intercept(self, seller_id: str, sender_phone: str, message_text: str) -> Dict[str, Any]:
        if not seller_id or not sender_phone or not message_text:
            return _pass_through()

        user_id = re.sub(r"\D", "", sender_phone)
        try:
            if not self.is_engine_enabled(seller_id):
                return _pass_through()
            if not self.lock_session(user_id, seller_id):
                return _pass_through()
        except Exception as e:
            logger.exception("bot_intercept_failed seller_id=%s", seller_id)
            return _pass_through(error=str(e))

        try:
            return self._intercept_locked(user_id, seller_id, message_text)
        except Exception as e:
            logger.exception("bot_intercept_failed seller_id=%s", seller_id)
            return _pass_through(error=str(e))
        finally:
            self.unlock_session(user_id, seller_id)

    def _intercept_locked(self, user_id: str, seller_id: str, message_text: str) -> Dict[str, Any]:
        rows = (
            self._session_query(self._db.table(SESSIONS_TABLE).select("*"), user_id, seller_id)
            .limit(1)
            .execute()
            .data
            or []
        )
        session = rows[0] if rows else {}
        current_state = session.get("state") or "START"
        previous_state = session.get("previous_state") or "START"
        stack = list(session.get("stack") or [])

        parsed = parse_input(message_text)
        self.log_message(user_id, seller_id, message_text, True)

        if current_state in PASS_THROUGH_STATES:
            return _pass_through()
        if parsed.is_command:
            return _pass_through()

        action = match_global_command(parsed)
        if action is None:
            return _pass_through()

        result = execute_action(action, stack, previous_state)
        if not result.success:
            return _pass_through()

        new_state = result.new_state or current_state
        new_stack = apply_stack(result, stack)
        self._session_query(
            self._db.table(SESSIONS_TABLE).update(
                {"state": new_state, "stack": new_stack, "updated_at": self._now().isoformat()}
            ),
            user_id,
            seller_id,
        ).execute()
        logger.info("bot_state_updated user_id=%s state=%s stack=%s", user_id, new_state, new_stack)

        if result.response:
            self.log_message(user_id, seller_id, result.response, False)

        return {
            "intercepted": True,
            "response": result.response,
            "new_state": result.new_state,
            "should_continue": False,
        }
