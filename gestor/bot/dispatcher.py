"""
Escolhe quem responde a uma mensagem recebida.

Ordem: comandos globais (`SessionInterceptor`), menus dinâmicos
(`DynamicMenus`) enquanto a sessão está em `MENU`, fluxos configurados
(`FlowEngine`) quando o motor está habilitado e há fluxos ativos, e por fim
a máquina de estados padrão (`BotStateMachine`), com estado em
`bot_sessions`.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..core.errors import ProviderRequestError
from ..core.observability import LogContext, Observability
from ..utils.phone_utils import normalize_phone_with_ddi
from .flow_engine import FlowEngine
from .menus import HOME_INPUTS, DynamicMenus
from .sessions import SESSIONS_TABLE, SessionInterceptor
from .states import AGUARDANDO_HUMANO, START, BotStateMachine, render_message

logger = logging.getLogger(__name__)

Reply = Dict[str, Any]

MENU = "MENU"
# navegação que o menu trata antes dos comandos globais
MENU_NAV_INPUTS = ("0",) + HOME_INPUTS


def _text(content: str) -> Reply:
    return {"type": "text", "content": content}


def format_price(value: Any) -> str:
    try:
        amount = float(value or 0)
    except (TypeError, ValueError):
        amount = 0.0
    return f"{amount:.2f}".replace(".", ",")


def _user_id(phone: str) -> str:
    return "".join(ch for ch in phone if ch.isdigit())


def _flow_replies(result: Dict[str, Any]) -> List[Reply]:
    return [r for r in result.get("responses") or [] if r.get("type") == "delay" or r.get("content")]


class BotDispatcher:
    def __init__(
        self,
        db: Any,
        *,
        functions: Any = None,
        machine: Optional[BotStateMachine] = None,
        interceptor: Optional[SessionInterceptor] = None,
        flow_engine: Optional[FlowEngine] = None,
        menus: Optional[DynamicMenus] = None,
        interactive_menus: bool = True,
        obs: Optional[Observability] = None,
    ):
        self._db = db
        self._functions = functions
        self._machine = machine or BotStateMachine()
        self._interceptor = interceptor or SessionInterceptor(db)
        self._flows = flow_engine or FlowEngine(db, functions=functions)
        self._menus = menus or DynamicMenus(db)
        self._interactive_menus = interactive_menus
        self._obs = obs or Observability(logger)

    async def handle_message(
        self,
        *,
        seller_id: str,
        phone: str,
        text: str,
        contact_name: Optional[str] = None,
    ) -> List[Reply]:
        ctx = LogContext(seller_id=seller_id, phone=phone)
        user_id = _user_id(phone)
        session = self._load_session(user_id, seller_id)
        in_menu = bool(session and session.get("state") == MENU)

        if in_menu and (text or "").strip().lower() in MENU_NAV_INPUTS:
            return await self._run_menu(seller_id, user_id, session or {}, text)

        intercepted = self._interceptor.intercept(seller_id, phone, text)
        if intercepted.get("intercepted"):
            new_state = intercepted.get("new_state") or START
            self._obs.info("bot_global_command", ctx=ctx, state=new_state)
            if new_state == MENU:
                return self._open_menu(seller_id, user_id)
            return [_text(intercepted.get("response") or self._machine.get_state_message(new_state))]

        if in_menu:
            return await self._run_menu(seller_id, user_id, session or {}, text)

        if self._flows.has_active_flows(seller_id):
            result = await self._flows.process_message(
                seller_id=seller_id, contact_phone=phone, contact_name=contact_name, message_text=text
            )
            if result.get("success"):
                return _flow_replies(result)
            self._obs.warning("bot_flow_unavailable", ctx=ctx, error=result.get("error"))

        return await self.run_state_machine(seller_id=seller_id, phone=phone, text=text, new_contact=session is None)

    # ---- menus dinâmicos ----

    def _leave_menu(self, seller_id: str, user_id: str) -> List[Reply]:
        self._save_session(user_id, seller_id, {"state": START, "context": {}})
        return [_text(self._machine.get_state_message(START))]

    def _show_menu(self, seller_id: str, user_id: str, menu: Dict[str, Any]) -> List[Reply]:
        items = self._menus.get_menu_items(seller_id, menu["id"])
        self._save_session(user_id, seller_id, {"state": MENU, "context": {"menu_key": menu.get("menu_key")}})
        return [_text(self._menus.render_menu(menu, items, interactive=self._interactive_menus))]

    def _open_menu(self, seller_id: str, user_id: str) -> List[Reply]:
        """Menu raiz do revendedor; sem menu configurado a conversa volta ao início."""
        root = self._menus.get_root_menu(seller_id)
        if root is None or not self._menus.get_menu_items(seller_id, root["id"]):
            return self._leave_menu(seller_id, user_id)
        return self._show_menu(seller_id, user_id, root)

    async def _run_menu(self, seller_id: str, user_id: str, session: Dict[str, Any], text: str) -> List[Reply]:
        menu_key = (session.get("context") or {}).get("menu_key")
        result = self._menus.process_dynamic_menu_input(seller_id, menu_key, text, interactive=self._interactive_menus)
        action = result.get("action")
        self._obs.debug("bot_menu_action", ctx=LogContext(seller_id=seller_id), action=action, menu_key=menu_key)

        if action == "home":
            return self._open_menu(seller_id, user_id)
        if action == "back":
            current = self._menus.get_menu_by_key(seller_id, menu_key) if menu_key else None
            parent = self._menus.get_parent_menu(current["id"]) if current else None
            if parent is None:
                return self._leave_menu(seller_id, user_id)
            return self._show_menu(seller_id, user_id, parent)
        if action == "show_submenu":
            submenu = self._menus.get_menu_by_key(seller_id, result.get("menu_key") or "")
            if submenu is None:
                return [_text("Menu não configurado.")]
            return self._show_menu(seller_id, user_id, submenu)
        if action in ("show_link", "show_message"):
            return [_text(result.get("message") or "")]
        if action == "execute_flow":
            self._save_session(user_id, seller_id, {"state": START, "context": {}})
            flow = await self._flows.process_message(
                seller_id=seller_id, contact_phone=user_id, message_text=text, flow_id=result.get("flow_id")
            )
            if flow.get("success"):
                return _flow_replies(flow)
            self._obs.warning("bot_menu_flow_unavailable", ctx=LogContext(seller_id=seller_id), error=flow.get("error"))
            return [_text(self._machine.get_state_message(START))]
        if action == "execute_command":
            state = str(result.get("command") or "").strip().upper()
            if state not in self._machine.states:
                return [_text("Opção indisponível no momento.")]
            context: Dict[str, Any] = {}
            variables = self._state_variables(seller_id, state, context, user_id)
            self._save_session(user_id, seller_id, {"state": state, "previous_state": MENU, "context": context})
            return [_text(render_message(self._machine.get_state_message(state), variables))]
        return [_text(result.get("response_text") or "Menu não configurado.")]

    # ---- máquina de estados padrão ----

    def _load_session(self, user_id: str, seller_id: str) -> Optional[Dict[str, Any]]:
        rows = (
            self._db.table(SESSIONS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .eq("seller_id", seller_id)
            .limit(1)
            .execute()
            .data
            or []
        )
        return rows[0] if rows else None

    def _save_session(self, user_id: str, seller_id: str, values: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._db.table(SESSIONS_TABLE).update({**values, "last_interaction": now, "updated_at": now}).eq(
            "user_id", user_id
        ).eq("seller_id", seller_id).execute()

    def _plans_list(self, seller_id: str) -> str:
        plans = (
            self._db.table("plans")
            .select("name, price")
            .eq("seller_id", seller_id)
            .eq("is_active", True)
            .order("price")
            .execute()
            .data
            or []
        )
        if not plans:
            return "Nenhum plano disponível no momento."
        return "\n".join(f"• {p.get('name')}: R$ {format_price(p.get('price'))}" for p in plans)

    def _renewal_values(self, seller_id: str, identifier: str) -> Dict[str, Any]:
        values: Dict[str, Any] = {"valor": format_price(0), "pix_key": ""}
        profiles = self._db.table("profiles").select("pix_key").eq("id", seller_id).limit(1).execute().data or []
        if profiles:
            values["pix_key"] = profiles[0].get("pix_key") or ""
        phone = normalize_phone_with_ddi(identifier)
        if phone:
            clients = (
                self._db.table("clients")
                .select("plan_price")
                .eq("seller_id", seller_id)
                .eq("phone", phone)
                .order("created_at", desc=True)
                .limit(1)
                .execute()
                .data
                or []
            )
            if clients:
                values["valor"] = format_price(clients[0].get("plan_price"))
        return values

    async def _generate_test(self, seller_id: str, phone: str, test_type: Optional[str], device_info: Optional[str]) -> Optional[Dict[str, Any]]:
        if self._functions is None:
            return None
        try:
            result = await self._functions.call(
                "create-test-client",
                {"seller_id": seller_id, "sender_phone": phone, "test_type": test_type, "device_info": device_info},
            )
        except ProviderRequestError as e:
            self._obs.error("bot_test_generation_failed", ctx=LogContext(seller_id=seller_id), error=str(e))
            return None
        if isinstance(result, dict) and result.get("success"):
            return result
        return None

    def _state_variables(self, seller_id: str, state: str, context: Dict[str, Any], phone: str) -> Dict[str, Any]:
        variables: Dict[str, Any] = dict(context)
        if state == "PLANOS":
            variables["plans_list"] = self._plans_list(seller_id)
        elif state == "RENOVAR_PIX":
            variables.update(self._renewal_values(seller_id, str(context.get("client_identifier") or phone)))
        elif state == "SUPORTE_ENCAMINHADO":
            context["ticket_id"] = variables["ticket_id"] = uuid.uuid4().hex[:8].upper()
        return variables

    async def run_state_machine(self, *, seller_id: str, phone: str, text: str, new_contact: bool = False) -> List[Reply]:
        """Com `new_contact` a sessão criada pelo interceptador só recebe a saudação."""
        user_id = _user_id(phone)
        session = self._load_session(user_id, seller_id)
        if session is None:
            self._db.table(SESSIONS_TABLE).insert(
                [
                    {
                        "user_id": user_id,
                        "seller_id": seller_id,
                        "phone": user_id,
                        "state": START,
                        "previous_state": START,
                        "stack": [],
                        "context": {},
                        "locked": False,
                    }
                ]
            ).execute()
            return [_text(self._machine.get_state_message(START))]
        if new_contact:
            return [_text(self._machine.get_state_message(START))]

        current = session.get("state") or START
        context: Dict[str, Any] = dict(session.get("context") or {})
        variable = self._machine.get_input_variable_name(current)
        result = self._machine.process_state_transition(current, text, context)

        if current == AGUARDANDO_HUMANO and result.new_state == current:
            # atendente humano cuida da conversa
            return []

        if variable:
            context[variable] = text

        variables = self._state_variables(seller_id, result.new_state, context, phone)
        replies = [_text(render_message(result.response, variables))]
        new_state = result.new_state

        if result.should_generate_test:
            generated = await self._generate_test(seller_id, user_id, result.test_type, result.device_info)
            if generated:
                new_state = "TESTE_SUCESSO"
                variables["expiration"] = generated.get("expiresAtFormatted") or generated.get("expires_at") or ""
            else:
                new_state = "TESTE_ERRO"
            replies.append(_text(render_message(self._machine.get_state_message(new_state), variables)))

        if result.transfer_to_human:
            self._obs.info("bot_transfer_to_human", ctx=LogContext(seller_id=seller_id), state=new_state)
            if not self._machine.states[new_state].options:
                new_state = AGUARDANDO_HUMANO

        self._save_session(
            user_id,
            seller_id,
            {"state": new_state, "previous_state": current, "context": context},
        )
        return replies

