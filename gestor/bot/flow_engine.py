"""
Motor de fluxos configurados em banco (`bot_engine_*`).

Não contém fluxos prontos: sessões, nós e arestas vêm das tabelas do
revendedor. Cada mensagem percorre no máximo `MAX_ITERATIONS` nós.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from ..core.errors import ProviderRequestError
from ..core.http import HttpClient, HttpClientConfig
from ..core.observability import LogContext, Observability

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 10
DEFAULT_PROMPT = "Por favor, digite sua resposta:"

_VAR_RE = re.compile(r"\{\{(\w+)\}\}")


def normalize_phone(phone: str) -> str:
    digits = re.sub(r"\D", "", phone or "")
    if not digits.startswith("55") and 10 <= len(digits) <= 11:
        digits = "55" + digits
    return digits


def interpolate_variables(text: str, variables: Mapping[str, Any]) -> str:
    def _sub(m: "re.Match[str]") -> str:
        value = variables.get(m.group(1))
        return m.group(0) if value is None else str(value)

    return _VAR_RE.sub(_sub, text or "")


def evaluate_condition(
    condition_type: str,
    condition_value: Optional[str],
    input_value: str,
    variables: Mapping[str, Any],
) -> bool:
    value = condition_value or ""
    if condition_type == "always":
        return True
    if condition_type == "equals":
        return input_value.lower().strip() == value.lower().strip()
    if condition_type == "contains":
        return value.lower() in input_value.lower()
    if condition_type == "regex":
        try:
            return re.search(value, input_value, re.IGNORECASE) is not None
        except re.error:
            return False
    if condition_type == "variable":
        if not value:
            return False
        name, sep, expected = value.partition(":")
        actual = variables.get(name)
        if not sep:
            return actual is not None
        return str(actual).lower() == expected.lower()
    return False


def find_next_node(
    current_node_id: str,
    edges: List[Dict[str, Any]],
    nodes: List[Dict[str, Any]],
    input_value: str,
    variables: Mapping[str, Any],
) -> Optional[Dict[str, Any]]:
    outgoing = sorted(
        (e for e in edges if e.get("source_node_id") == current_node_id),
        key=lambda e: e.get("priority") or 0,
        reverse=True,
    )
    by_id = {n.get("id"): n for n in nodes}
    for edge in outgoing:
        if evaluate_condition(edge.get("condition_type") or "", edge.get("condition_value"), input_value, variables):
            target = by_id.get(edge.get("target_node_id"))
            if target is not None:
                return target
    return None


def select_flow(flows: List[Dict[str, Any]], message_text: str) -> Optional[Dict[str, Any]]:
    """Gatilho por palavra-chave, depois `is_default`, depois o primeiro."""
    if not flows:
        return None
    lower = (message_text or "").lower().strip()
    for flow in flows:
        keywords = flow.get("trigger_keywords") or []
        if flow.get("trigger_type") == "keyword" and keywords:
            if any(str(k).lower() in lower for k in keywords):
                return flow
    for flow in flows:
        if flow.get("is_default"):
            return flow
    return flows[0]


def pick_entry_node(nodes: List[Dict[str, Any]], current_node_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if current_node_id:
        for n in nodes:
            if n.get("id") == current_node_id:
                return n
    for n in nodes:
        if n.get("is_entry_point"):
            return n
    for n in nodes:
        if n.get("node_type") == "start":
            return n
    return nodes[0] if nodes else None


@dataclass
class NodeOutcome:
    responses: List[Dict[str, Any]] = field(default_factory=list)
    next_node: Optional[Dict[str, Any]] = None
    updates: Dict[str, Any] = field(default_factory=dict)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class FlowEngine:
    def __init__(self, db: Any, *, functions: Any = None, obs: Optional[Observability] = None):
        self._db = db
        self._functions = functions
        self._obs = obs or Observability(logger)

    # ---- leitura ----

    def _enabled_config(self, seller_id: str) -> Optional[Dict[str, Any]]:
        rows = (
            self._db.table("bot_engine_config")
            .select("*")
            .eq("seller_id", seller_id)
            .eq("is_enabled", True)
            .limit(1)
            .execute()
            .data
            or []
        )
        return rows[0] if rows else None

    def _active_session(self, seller_id: str, phone: str) -> Optional[Dict[str, Any]]:
        rows = (
            self._db.table("bot_engine_sessions")
            .select("*")
            .eq("seller_id", seller_id)
            .eq("contact_phone", phone)
            .eq("status", "active")
            .order("last_activity_at", desc=True)
            .limit(1)
            .execute()
            .data
            or []
        )
        return rows[0] if rows else None

    def _active_flows(self, seller_id: str) -> List[Dict[str, Any]]:
        return (
            self._db.table("bot_engine_flows")
            .select("*")
            .eq("seller_id", seller_id)
            .eq("is_active", True)
            .order("priority", desc=True)
            .execute()
            .data
            or []
        )

    def has_active_flows(self, seller_id: str) -> bool:
        return self._enabled_config(seller_id) is not None and bool(self._active_flows(seller_id))

    def _log(self, row: Dict[str, Any]) -> None:
        self._db.table("bot_engine_message_log").insert([row]).execute()

    # ---- nós ----

    async def process_node(
        self,
        node: Dict[str, Any],
        session: Dict[str, Any],
        nodes: List[Dict[str, Any]],
        edges: List[Dict[str, Any]],
        input_value: str,
    ) -> NodeOutcome:
        out = NodeOutcome()
        config = node.get("config") or {}
        variables = dict(session.get("variables") or {})
        node_type = node.get("node_type")

        def _advance() -> None:
            out.next_node = find_next_node(node["id"], edges, nodes, input_value, variables)

        if node_type in ("start", "condition"):
            _advance()

        elif node_type == "message":
            text = config.get("message_text")
            if text:
                out.responses.append(
                    {
                        "type": config.get("message_type") or "text",
                        "content": interpolate_variables(text, variables),
                        "media_url": config.get("media_url"),
                        "buttons": config.get("buttons"),
                    }
                )
            _advance()

        elif node_type == "input":
            name = config.get("variable_name")
            if session.get("awaiting_input") and session.get("input_variable_name") == name:
                variables[name] = input_value
                out.updates.update(variables=variables, awaiting_input=False, input_variable_name=None)
                _advance()
            else:
                prompt = config.get("prompt_message") or DEFAULT_PROMPT
                out.responses.append({"type": "text", "content": interpolate_variables(prompt, variables)})
                out.updates.update(awaiting_input=True, input_variable_name=name)

        elif node_type == "action":
            await self._run_action(config, session, variables, out)
            _advance()

        elif node_type == "delay":
            seconds = config.get("delay_seconds") or 1
            out.responses.append({"type": "delay", "delay_ms": int(float(seconds) * 1000)})
            _advance()

        elif node_type == "goto":
            out.updates["status"] = "completed"

        elif node_type == "end":
            out.updates["status"] = "completed"
            out.updates["ended_at"] = _now_iso()
            end_message = config.get("end_message")
            if end_message:
                out.responses.append({"type": "text", "content": interpolate_variables(end_message, variables)})

        return out

    async def _run_action(
        self,
        config: Mapping[str, Any],
        session: Mapping[str, Any],
        variables: Dict[str, Any],
        out: NodeOutcome,
    ) -> None:
        action_type = config.get("action_type")
        ctx = LogContext(seller_id=session.get("seller_id"))

        if action_type == "set_variable":
            name = config.get("variable_to_set")
            if name:
                variables[name] = interpolate_variables(config.get("variable_value") or "", variables)
                out.updates["variables"] = variables
            return

        if action_type == "send_notification":
            if self._functions is None:
                self._obs.warning("bot_notification_skipped", ctx=ctx, reason="no_functions_client")
                return
            title = config.get("notification_title") or "Nova Notificação"
            body = interpolate_variables(config.get("notification_body") or "", variables)
            contact_phone = variables.get("phone") or ""
            contact_name = variables.get("name") or "Cliente"
            try:
                await self._functions.call(
                    "send-push-notification",
                    {
                        "seller_id": session.get("seller_id"),
                        "title": title,
                        "body": f"{body}\n📱 {contact_name} ({contact_phone})",
                        "data": {
                            "type": config.get("notification_type") or "bot_action",
                            "contact_phone": contact_phone,
                            "contact_name": contact_name,
                            "session_id": session.get("id"),
                        },
                    },
                )
            except ProviderRequestError as e:
                self._obs.error("bot_notification_failed", ctx=ctx, status=e.status_code, error=str(e))
            return

        if action_type == "http_request":
            url = config.get("url")
            if not url:
                return
            client = HttpClient(config=HttpClientConfig(base_url=str(url)), provider="bot-http-action")
            body = config.get("body")
            if isinstance(body, str):
                body = interpolate_variables(body, variables)
            try:
                result = await client.request(str(config.get("method") or "POST").upper(), "", json=body)
            except ProviderRequestError as e:
                self._obs.error("bot_http_action_failed", ctx=ctx, status=e.status_code, error=str(e))
                return
            target = config.get("response_variable")
            if target:
                variables[target] = result
                out.updates["variables"] = variables

    # ---- entrada ----

    async def process_message(
        self,
        *,
        seller_id: str,
        contact_phone: str,
        message_text: str,
        contact_name: Optional[str] = None,
        message_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        flow_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """`flow_id` força o fluxo de uma nova sessão (opção de menu do tipo flow)."""
        phone = normalize_phone(contact_phone)
        ctx = LogContext(seller_id=seller_id)

        if self._enabled_config(seller_id) is None:
            return {"success": False, "error": "bot_disabled", "responses": []}

        session = self._active_session(seller_id, phone)
        if session is None:
            flows = self._active_flows(seller_id)
            if flow_id:
                flow = next((f for f in flows if f.get("id") == flow_id), None)
            else:
                flow = select_flow(flows, message_text)
            if flow is None:
                return {"success": False, "error": "no_flows", "responses": []}
            rows = (
                self._db.table("bot_engine_sessions")
                .insert(
                    [
                        {
                            "seller_id": seller_id,
                            "flow_id": flow["id"],
                            "contact_phone": phone,
                            "contact_name": contact_name,
                            "variables": {"phone": phone, "name": contact_name or ""},
                            "status": "active",
                        }
                    ]
                )
                .execute()
                .data
                or []
            )
            if not rows:
                raise RuntimeError("Falha ao criar sessão do bot")
            session = rows[0]
            self._obs.info("bot_session_created", ctx=ctx, session_id=session.get("id"), flow_id=flow["id"])

        flow_id = session.get("flow_id")
        nodes = self._db.table("bot_engine_nodes").select("*").eq("flow_id", flow_id).execute().data or []
        edges = self._db.table("bot_engine_edges").select("*").eq("flow_id", flow_id).execute().data or []
        if not nodes:
            return {"success": False, "error": "no_nodes", "session_id": session.get("id"), "responses": []}

        current = pick_entry_node(nodes, session.get("current_node_id"))
        self._log(
            {
                "session_id": session.get("id"),
                "seller_id": seller_id,
                "direction": "inbound",
                "message_content": message_text,
                "message_type": message_type or "text",
                "node_id": current.get("id") if current else None,
                "metadata": metadata or {},
            }
        )

        responses: List[Dict[str, Any]] = []
        updates: Dict[str, Any] = {}
        iterations = 0
        while current is not None and iterations < MAX_ITERATIONS:
            iterations += 1
            outcome = await self.process_node(current, session, nodes, edges, message_text)
            responses.extend(outcome.responses)
            updates.update(outcome.updates)
            session = {**session, **outcome.updates}

            if outcome.updates.get("awaiting_input"):
                updates["current_node_id"] = current["id"]
                break

            current = outcome.next_node
            if current is not None:
                updates["current_node_id"] = current["id"]

            status = outcome.updates.get("status")
            if status and status != "active":
                break

        self._db.table("bot_engine_sessions").update({**updates, "last_activity_at": _now_iso()}).eq(
            "id", session.get("id")
        ).execute()

        for response in responses:
            if response.get("type") == "delay":
                continue
            self._log(
                {
                    "session_id": session.get("id"),
                    "seller_id": seller_id,
                    "direction": "outbound",
                    "message_content": response.get("content"),
                    "message_type": response.get("type"),
                    "node_id": updates.get("current_node_id"),
                }
            )

        self._obs.info("bot_flow_processed", ctx=ctx, nodes=iterations, responses=len(responses))
        return {
            "success": True,
            "session_id": session.get("id"),
            "responses": responses,
            "session_status": updates.get("status") or session.get("status"),
        }
