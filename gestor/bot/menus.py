"""
Menus dinâmicos do chatbot (`bot_engine_dynamic_menus`).

Um menu raiz por revendedor; cada item aponta para um submenu, um fluxo, um
comando, um link ou uma mensagem fixa.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple

from .interactive import (
    create_error_list_response,
    create_list_response,
    process_navigation_selection,
    render_menu_as_interactive_list,
    serialize_response,
)

logger = logging.getLogger(__name__)

MENUS_TABLE = "bot_engine_dynamic_menus"
DEFAULT_BACK_TEXT = "⬅️ Voltar"
HOME_INPUTS = ("#", "00", "##")

MenuItem = Dict[str, Any]


def render_menu_as_text(
    items: List[MenuItem],
    header_message: Optional[str] = None,
    footer_message: Optional[str] = None,
    show_back_button: bool = True,
    back_button_text: str = DEFAULT_BACK_TEXT,
) -> str:
    lines: List[str] = []
    if header_message:
        lines.extend([header_message, ""])

    sections: "OrderedDict[str, List[MenuItem]]" = OrderedDict()
    for item in items:
        sections.setdefault(item.get("section_title") or "Opções", []).append(item)

    index = 1
    for section_title, section_items in sections.items():
        if len(sections) > 1:
            lines.append(f"📌 *{section_title}*")
        for item in section_items:
            emoji = f"{item['emoji']} " if item.get("emoji") else ""
            lines.append(f"*{index}* - {emoji}{item.get('title') or ''}")
            if item.get("description"):
                lines.append(f"   └ {item['description']}")
            index += 1
        lines.append("")

    lines.append("────────────")
    if show_back_button:
        lines.append(f"*0* - {back_button_text}")
    lines.append("*#* - Menu Principal")

    if footer_message:
        lines.extend(["", footer_message])
    return "\n".join(lines)


def selection_result(item: MenuItem) -> Dict[str, Any]:
    return {
        "found": True,
        "menu_type": item.get("menu_type"),
        "target_menu_key": item.get("target_menu_key"),
        "target_flow_id": item.get("target_flow_id"),
        "target_command": item.get("target_command"),
        "target_url": item.get("target_url"),
        "target_message": item.get("target_message"),
        "parent_menu_id": item.get("parent_menu_id"),
    }


def match_menu_item(items: List[MenuItem], user_input: str) -> Optional[MenuItem]:
    """Número da opção, depois menu_key exato, depois título parcial."""
    normalized = (user_input or "").lower().strip()
    if not normalized:
        return None
    if normalized.isdigit():
        n = int(normalized)
        if 1 <= n <= len(items):
            return items[n - 1]
    for item in items:
        if str(item.get("menu_key") or "").lower() == normalized:
            return item
    for item in items:
        title = str(item.get("title") or "").lower()
        if title and (normalized in title or title in normalized):
            return item
    return None


class DynamicMenus:
    def __init__(self, db: Any):
        self._db = db

    def _one(self, query: Any) -> Optional[MenuItem]:
        rows = query.limit(1).execute().data or []
        return rows[0] if rows else None

    def get_root_menu(self, seller_id: str) -> Optional[MenuItem]:
        menu = self._one(
            self._db.table(MENUS_TABLE).select("*").eq("seller_id", seller_id).eq("is_root", True).eq("is_active", True)
        )
        if menu is None:
            logger.info("bot_menu_root_missing seller_id=%s", seller_id)
        return menu

    def get_menu_by_key(self, seller_id: str, menu_key: str) -> Optional[MenuItem]:
        return self._one(
            self._db.table(MENUS_TABLE)
            .select("*")
            .eq("seller_id", seller_id)
            .eq("menu_key", menu_key)
            .eq("is_active", True)
        )

    def get_menu_items(self, seller_id: str, parent_menu_id: Optional[str]) -> List[MenuItem]:
        query = (
            self._db.table(MENUS_TABLE)
            .select("*")
            .eq("seller_id", seller_id)
            .eq("is_active", True)
            .order("display_order")
            .order("title")
        )
        if parent_menu_id:
            query = query.eq("parent_menu_id", parent_menu_id)
        else:
            query = query.is_("parent_menu_id", "null")
        return query.execute().data or []

    def get_parent_menu(self, child_menu_id: str) -> Optional[MenuItem]:
        child = self._one(self._db.table(MENUS_TABLE).select("parent_menu_id").eq("id", child_menu_id))
        if not child or not child.get("parent_menu_id"):
            return None
        return self._one(self._db.table(MENUS_TABLE).select("*").eq("id", child["parent_menu_id"]))

    def get_menu_for_state(self, seller_id: str, current_menu_key: Optional[str]) -> Tuple[Optional[MenuItem], List[MenuItem]]:
        menu = self.get_menu_by_key(seller_id, current_menu_key) if current_menu_key else None
        if menu is None:
            menu = self.get_root_menu(seller_id)
        if menu is None:
            return None, []
        return menu, self.get_menu_items(seller_id, menu["id"])

    def process_menu_selection(self, seller_id: str, parent_menu_id: Optional[str], user_input: str) -> Dict[str, Any]:
        item = match_menu_item(self.get_menu_items(seller_id, parent_menu_id), user_input)
        return selection_result(item) if item else {"found": False}

    def render_menu(self, menu: MenuItem, items: List[MenuItem], *, interactive: bool = False) -> str:
        back_text = menu.get("back_button_text") or DEFAULT_BACK_TEXT
        show_back = bool(menu.get("show_back_button", True))
        if not interactive:
            return render_menu_as_text(items, menu.get("header_message"), menu.get("footer_message"), show_back, back_text)
        lst = render_menu_as_interactive_list(
            items,
            title=menu.get("title") or "Menu",
            header_message=menu.get("header_message"),
            footer_message=menu.get("footer_message"),
            show_back_button=show_back,
            back_button_text=back_text,
            is_root=bool(menu.get("is_root")),
        )
        return serialize_response(create_list_response(lst))

    def process_dynamic_menu_input(
        self,
        seller_id: str,
        current_menu_key: Optional[str],
        user_input: str,
        *,
        interactive: bool = False,
    ) -> Dict[str, Any]:
        normalized = (user_input or "").lower().strip()
        nav = process_navigation_selection(normalized)
        if nav:
            return {"action": nav}
        if normalized == "0":
            return {"action": "back"}
        if normalized in HOME_INPUTS:
            return {"action": "home"}

        menu, items = self.get_menu_for_state(seller_id, current_menu_key)
        if menu is None or not items:
            return {"action": "invalid", "response_text": "Menu não configurado."}

        item = match_menu_item(items, user_input)
        if item is None:
            if interactive:
                error = create_error_list_response(
                    "Opção inválida.",
                    items,
                    header_message=menu.get("header_message"),
                    title=menu.get("title") or "Menu",
                    footer_message=menu.get("footer_message"),
                    show_back_button=bool(menu.get("show_back_button", True)),
                    is_root=bool(menu.get("is_root")),
                )
                return {"action": "invalid", "response_text": serialize_response(error)}
            menu_text = self.render_menu(menu, items)
            return {
                "action": "invalid",
                "response_text": f"❌ Opção inválida. Digite o *número* da opção desejada.\n\n{menu_text}",
            }

        menu_type = item.get("menu_type")
        if menu_type == "submenu":
            return {"action": "show_submenu", "menu_key": item.get("target_menu_key")}
        if menu_type == "flow":
            return {"action": "execute_flow", "flow_id": item.get("target_flow_id")}
        if menu_type == "command":
            return {"action": "execute_command", "command": item.get("target_command")}
        if menu_type == "link":
            url = item.get("target_url")
            return {"action": "show_link", "url": url, "message": f"🔗 Acesse: {url}"}
        if menu_type == "message":
            return {"action": "show_message", "message": item.get("target_message")}
        return {"action": "invalid"}
