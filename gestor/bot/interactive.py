"""
Respostas estruturadas do bot (texto ou lista interativa).

O bot devolve strings; uma lista viaja serializada com o prefixo
`__BOT_STRUCTURED__` e quem envia a mensagem decide o formato final.
"""
from __future__ import annotations

import json
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..evolution.payloads import (
    NAV_BACK_ROW_ID,
    NAV_HOME_ROW_ID,
    InteractiveList,
    ListRow,
    ListSection,
)

logger = logging.getLogger(__name__)

STRUCTURED_PREFIX = "__BOT_STRUCTURED__"


@dataclass
class BotStructuredResponse:
    type: str
    text: Optional[str] = None
    list: Optional[InteractiveList] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type}
        if self.text is not None:
            out["text"] = self.text
        if self.list is not None:
            out["list"] = self.list.to_dict()
        return out


def create_list_response(lst: InteractiveList) -> BotStructuredResponse:
    return BotStructuredResponse(type="list", list=lst)


def create_text_response(text: str) -> BotStructuredResponse:
    return BotStructuredResponse(type="text", text=text)


def serialize_response(response: BotStructuredResponse) -> str:
    return STRUCTURED_PREFIX + json.dumps(response.to_dict(), ensure_ascii=False)


def deserialize_response(data: Optional[str]) -> Optional[BotStructuredResponse]:
    if not data or not data.startswith(STRUCTURED_PREFIX):
        return None
    try:
        raw = json.loads(data[len(STRUCTURED_PREFIX) :])
    except ValueError:
        return None
    if not isinstance(raw, dict):
        return None
    lst = raw.get("list")
    return BotStructuredResponse(
        type=str(raw.get("type") or "text"),
        text=raw.get("text"),
        list=InteractiveList.from_dict(lst) if isinstance(lst, dict) else None,
    )


def process_navigation_selection(row_id: str) -> Optional[str]:
    """Maps the navigation rows of an interactive list to back/home."""
    if row_id == NAV_BACK_ROW_ID:
        return "back"
    if row_id == NAV_HOME_ROW_ID:
        return "home"
    return None


def render_menu_as_interactive_list(
    items: List[Dict[str, Any]],
    *,
    title: str = "Menu",
    header_message: Optional[str] = None,
    footer_message: Optional[str] = None,
    show_back_button: bool = True,
    back_button_text: str = "Voltar",
    is_root: bool = False,
    button_text: str = "Ver Opções",
) -> InteractiveList:
    """Converte os filhos de um menu dinâmico numa lista; rowId é sempre o menu_key."""
    grouped: "OrderedDict[str, List[ListRow]]" = OrderedDict()
    for item in items:
        section = item.get("section_title") or "Opções"
        emoji = f"{item['emoji']} " if item.get("emoji") else ""
        description = (item.get("description") or "")[:72] or None
        grouped.setdefault(section, []).append(
            ListRow(title=f"{emoji}{item.get('title') or ''}"[:24], row_id=str(item.get("menu_key") or ""), description=description)
        )

    sections = [ListSection(title=name[:24], rows=rows) for name, rows in grouped.items()]

    nav_rows: List[ListRow] = []
    if show_back_button and not is_root:
        nav_rows.append(ListRow(title=f"⬅️ {back_button_text}"[:24], row_id=NAV_BACK_ROW_ID, description="Retornar ao menu anterior"))
    if not is_root:
        nav_rows.append(ListRow(title="🏠 Menu Principal", row_id=NAV_HOME_ROW_ID, description="Voltar ao início"))
    if nav_rows:
        sections.append(ListSection(title="Navegação", rows=nav_rows))

    return InteractiveList(
        title=title[:60],
        description=(header_message or "")[:1024] or None,
        button_text=button_text[:20],
        footer_text=(footer_message or "")[:60] or None,
        sections=sections,
    )


def create_error_list_response(
    error_message: str,
    items: List[Dict[str, Any]],
    *,
    header_message: Optional[str] = None,
    **menu_config: Any,
) -> BotStructuredResponse:
    lst = render_menu_as_interactive_list(
        items,
        header_message=f"❌ {error_message}\n\n{header_message or 'Escolha uma opção:'}",
        **menu_config,
    )
    return create_list_response(lst)
