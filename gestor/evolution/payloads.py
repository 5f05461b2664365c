"""
Formatos de payload para botões e listas da Evolution.

Versões diferentes da Evolution esperam esquemas diferentes, então cada
mensagem gera várias variantes que são tentadas em ordem.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

TITLE_MAX = 60
BODY_MAX = 1024
BUTTON_TEXT_MAX = 20
FOOTER_MAX = 60
SECTION_TITLE_MAX = 24
ROW_TITLE_MAX = 24
ROW_DESCRIPTION_MAX = 72
MAX_BUTTONS = 3

# ids reservados de navegação; revendedores só alteram o texto exibido
NAV_BACK_ROW_ID = "__nav_back__"
NAV_HOME_ROW_ID = "__nav_home__"


def strip_markdown(value: Optional[str]) -> str:
    text = re.sub(r"[*_~`]", "", str(value or ""))
    return re.sub(r"\s{3,}", "  ", text).strip()


def ensure_non_empty(value: Optional[str], fallback: str) -> str:
    v = str(value if value is not None else "").strip()
    return v or fallback


@dataclass
class ListRow:
    title: str
    row_id: str
    description: Optional[str] = None


@dataclass
class ListSection:
    title: str
    rows: List[ListRow] = field(default_factory=list)


@dataclass
class InteractiveList:
    title: str
    sections: List[ListSection] = field(default_factory=list)
    button_text: str = "Ver Opções"
    description: Optional[str] = None
    footer_text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "title": self.title,
            "buttonText": self.button_text,
            "sections": [
                {
                    "title": s.title,
                    "rows": [
                        {"title": r.title, "rowId": r.row_id, **({"description": r.description} if r.description else {})}
                        for r in s.rows
                    ],
                }
                for s in self.sections
            ],
        }
        if self.description:
            out["description"] = self.description
        if self.footer_text:
            out["footerText"] = self.footer_text
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InteractiveList":
        sections = [
            ListSection(
                title=str(s.get("title") or ""),
                rows=[
                    ListRow(
                        title=str(r.get("title") or ""),
                        row_id=str(r.get("rowId") or r.get("id") or ""),
                        description=r.get("description"),
                    )
                    for r in (s.get("rows") or [])
                ],
            )
            for s in (data.get("sections") or [])
        ]
        return cls(
            title=str(data.get("title") or ""),
            sections=sections,
            button_text=str(data.get("buttonText") or "Ver Opções"),
            description=data.get("description"),
            footer_text=data.get("footerText"),
        )


@dataclass
class ButtonOption:
    button_id: str
    button_text: str


@dataclass
class ButtonsMessage:
    title: str
    buttons: List[ButtonOption] = field(default_factory=list)
    description: Optional[str] = None
    footer_text: Optional[str] = None


@dataclass(frozen=True)
class PayloadVariant:
    name: str
    payload: Dict[str, Any]


def build_send_buttons_variants(message: ButtonsMessage, phone: str) -> List[PayloadVariant]:
    safe_title = ensure_non_empty(message.title, "Menu")[:TITLE_MAX]
    safe_description = ensure_non_empty(message.description, "Selecione uma opção")
    body_text = f"{safe_title}\n\n{safe_description}"[:BODY_MAX]
    number = f"{phone}@c.us"

    def _buttons() -> List[Dict[str, str]]:
        # a Evolution 2.3.7 exige type=reply em cada botão
        return [
            {
                "type": "reply",
                "id": btn.button_id or str(idx + 1),
                "text": ensure_non_empty(btn.button_text, f"Opção {idx + 1}")[:BUTTON_TEXT_MAX],
            }
            for idx, btn in enumerate(message.buttons[:MAX_BUTTONS])
        ]

    return [
        PayloadVariant(
            "evolution.v237.title.body",
            {"number": number, "title": safe_title, "body": safe_description, "buttons": _buttons()},
        ),
        PayloadVariant("evolution.v237.body.only", {"number": number, "body": body_text, "buttons": _buttons()}),
        PayloadVariant("evolution.v237.text.field", {"number": number, "text": body_text, "buttons": _buttons()}),
    ]


def build_send_list_variants(lst: InteractiveList, phone: str) -> List[PayloadVariant]:
    safe_title = ensure_non_empty(lst.title, "Menu")[:TITLE_MAX]
    safe_description = ensure_non_empty(lst.description, "Selecione uma opção")
    safe_button = strip_markdown(ensure_non_empty(lst.button_text, "Ver opções")[:BUTTON_TEXT_MAX])[:BUTTON_TEXT_MAX]
    safe_footer = strip_markdown(ensure_non_empty(lst.footer_text, " ")[:FOOTER_MAX])[:FOOTER_MAX] or " "
    body_text = strip_markdown(f"{safe_title}\n\n{safe_description}")[:BODY_MAX]
    flat_description = strip_markdown(safe_description)[:BODY_MAX]

    def _row_fields(row: ListRow) -> Dict[str, str]:
        return {
            "title": ensure_non_empty(row.title, "Opção")[:ROW_TITLE_MAX],
            "description": ensure_non_empty(row.description, " ")[:ROW_DESCRIPTION_MAX],
        }

    sections_with_id = [
        {
            "title": ensure_non_empty(s.title, "Opções")[:SECTION_TITLE_MAX],
            "rows": [{"id": r.row_id, **_row_fields(r)} for r in s.rows],
        }
        for s in lst.sections
    ]
    values_with_row_id = [
        {
            "title": ensure_non_empty(s.title, "Opções")[:SECTION_TITLE_MAX],
            "rows": [{**_row_fields(r), "rowId": r.row_id} for r in s.rows],
        }
        for s in lst.sections
    ]
    flat = {
        "number": phone,
        "title": safe_title,
        "description": flat_description,
        "buttonText": safe_button,
        "footerText": safe_footer,
    }

    return [
        PayloadVariant(
            "interactive.sections.id",
            {
                "number": phone,
                "type": "interactive",
                "interactive": {
                    "type": "list",
                    "body": {"text": body_text},
                    "footer": {"text": safe_footer},
                    "action": {"button": safe_button, "sections": sections_with_id},
                },
            },
        ),
        PayloadVariant("flat.sections.id", {**flat, "sections": sections_with_id}),
        PayloadVariant("flat.values.rowId", {**flat, "values": values_with_row_id}),
    ]


def list_to_buttons(lst: InteractiveList) -> ButtonsMessage:
    """Usa as três primeiras linhas (de todas as seções) como botões."""
    rows = [row for section in lst.sections for row in section.rows][:MAX_BUTTONS]
    return ButtonsMessage(
        title=lst.title,
        description=lst.description,
        footer_text=lst.footer_text,
        buttons=[ButtonOption(button_id=r.row_id, button_text=r.title[:BUTTON_TEXT_MAX]) for r in rows],
    )


def buttons_to_text_fallback(message: ButtonsMessage) -> str:
    text = f"📋 *{message.title}*\n"
    if message.description:
        text += f"{message.description}\n"
    text += "\n"
    for idx, btn in enumerate(message.buttons):
        text += f"*{idx + 1}.* {btn.button_text}\n"
    text += "\n_Digite o número da opção desejada_"
    if message.footer_text:
        text += f"\n\n_{message.footer_text}_"
    return text


def list_to_text_fallback(lst: InteractiveList) -> str:
    lines = [f"📋 *{lst.title}*"]
    if lst.description:
        lines.append(lst.description)
    number = 0
    for section in lst.sections:
        lines.append("")
        if len(lst.sections) > 1:
            lines.append(f"*{section.title}*")
        for row in section.rows:
            if row.row_id == NAV_BACK_ROW_ID:
                key = "0"
            elif row.row_id == NAV_HOME_ROW_ID:
                key = "#"
            else:
                number += 1
                key = str(number)
            line = f"*{key}.* {row.title}"
            if row.description and row.description.strip():
                line += f" - {row.description}"
            lines.append(line)
    lines.append("")
    lines.append("_Digite o número da opção desejada_")
    if lst.footer_text:
        lines.append("")
        lines.append(f"_{lst.footer_text}_")
    return "\n".join(lines)
