from conftest import FakeSupabase

from gestor.bot.interactive import STRUCTURED_PREFIX, deserialize_response
from gestor.bot.menus import MENUS_TABLE, DynamicMenus, match_menu_item, render_menu_as_text
from gestor.evolution.payloads import NAV_BACK_ROW_ID, NAV_HOME_ROW_ID

SELLER = "seller-1"


def _menu(menu_id, key, title, parent=None, order=0, **extra):
    row = {
        "id": menu_id,
        "seller_id": SELLER,
        "menu_key": key,
        "title": title,
        "parent_menu_id": parent,
        "display_order": order,
        "is_active": True,
        "is_root": False,
    }
    row.update(extra)
    return row


def _db():
    return FakeSupabase(
        {
            MENUS_TABLE: [
                _menu("root", "principal", "Menu", is_root=True, header_message="Escolha uma opção:"),
                _menu("m3", "pix", "Pagar", "root", 3, menu_type="message", target_message="Chave PIX: 123", section_title="Financeiro"),
                _menu("m1", "planos", "Planos", "root", 1, menu_type="submenu", target_menu_key="planos_menu", emoji="📋"),
                _menu("m2", "site", "Nosso site", "root", 2, menu_type="link", target_url="https://exemplo.com"),
                _menu("sub", "planos_menu", "Planos", "root", 9, menu_type="submenu"),
                _menu("s1", "mensal", "Mensal", "sub", 1, menu_type="flow", target_flow_id="flow-1"),
                _menu("off", "velho", "Desativado", "root", 0, is_active=False),
            ]
        }
    )


def test_match_menu_item():
    items = [{"menu_key": "planos", "title": "Ver Planos"}, {"menu_key": "site", "title": "Site"}]
    assert match_menu_item(items, "2")["menu_key"] == "site"
    assert match_menu_item(items, "PLANOS")["menu_key"] == "planos"
    assert match_menu_item(items, "quero ver planos agora")["menu_key"] == "planos"
    assert match_menu_item(items, "xyz") is None
    assert match_menu_item(items, "ver")["menu_key"] == "planos"
    assert match_menu_item(items, "9") is None
    assert match_menu_item(items, "") is None


def test_render_text_numbers_items_and_sections():
    text = render_menu_as_text(
        [{"title": "Planos", "emoji": "📋"}, {"title": "Pagar", "section_title": "Financeiro", "description": "PIX"}],
        header_message="Olá",
        show_back_button=False,
    )
    assert text.startswith("Olá\n")
    assert "📌 *Opções*" in text
    assert "*1* - 📋 Planos" in text
    assert "*2* - Pagar" in text
    assert "   └ PIX" in text
    assert "*0* -" not in text
    assert text.endswith("*#* - Menu Principal")


def test_items_are_ordered_and_filtered():
    items = DynamicMenus(_db()).get_menu_items(SELLER, "root")
    assert [i["menu_key"] for i in items] == ["planos", "site", "pix", "planos_menu"]
    root_level = DynamicMenus(_db()).get_menu_items(SELLER, None)
    assert [i["id"] for i in root_level] == ["root"]


def test_parent_lookup_and_state_menu():
    menus = DynamicMenus(_db())
    assert menus.get_parent_menu("s1")["id"] == "sub"
    assert menus.get_parent_menu("root") is None

    menu, items = menus.get_menu_for_state(SELLER, "planos_menu")
    assert menu["id"] == "sub"
    assert [i["menu_key"] for i in items] == ["mensal"]

    fallback, _ = menus.get_menu_for_state(SELLER, "nao-existe")
    assert fallback["id"] == "root"


def test_dynamic_input_actions():
    menus = DynamicMenus(_db())
    assert menus.process_dynamic_menu_input(SELLER, None, "0") == {"action": "back"}
    assert menus.process_dynamic_menu_input(SELLER, None, "#") == {"action": "home"}
    assert menus.process_dynamic_menu_input(SELLER, "planos_menu", "__nav_back__") == {"action": "back"}
    assert menus.process_dynamic_menu_input(SELLER, "planos_menu", "__nav_home__") == {"action": "home"}
    assert menus.process_dynamic_menu_input(SELLER, None, "1") == {"action": "show_submenu", "menu_key": "planos_menu"}
    assert menus.process_dynamic_menu_input(SELLER, None, "site") == {
        "action": "show_link",
        "url": "https://exemplo.com",
        "message": "🔗 Acesse: https://exemplo.com",
    }
    assert menus.process_dynamic_menu_input(SELLER, None, "3") == {"action": "show_message", "message": "Chave PIX: 123"}
    assert menus.process_dynamic_menu_input(SELLER, "planos_menu", "1") == {"action": "execute_flow", "flow_id": "flow-1"}


def test_invalid_input_text_and_interactive():
    menus = DynamicMenus(_db())
    text = menus.process_dynamic_menu_input(SELLER, None, "xyz")
    assert text["action"] == "invalid"
    assert text["response_text"].startswith("❌ Opção inválida. Digite o *número*")
    assert "*1* - 📋 Planos" in text["response_text"]

    interactive = menus.process_dynamic_menu_input(SELLER, "planos_menu", "xyz", interactive=True)
    assert interactive["response_text"].startswith(STRUCTURED_PREFIX)
    lst = deserialize_response(interactive["response_text"]).list
    assert lst.description.startswith("❌ Opção inválida.")
    row_ids = [r.row_id for s in lst.sections for r in s.rows]
    assert row_ids == ["mensal", NAV_BACK_ROW_ID, NAV_HOME_ROW_ID]


def test_unconfigured_menu():
    result = DynamicMenus(FakeSupabase()).process_dynamic_menu_input(SELLER, None, "1")
    assert result == {"action": "invalid", "response_text": "Menu não configurado."}


def test_process_menu_selection():
    menus = DynamicMenus(_db())
    found = menus.process_menu_selection(SELLER, "root", "2")
    assert found["found"] is True
    assert found["menu_type"] == "link"
    assert menus.process_menu_selection(SELLER, "root", "99") == {"found": False}
