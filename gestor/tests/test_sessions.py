from datetime import datetime, timedelta, timezone

from conftest import DuplicateKeyError, FakeSupabase

from gestor.bot.sessions import (
    LOGS_TABLE,
    SESSIONS_TABLE,
    ActionResult,
    SessionInterceptor,
    apply_stack,
    execute_action,
    match_global_command,
    parse_input,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
SELLER = "seller-1"
PHONE = "5511987654321"


def _db(**session):
    tables = {"bot_engine_config": [{"seller_id": SELLER, "is_enabled": True}]}
    if session:
        row = {
            "user_id": PHONE,
            "seller_id": SELLER,
            "state": "PLANOS",
            "previous_state": "START",
            "stack": ["START", "PLANOS"],
            "locked": False,
            "updated_at": (NOW - timedelta(minutes=5)).isoformat(),
        }
        row.update(session)
        tables[SESSIONS_TABLE] = [row]
    return FakeSupabase(tables)


def _interceptor(db):
    return SessionInterceptor(db, now=lambda: NOW)


def test_parse_input():
    parsed = parse_input("  /Renovar 30 dias ")
    assert parsed.is_command is True
    assert parsed.command == "renovar"
    assert parsed.args == ["30", "dias"]

    number = parse_input("12")
    assert number.is_number is True
    assert number.number == 12

    assert parse_input("Olá, quero um teste!").keywords == ["olá", "quero", "teste"]


def test_global_commands():
    assert match_global_command(parse_input("0")) == "back_to_previous"
    assert match_global_command(parse_input("#")) == "back_to_start"
    assert match_global_command(parse_input("Início")) == "back_to_start"
    assert match_global_command(parse_input("SAIR")) == "sair"
    assert match_global_command(parse_input("falar com alguem")) == "humano"
    assert match_global_command(parse_input("quero voltar")) is None


def test_actions_and_stack():
    back = execute_action("back_to_previous", ["A", "B"], "A")
    assert back.new_state == "A"
    assert apply_stack(back, ["A", "B"]) == ["A"]
    assert execute_action("back_to_previous", [], None).new_state == "START"
    assert apply_stack(execute_action("menu", ["A"], None), ["A"]) == []
    assert execute_action("humano", [], None).new_state == "AGUARDANDO_HUMANO"
    assert execute_action("desconhecido", [], None) == ActionResult(success=False)


def test_back_command_pops_stack_and_unlocks():
    db = _db(state="PLANOS")
    result = _interceptor(db).intercept(SELLER, "+55 (11) 98765-4321", "0")

    assert result == {"intercepted": True, "response": None, "new_state": "START", "should_continue": False}
    session = db.rows(SESSIONS_TABLE)[0]
    assert session["state"] == "START"
    assert session["stack"] == ["START"]
    assert session["locked"] is False
    log = db.rows(LOGS_TABLE)[0]
    assert {k: log[k] for k in ("user_id", "seller_id", "message", "from_user")} == {"user_id": PHONE, "seller_id": SELLER, "message": "0", "from_user": True}


def test_new_session_is_created_locked_then_released():
    db = _db()
    result = _interceptor(db).intercept(SELLER, PHONE, "menu")

    assert result["new_state"] == "MENU"
    session = db.rows(SESSIONS_TABLE)[0]
    assert session["state"] == "MENU"
    assert session["locked"] is False


def test_regular_message_passes_through():
    db = _db()
    result = _interceptor(db).intercept(SELLER, PHONE, "quero ver os planos")
    assert result == {"intercepted": False, "should_continue": True}


def test_pass_through_states_and_commands():
    db = _db(state="AGUARDANDO_HUMANO")
    assert _interceptor(db).intercept(SELLER, PHONE, "menu")["intercepted"] is False
    assert db.rows(SESSIONS_TABLE)[0]["state"] == "AGUARDANDO_HUMANO"

    db = _db()
    assert _interceptor(db).intercept(SELLER, PHONE, "/renovar")["should_continue"] is True


def test_engine_disabled_skips_everything():
    db = FakeSupabase()
    assert _interceptor(db).intercept(SELLER, PHONE, "menu") == {"intercepted": False, "should_continue": True}
    assert db.rows(SESSIONS_TABLE) == []


def test_busy_session_is_not_touched():
    db = _db(locked=True, updated_at=(NOW - timedelta(seconds=5)).isoformat())
    result = _interceptor(db).intercept(SELLER, PHONE, "sair")

    assert result["intercepted"] is False
    session = db.rows(SESSIONS_TABLE)[0]
    assert session["state"] == "PLANOS"
    assert session["locked"] is True


def test_stale_lock_is_taken_over():
    db = _db(locked=True, updated_at=(NOW - timedelta(seconds=60)).isoformat())
    result = _interceptor(db).intercept(SELLER, PHONE, "sair")
    assert result["new_state"] == "ENCERRADO"
    assert db.rows(SESSIONS_TABLE)[0]["stack"] == []


def test_concurrent_insert_loses_lock():
    db = _db()
    db.fail(SESSIONS_TABLE, "insert", DuplicateKeyError())
    assert _interceptor(db).lock_session(PHONE, SELLER) is False


def test_missing_fields_pass_through():
    assert _interceptor(FakeSupabase()).intercept("", PHONE, "menu")["should_continue"] is True
