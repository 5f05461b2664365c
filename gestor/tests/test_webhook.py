import pytest
from conftest import FakeFunctions, FakeSupabase

from gestor.core.errors import NotFoundError, ProviderRequestError, ValidationError
from gestor.evolution.webhook import (
    INSTANCES_TABLE,
    EvolutionWebhookHandler,
    extract_instance_name,
    extract_message_text,
    extract_messages,
    normalize_webhook_event,
    sender_phone_from_webhook,
)

SELLER = "seller-1"
CLIENT_PHONE = "5511987654321"
INSTANCE_PHONE = "5511900000000"


class _FakeEvolution:
    def __init__(self, result=CLIENT_PHONE):
        self.result = result
        self.sent = []

    async def send_text_to_variants(self, instance, phone, text):
        self.sent.append((instance, phone, text))
        return self.result


class _Settings:
    def __init__(self, client):
        self._client = client

    def build_client(self, **kwargs):
        return self._client


class _Dispatcher:
    def __init__(self, replies):
        self.replies = replies
        self.calls = []

    async def handle_message(self, **kwargs):
        self.calls.append(kwargs)
        return self.replies


def _db(**extra):
    tables = {
        INSTANCES_TABLE: [
            {
                "seller_id": SELLER,
                "instance_name": "loja",
                "is_connected": True,
                "connected_phone": INSTANCE_PHONE,
            }
        ]
    }
    tables.update(extra)
    return FakeSupabase(tables)


def _handler(db, *, client=None, dispatcher=None, functions=None, sleeps=None):
    async def _sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    return EvolutionWebhookHandler(
        db,
        dispatcher=dispatcher,
        functions=functions,
        settings_loader=lambda _db: _Settings(client) if client is not None else None,
        sleep=_sleep,
    )


def _incoming(text, *, from_me=False, remote=CLIENT_PHONE):
    return {
        "event": "messages.upsert",
        "instance": "loja",
        "data": {
            "key": {"remoteJid": f"{remote}@s.whatsapp.net", "fromMe": from_me, "id": "ABC"},
            "pushName": "Maria",
            "message": {"conversation": text},
        },
    }


def test_normalize_webhook_event():
    assert normalize_webhook_event("MESSAGES_UPSERT") == "messages.upsert"
    assert normalize_webhook_event("CONNECTION_UPDATE") == "connection.update"
    assert normalize_webhook_event("Connection.Update") == "connection.update"
    assert normalize_webhook_event("presence-update") == "presence.update"
    assert normalize_webhook_event(None) == ""


def test_extract_message_text_variants():
    assert extract_message_text({"message": {"conversation": "oi"}}) == "oi"
    assert extract_message_text({"message": {"extendedTextMessage": {"text": "olá"}}}) == "olá"
    wrapped = {"message": {"ephemeralMessage": {"message": {"conversation": "some"}}}}
    assert extract_message_text(wrapped) == "some"
    reply = {"message": {"listResponseMessage": {"singleSelectReply": {"selectedRowId": "planos"}}}}
    assert extract_message_text(reply) == "planos"
    assert extract_message_text({"body": "texto"}) == "texto"
    assert extract_message_text({"message": {"stickerMessage": {}}}) == ""


def test_sender_never_returns_instance_phone_for_incoming():
    msg = {"key": {"remoteJid": f"{INSTANCE_PHONE}@s.whatsapp.net", "participantAlt": f"{CLIENT_PHONE}@s.whatsapp.net"}}
    assert sender_phone_from_webhook(msg, {}, {}, INSTANCE_PHONE) == CLIENT_PHONE


def test_sender_for_outgoing_is_recipient():
    msg = {"key": {"remoteJid": f"{CLIENT_PHONE}@s.whatsapp.net", "fromMe": True}}
    assert sender_phone_from_webhook(msg, {}, {}, INSTANCE_PHONE) == CLIENT_PHONE


def test_sender_lid_jid_is_rejected():
    msg = {"key": {"remoteJid": "123@lid"}}
    assert sender_phone_from_webhook(msg, {}, {}, INSTANCE_PHONE) == ""


def test_extract_instance_name_paths():
    assert extract_instance_name({"instance": "loja"}) == "loja"
    assert extract_instance_name({"instance": {"instanceName": "loja2"}}) == "loja2"
    assert extract_instance_name({"data": {"instance": {"name": "loja3"}}}) == "loja3"
    assert extract_instance_name({"event": "x"}) is None


def test_extract_messages_accepts_message_in_data():
    data = {"key": {"remoteJid": "x"}, "message": {"conversation": "oi"}}
    assert extract_messages({"messages": [data, "lixo"]}, {}) == [data]
    assert extract_messages({"key": {"id": "1"}}, {}) == [{"key": {"id": "1"}}]


@pytest.mark.anyio
async def test_missing_instance_is_validation_error():
    with pytest.raises(ValidationError):
        await _handler(_db()).handle({"event": "connection.update"})


@pytest.mark.anyio
async def test_unknown_instance_is_not_found():
    with pytest.raises(NotFoundError):
        await _handler(_db()).handle({"event": "connection.update", "instance": "outra"})


@pytest.mark.anyio
async def test_path_instance_is_used_as_fallback():
    db = _db()
    result = await _handler(db).handle({"event": "CONNECTION_UPDATE", "data": {"state": "open"}}, path_instance="loja")
    assert result == {"success": True, "processed": "connection.update"}


@pytest.mark.anyio
async def test_connection_close_marks_offline_and_alerts():
    db = _db()
    await _handler(db).handle({"event": "connection.update", "instance": "loja", "data": {"state": "close"}})

    row = db.rows(INSTANCES_TABLE)[0]
    assert row["is_connected"] is False
    assert row["offline_since"] is not None
    assert row["last_evolution_state"] == "connection.update"
    names = [name for name, _ in db.rpc_calls]
    assert names == ["log_connection_event", "create_connection_alert"]
    assert db.rpc_calls[1][1]["p_alert_type"] == "connection_lost"
    assert db.rows("connection_logs")[0]["event_type"] == "connection.update"


@pytest.mark.anyio
async def test_logout_invalidates_session():
    db = _db()
    await _handler(db).handle({"event": "LOGOUT", "instance": "loja"})
    row = db.rows(INSTANCES_TABLE)[0]
    assert row["session_valid"] is False
    assert db.rpc_calls[-1][1]["p_alert_type"] == "session_invalid"


@pytest.mark.anyio
async def test_incoming_message_is_answered_by_bot():
    db = _db()
    client = _FakeEvolution()
    sleeps = []
    dispatcher = _Dispatcher([{"type": "delay", "delay_ms": 1500}, {"type": "text", "content": "Olá!"}])

    await _handler(db, client=client, dispatcher=dispatcher, sleeps=sleeps).handle(_incoming("oi"))

    assert dispatcher.calls == [{"seller_id": SELLER, "phone": CLIENT_PHONE, "text": "oi", "contact_name": "Maria"}]
    assert sleeps == [1.5]
    assert client.sent == [("loja", CLIENT_PHONE, "Olá!")]


@pytest.mark.anyio
async def test_group_messages_are_ignored():
    dispatcher = _Dispatcher([{"type": "text", "content": "x"}])
    body = _incoming("oi")
    body["data"]["key"]["remoteJid"] = "120363000000@g.us"
    await _handler(_db(), client=_FakeEvolution(), dispatcher=dispatcher).handle(body)
    assert dispatcher.calls == []


@pytest.mark.anyio
async def test_command_reply_is_sent_to_sender():
    db = _db(test_integration_config=[{"seller_id": SELLER, "is_active": True, "logs_enabled": False}])
    client = _FakeEvolution()
    functions = FakeFunctions({"process-whatsapp-command": {"success": True, "response": "Teste criado"}})

    await _handler(db, client=client, functions=functions).handle(_incoming("/teste"))

    name, body = functions.calls[0]
    assert name == "process-whatsapp-command"
    assert body["command_text"] == "/teste"
    assert body["logs_enabled"] is False
    assert client.sent == [("loja", CLIENT_PHONE, "Teste criado")]


@pytest.mark.anyio
async def test_command_http_failure_is_logged():
    db = _db()
    error = ProviderRequestError("falhou", provider="supabase-functions", status_code=502, details={"body": "bad gateway"})
    functions = FakeFunctions({"process-whatsapp-command": error})

    await _handler(db, client=_FakeEvolution(), functions=functions).handle(_incoming("/teste"))

    [log] = db.rows("command_logs")
    assert log["success"] is False
    assert log["error_message"] == "process-whatsapp-command HTTP 502: bad gateway"


@pytest.mark.anyio
async def test_unexpected_command_error_is_logged_and_batch_finishes():
    db = _db()
    functions = FakeFunctions({"process-whatsapp-command": RuntimeError("quebrou")})

    result = await _handler(db, functions=functions).handle(_incoming("/teste"))

    assert result == {"success": True, "processed": "messages.upsert", "failed_messages": 1}
    assert db.rows("command_logs")[0]["error_message"] == "Processing error: quebrou"
    assert [name for name, _ in db.rpc_calls] == ["log_connection_event"]


class _FlakyDispatcher(_Dispatcher):
    async def handle_message(self, **kwargs):
        self.calls.append(kwargs)
        if kwargs["text"] == "explode":
            raise RuntimeError("dispatcher caiu")
        return self.replies


@pytest.mark.anyio
async def test_failing_message_does_not_stop_the_batch():
    db = _db()
    client = _FakeEvolution()
    dispatcher = _FlakyDispatcher([{"type": "text", "content": "Olá!"}])
    other = "5511900001111"
    body = {
        "event": "messages.upsert",
        "instance": "loja",
        "data": {
            "messages": [
                {"key": {"remoteJid": f"{CLIENT_PHONE}@s.whatsapp.net", "id": "1"}, "message": {"conversation": "explode"}},
                {"key": {"remoteJid": f"{other}@s.whatsapp.net", "id": "2"}, "message": {"conversation": "oi"}},
            ]
        },
    }

    result = await _handler(db, client=client, dispatcher=dispatcher).handle(body)

    assert result["failed_messages"] == 1
    assert [c["text"] for c in dispatcher.calls] == ["explode", "oi"]
    assert client.sent == [("loja", other, "Olá!")]
    assert db.rows(INSTANCES_TABLE)[0]["last_evolution_state"] == "messages.upsert"
    assert db.rpc_calls[0][0] == "log_connection_event"


@pytest.mark.anyio
async def test_renewal_detected_on_outgoing_message():
    db = _db(test_integration_config=[{"seller_id": SELLER, "is_active": True, "detect_renewal_enabled": True}])
    functions = FakeFunctions({"sync-client-renewal": {"success": True}})

    await _handler(db, functions=functions).handle(_incoming("Seu plano foi renovado até 10/05", from_me=True))

    assert functions.calls == [
        (
            "sync-client-renewal",
            {
                "seller_id": SELLER,
                "client_phone": CLIENT_PHONE,
                "message_content": "Seu plano foi renovado até 10/05",
                "source": "message_detection",
            },
        )
    ]


@pytest.mark.anyio
async def test_renewal_detection_disabled_by_default():
    functions = FakeFunctions()
    await _handler(_db(), functions=functions).handle(_incoming("Seu plano foi renovado até 10/05", from_me=True))
    assert functions.calls == []
