import pytest

from gestor.bot.interactive import create_list_response, create_text_response, serialize_response
from gestor.core.errors import ProviderRequestError
from gestor.evolution.delivery import MessageDelivery
from gestor.evolution.payloads import ButtonOption, ButtonsMessage, InteractiveList, ListRow, ListSection


class _FakeEvolution:
    def __init__(self, *, list_failures=0, button_responses=None, text_result="5511987654321"):
        self.list_failures = list_failures
        self.button_responses = list(button_responses or [])
        self.text_result = text_result
        self.list_payloads = []
        self.button_payloads = []
        self.texts = []

    async def send_list_payload(self, instance, payload):
        self.list_payloads.append(payload)
        if len(self.list_payloads) <= self.list_failures:
            raise ProviderRequestError("Erro retornado pelo provedor.", provider="evolution", status_code=400)
        return {"key": {"id": "1"}}

    async def send_buttons_payload(self, instance, payload):
        self.button_payloads.append(payload)
        return self.button_responses.pop(0) if self.button_responses else {"key": {"id": "1"}}

    async def send_text_to_variants(self, instance, phone, text):
        self.texts.append(text)
        return self.text_result


def _list():
    return InteractiveList(title="Menu", sections=[ListSection("Opções", [ListRow("Planos", "planos")])])


@pytest.mark.anyio
async def test_list_uses_second_variant_after_first_rejected():
    client = _FakeEvolution(list_failures=1)
    result = await MessageDelivery(client, "loja").send_list("5511987654321", _list())

    assert result.success is True
    assert result.mode == "list"
    assert result.variant == "flat.sections.id"
    assert [a["ok"] for a in result.attempts] == [False, True]


@pytest.mark.anyio
async def test_list_falls_back_to_numbered_text():
    client = _FakeEvolution(list_failures=3)
    result = await MessageDelivery(client, "loja").send_list("5511987654321", _list())

    assert result.mode == "text_fallback"
    assert result.success is True
    assert "*1.* Planos" in client.texts[0]


@pytest.mark.anyio
async def test_buttons_with_empty_params_are_treated_as_failure():
    empty = {"message": {"buttonsMessage": {"buttons": [{"buttonParamsJson": "{}"}]}}}
    client = _FakeEvolution(button_responses=[empty, {"key": {"id": "2"}}])
    message = ButtonsMessage(title="Menu", buttons=[ButtonOption("1", "Sim")])

    result = await MessageDelivery(client, "loja").send_buttons("5511987654321", message)

    assert result.variant == "evolution.v237.body.only"
    assert result.attempts[0]["error"] == "empty buttonParamsJson"


@pytest.mark.anyio
async def test_structured_routing():
    client = _FakeEvolution()
    delivery = MessageDelivery(client, "loja")

    plain = await delivery.send_structured("5511987654321", "Olá!")
    assert plain.mode == "text"
    assert client.texts == ["Olá!"]

    listed = await delivery.send_structured("5511987654321", serialize_response(create_list_response(_list())))
    assert listed.mode == "list"

    text = await delivery.send_structured("5511987654321", serialize_response(create_text_response("Oi")))
    assert text.mode == "text"
    assert client.texts[-1] == "Oi"


@pytest.mark.anyio
async def test_failed_text_fallback_reports_failure():
    client = _FakeEvolution(list_failures=3, text_result=None)
    result = await MessageDelivery(client, "loja").send_list("5511987654321", _list())
    assert result.success is False
    assert result.attempts[-1] == {"variant": "text_fallback", "ok": False}
