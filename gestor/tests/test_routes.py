import logging

import pytest
from conftest import FakeFunctions, FakeSupabase
from fastapi.testclient import TestClient

from gestor.container import GestorContainer, get_container
from gestor.core.config import BotConfig
from gestor.core.observability import Observability
from gestor.server import app
from gestor.utils.auth_helpers import verify_token

SELLER = "11111111-1111-1111-1111-111111111111"
OTHER = "99999999-9999-9999-9999-999999999999"
ADMIN = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"


class _Heartbeat:
    def get_alerts(self, seller_id):
        return {"alerts": [{"seller_id": seller_id, "alert_type": "connection_lost"}]}

    def cleanup(self):
        return {"success": True, "deleted": 3}


class _Container(GestorContainer):
    def __init__(self, db, heartbeat=None):
        super().__init__(
            db=db,
            functions=FakeFunctions(),
            obs=Observability(logging.getLogger("test")),
            bot_config=BotConfig(),
        )
        self._heartbeat = heartbeat

    def heartbeat(self):
        return self._heartbeat


@pytest.fixture
def db():
    return FakeSupabase(
        {
            "user_roles": [{"user_id": ADMIN, "role": "admin"}, {"user_id": SELLER, "role": "seller"}],
            "whatsapp_seller_instances": [
                {"seller_id": SELLER, "instance_name": "loja", "is_connected": False, "connected_phone": None}
            ],
        }
    )


@pytest.fixture
def make_client(db):
    def _make(user_id=SELLER, *, heartbeat=None, role="authenticated", **claims):
        container = _Container(db, heartbeat)
        app.dependency_overrides[get_container] = lambda: container
        app.dependency_overrides[verify_token] = lambda: {"user_id": user_id, "role": role, **claims}
        return TestClient(app)

    yield _make
    app.dependency_overrides.clear()


def test_health():
    client = TestClient(app)
    assert client.get("/health").json() == {"status": "healthy", "service": "gestor"}


def test_routes_require_token():
    response = TestClient(app).post("/api/bot/intercept", json={})
    assert response.status_code == 401


def test_atomic_upsert_creates_client(make_client, db):
    response = make_client().post(
        "/api/clients/atomic-upsert",
        json={"sellerId": SELLER, "clientData": {"name": "Maria", "phone": "5511999990000"}},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert db.rows("clients")[0]["id"] == body["clientId"]


def test_atomic_upsert_other_seller_is_forbidden(make_client):
    response = make_client(OTHER).post("/api/clients/atomic-upsert", json={"sellerId": SELLER, "clientData": {}})
    assert response.status_code == 403


def test_atomic_upsert_failure_reports_rollback(make_client, db):
    db.fail("clients", "insert", Exception("violates check constraint"))
    response = make_client().post("/api/clients/atomic-upsert", json={"sellerId": SELLER, "clientData": {"name": "X"}})
    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "Falha ao criar cliente: violates check constraint"
    assert body["rolledBack"] is True


def test_admin_may_act_for_any_seller(make_client):
    response = make_client(ADMIN).post("/api/clients/atomic-upsert", json={"sellerId": SELLER, "clientData": {"name": "Y"}})
    assert response.status_code == 200


def test_bot_process_with_engine_disabled(make_client):
    response = make_client().post(
        "/api/bot/process",
        json={"seller_id": SELLER, "contact_phone": "5511987654321", "message_text": "oi"},
    )
    assert response.status_code == 200
    assert response.json() == {"success": False, "error": "bot_disabled", "responses": []}


def test_bot_intercept_passes_through_without_engine(make_client):
    response = make_client().post(
        "/api/bot/intercept",
        json={"seller_id": SELLER, "sender_phone": "5511987654321", "message_text": "voltar"},
    )
    assert response.status_code == 200
    assert response.json()["intercepted"] is False


def test_heartbeat_ping_needs_no_service(make_client):
    body = make_client().post("/api/connection-heartbeat", json={"action": "ping"}).json()
    assert body["status"] == "ok"
    assert body["service"] == "connection-heartbeat"


def test_heartbeat_seller_action_requires_seller_id(make_client):
    response = make_client(heartbeat=_Heartbeat()).post("/api/connection-heartbeat", json={"action": "alerts"})
    assert response.status_code == 400
    assert response.json()["detail"] == "seller_id é obrigatório"


def test_heartbeat_alerts(make_client):
    response = make_client(heartbeat=_Heartbeat()).post(
        "/api/connection-heartbeat", json={"action": "get_alerts", "seller_id": SELLER}
    )
    assert response.json()["alerts"][0]["alert_type"] == "connection_lost"


def test_heartbeat_cleanup_is_admin_only(make_client):
    assert make_client(heartbeat=_Heartbeat()).post("/api/connection-heartbeat", json={"action": "cleanup"}).status_code == 403
    response = make_client(ADMIN, heartbeat=_Heartbeat()).post("/api/connection-heartbeat", json={"action": "cleanup"})
    assert response.json() == {"success": True, "deleted": 3}


def test_heartbeat_without_evolution_config(make_client):
    response = make_client(heartbeat=None).post("/api/connection-heartbeat", json={"action": "check", "seller_id": SELLER})
    assert response.status_code == 400
    assert response.json()["detail"] == "Evolution API não configurada"


def test_webhook_updates_instance(make_client, db):
    response = make_client().post(
        "/api/webhooks/evolution/loja",
        json={"event": "CONNECTION_UPDATE", "data": {"state": "open"}},
    )
    assert response.json() == {"success": True, "processed": "connection.update"}
    assert db.rows("whatsapp_seller_instances")[0]["is_connected"] is True


def test_webhook_accepts_body_without_content_type(make_client):
    response = make_client().post(
        "/api/webhooks/evolution/loja",
        content=b'{"event": "qrcode.updated"}',
        headers={"content-type": "text/plain"},
    )
    assert response.json()["processed"] == "qrcode.updated"


def test_webhook_unknown_instance(make_client):
    response = make_client().post("/api/webhooks/evolution/fantasma", content=b"not json")
    assert response.status_code == 404
    assert response.json() == {"error": "Instance not found", "instance_name": "fantasma"}


def test_fix_user_roles_for_new_user(make_client, db):
    response = make_client(OTHER, email="novo@loja.com").post("/api/auth/fix-user-roles")
    assert response.json()["role"] == "seller"
    assert db.rows("profiles")[0]["email"] == "novo@loja.com"


def test_fix_user_roles_rejects_service_role(make_client):
    response = make_client("service_role", role="service_role").post("/api/auth/fix-user-roles")
    assert response.status_code == 400


def test_backup_export_of_own_data(make_client, db):
    db.tables["clients"] = [{"id": "c1", "seller_id": SELLER, "name": "Maria", "created_at": "2024-01-01"}]
    body = make_client(email="dono@loja.com").get("/api/backup/export").json()

    assert body["user"] == {"id": SELLER, "email": "dono@loja.com"}
    assert [c["id"] for c in body["data"]["clients"]] == ["c1"]


def test_backup_export_service_role_needs_seller(make_client):
    client = make_client("service_role", role="service_role")
    assert client.get("/api/backup/export").status_code == 400
    assert client.get("/api/backup/export", params={"seller_id": SELLER}).json()["user"]["email"] is None


def test_backup_restore_rejects_bad_format(make_client):
    response = make_client().post("/api/backup/restore", json={"backup": {"version": "3.0"}})
    assert response.status_code == 400
    assert response.json()["detail"] == "Formato de backup inválido"


def test_backup_restore_empty_backup(make_client):
    response = make_client().post("/api/backup/restore", json={"backup": {"version": "3.0", "data": {}}, "mode": "append"})
    assert response.status_code == 200
    assert response.json()["success"] is True
