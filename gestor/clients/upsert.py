"""
Upsert atômico de cliente.

Grava o cliente e as tabelas filhas em fases; qualquer falha desfaz o que
foi inserido (filhas em ordem reversa e, se o cliente era novo, o próprio
cliente).
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.errors import ClientSaveError
from ..models.clients import AtomicClientUpsert, AtomicUpsertDetails
from ..utils.db_helpers import db_call_with_retry

logger = logging.getLogger(__name__)

CHILD_TABLES = (
    "panel_clients",
    "client_external_apps",
    "client_premium_accounts",
    "client_server_app_credentials",
)
ROLLBACK_ORDER = tuple(reversed(CHILD_TABLES))

WelcomeSender = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass
class TransactionTracker:
    client_id: Optional[str] = None
    inserted_ids: Dict[str, List[str]] = field(default_factory=lambda: {t: [] for t in CHILD_TABLES})
    committed: bool = False


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _first_id(rows: Any, error_prefix: str) -> str:
    if not rows:
        raise ClientSaveError(f"{error_prefix}: nenhum dado retornado")
    return str(rows[0]["id"])


def fixed_app_name(app_id: str) -> Optional[str]:
    """'fixed-smart-one' vira 'SMART ONE'; ids comuns não têm nome fixo."""
    if not app_id.startswith("fixed-"):
        return None
    return app_id.replace("fixed-", "", 1).upper().replace("-", " ")


def parse_price(value: Optional[str]) -> float:
    if not value:
        return 0
    try:
        return float(str(value).replace(",", "."))
    except ValueError:
        return 0


class AtomicClientUpserter:
    def __init__(self, db: Any, *, welcome_sender: Optional[WelcomeSender] = None):
        self._db = db
        self._welcome_sender = welcome_sender

    async def upsert(self, payload: AtomicClientUpsert) -> Dict[str, Any]:
        seller_id = str(payload.seller_id)
        is_update = payload.client_id is not None
        tracker = TransactionTracker()
        details = AtomicUpsertDetails()

        try:
            if is_update:
                client_id = str(payload.client_id)
                self._update_client(client_id, seller_id, payload.client_data)
                tracker.client_id = client_id
                details.client_saved = True
                self._delete_related(client_id)
            else:
                client_id = self._insert_client(seller_id, payload.client_data)
                tracker.client_id = client_id
                details.client_saved = True

            if payload.panel_entries and not is_update:
                details.panel_entries_saved = self._insert_panels(tracker, client_id, seller_id, payload)

            details.external_apps_saved = self._insert_external_apps(tracker, client_id, seller_id, payload)
            details.premium_accounts_saved = self._insert_premium_accounts(tracker, client_id, seller_id, payload)
            details.server_app_credentials_saved = self._insert_credentials(tracker, client_id, seller_id, payload)

            tracker.committed = True
        except Exception as e:
            logger.error(f"[AtomicUpsert] Operation failed, initiating rollback: {e}")
            if not tracker.committed:
                self._rollback(tracker, is_new_client=not is_update)
            raise ClientSaveError(str(e) or "Erro desconhecido", rolled_back=True)

        if payload.send_welcome_message and not is_update:
            self._schedule_welcome(client_id, seller_id, payload.custom_welcome_message)

        result_details = details.model_dump(by_alias=True)
        logger.info(f"[AtomicUpsert] Transaction committed successfully: {result_details}")
        return {"success": True, "clientId": client_id, "details": result_details}

    # ---- fases ----

    def _update_client(self, client_id: str, seller_id: str, client_data: Dict[str, Any]) -> None:
        try:
            (
                self._db.table("clients")
                .update({**client_data, "seller_id": seller_id})
                .eq("id", client_id)
                .eq("seller_id", seller_id)
                .execute()
            )
        except Exception as e:
            raise ClientSaveError(f"Falha ao atualizar cliente: {e}")

    def _delete_related(self, client_id: str) -> None:
        for table in ("client_external_apps", "client_premium_accounts", "client_server_app_credentials"):
            self._db.table(table).delete().eq("client_id", client_id).execute()

    def _insert_client(self, seller_id: str, client_data: Dict[str, Any]) -> str:
        row = {
            **client_data,
            "seller_id": seller_id,
            "renewed_at": _now_iso(),
            # clientes manuais não participam da sincronização automática
            "is_integrated": False,
            "integration_origin": "manual",
        }
        try:
            res = db_call_with_retry("clients.insert", lambda: self._db.table("clients").insert([row]).execute())
        except Exception as e:
            raise ClientSaveError(f"Falha ao criar cliente: {e}")
        return _first_id(res.data, "Falha ao criar cliente")

    def _insert_panels(self, tracker: TransactionTracker, client_id: str, seller_id: str, payload: AtomicClientUpsert) -> int:
        rows = [
            {
                "panel_id": str(entry.panel_id),
                "client_id": client_id,
                "seller_id": seller_id,
                "slot_type": entry.slot_type,
            }
            for entry in payload.panel_entries
        ]
        try:
            res = self._db.table("panel_clients").insert(rows).execute()
        except Exception as e:
            raise ClientSaveError(f"Falha ao salvar slots: {e}")
        ids = [str(r["id"]) for r in (res.data or [])]
        tracker.inserted_ids["panel_clients"] = ids
        return len(ids)

    def _insert_external_apps(self, tracker: TransactionTracker, client_id: str, seller_id: str, payload: AtomicClientUpsert) -> int:
        saved = 0
        for app in payload.external_apps:
            if not app.app_id:
                continue
            fixed_name = fixed_app_name(app.app_id)
            row = {
                "client_id": client_id,
                "seller_id": seller_id,
                "devices": [d.model_dump(exclude_none=True) for d in app.devices if d.mac.strip()],
                "email": app.email or None,
                # senha já chega criptografada
                "password": app.password or None,
                "expiration_date": app.expiration_date or None,
                "external_app_id": None if fixed_name else app.app_id,
                "fixed_app_name": fixed_name,
            }
            self._insert_tracked(tracker, "client_external_apps", row, "Falha ao salvar app externo")
            saved += 1
        return saved

    def _insert_premium_accounts(self, tracker: TransactionTracker, client_id: str, seller_id: str, payload: AtomicClientUpsert) -> int:
        saved = 0
        for account in payload.premium_accounts:
            if not account.plan_name and not account.email:
                continue
            row = {
                "client_id": client_id,
                "seller_id": seller_id,
                "plan_name": account.plan_name or None,
                "email": account.email or None,
                "password": account.password or None,
                "price": parse_price(account.price),
                "expiration_date": account.expiration_date or None,
                "notes": account.notes or None,
            }
            self._insert_tracked(tracker, "client_premium_accounts", row, "Falha ao salvar conta premium")
            saved += 1
        return saved

    def _insert_credentials(self, tracker: TransactionTracker, client_id: str, seller_id: str, payload: AtomicClientUpsert) -> int:
        saved = 0
        for config in payload.server_apps_config:
            for app in config.apps:
                row = {
                    "client_id": client_id,
                    "seller_id": seller_id,
                    "server_id": str(config.server_id),
                    "server_app_id": str(app.server_app_id),
                    "auth_code": app.auth_code or None,
                    "username": app.username or None,
                    "password": app.password or None,
                    "provider": app.provider or None,
                }
                self._insert_tracked(tracker, "client_server_app_credentials", row, "Falha ao salvar credencial")
                saved += 1
        return saved

    def _insert_tracked(self, tracker: TransactionTracker, table: str, row: Dict[str, Any], error_prefix: str) -> None:
        try:
            res = self._db.table(table).insert([row]).execute()
        except Exception as e:
            raise ClientSaveError(f"{error_prefix}: {e}")
        tracker.inserted_ids[table].append(_first_id(res.data, error_prefix))

    # ---- rollback ----

    def _rollback(self, tracker: TransactionTracker, *, is_new_client: bool) -> None:
        logger.info("[AtomicUpsert] Rolling back transaction...")
        for table in ROLLBACK_ORDER:
            ids = tracker.inserted_ids.get(table) or []
            if not ids:
                continue
            logger.info(f"[Rollback] Deleting {len(ids)} records from {table}")
            try:
                self._db.table(table).delete().in_("id", ids).execute()
            except Exception as e:
                logger.error(f"[Rollback] Falha ao limpar {table}: {e}")
        if is_new_client and tracker.client_id:
            logger.info(f"[Rollback] Deleting client {tracker.client_id}")
            try:
                self._db.table("clients").delete().eq("id", tracker.client_id).execute()
            except Exception as e:
                logger.error(f"[Rollback] Falha ao remover cliente {tracker.client_id}: {e}")
        logger.info("[AtomicUpsert] Rollback complete")

    # ---- pós-commit ----

    def _schedule_welcome(self, client_id: str, seller_id: str, custom_message: Optional[str]) -> None:
        if self._welcome_sender is None:
            return
        body: Dict[str, Any] = {"clientId": client_id, "sellerId": seller_id}
        if custom_message:
            body["customMessage"] = custom_message
        task = asyncio.get_running_loop().create_task(self._welcome_sender(body))
        task.add_done_callback(_log_welcome_failure)


def _log_welcome_failure(task: "asyncio.Task[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Welcome message failed: {exc}")
