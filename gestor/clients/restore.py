"""
Restauração de backup do revendedor.

As tabelas são restauradas por níveis de dependência, remapeando chaves
estrangeiras para os ids recém-criados. Erros de constraint são contados e a
restauração segue; erros críticos (schema / recursos) desfazem tudo que foi
inserido.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..core.errors import RestoreError, ValidationError
from ..utils.db_helpers import db_error_code

logger = logging.getLogger(__name__)

BATCH_SIZE = 100

LEVELS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    (
        "level1",
        (
            "plans",
            "servers",
            "shared_panels",
            "whatsapp_templates",
            "client_categories",
            "external_apps",
            "coupons",
            "bills_to_pay",
        ),
    ),
    ("level2", ("server_apps",)),
    ("level3", ("clients",)),
    (
        "level4",
        (
            "panel_clients",
            "referrals",
            "message_history",
            "client_external_apps",
            "client_premium_accounts",
        ),
    ),
)

# (coluna, obrigatória)
FOREIGN_KEYS: Dict[str, Tuple[Tuple[str, bool], ...]] = {
    "clients": (("plan_id", False), ("server_id", False), ("server_id_2", False)),
    "server_apps": (("server_id", True),),
    "panel_clients": (("panel_id", True), ("client_id", True)),
    "referrals": (("referrer_client_id", True), ("referred_client_id", True)),
    "message_history": (("client_id", True), ("template_id", False)),
    "client_external_apps": (("client_id", True), ("external_app_id", True)),
    "client_premium_accounts": (("client_id", True),),
}

ROLLBACK_ORDER = (
    "client_premium_accounts",
    "client_external_apps",
    "message_history",
    "referrals",
    "panel_clients",
    "server_apps",
    "clients",
    "external_apps",
    "client_categories",
    "shared_panels",
    "bills_to_pay",
    "whatsapp_templates",
    "coupons",
    "servers",
    "plans",
)

REPLACE_DELETE_ORDER = (
    "client_notification_tracking",
    "client_external_apps",
    "client_premium_accounts",
    "server_apps",
    "panel_clients",
    "message_history",
    "referrals",
    "clients",
    "plans",
    "servers",
    "coupons",
    "whatsapp_templates",
    "bills_to_pay",
    "shared_panels",
    "client_categories",
    "external_apps",
)

CONSTRAINT_CODES = ("23503", "23505")


def is_critical_code(code: Optional[str]) -> bool:
    return bool(code) and (code.startswith("42") or code.startswith("53"))


def prepare_item(item: Dict[str, Any], table: str, seller_id: str, id_map: Dict[str, str]) -> Optional[Tuple[Any, Dict[str, Any]]]:
    """Retorna (id antigo, linha pronta) ou None quando uma FK obrigatória não foi restaurada."""
    old_id = item.get("id")
    row = {k: v for k, v in item.items() if k not in ("id", "created_at", "updated_at")}
    row["seller_id"] = seller_id

    for column, required in FOREIGN_KEYS.get(table, ()):
        value = item.get(column)
        if value and value in id_map:
            row[column] = id_map[value]
        elif required:
            return None
        elif value:
            row[column] = None
    return old_id, row


@dataclass
class RestoreTracker:
    inserted_ids: Dict[str, List[str]] = field(default_factory=dict)
    phase: str = "init"
    started_at: float = field(default_factory=time.monotonic)
    committed: bool = False

    def track(self, table: str, new_id: str) -> None:
        self.inserted_ids.setdefault(table, []).append(new_id)


class _CriticalRestoreError(Exception):
    pass


class BackupRestorer:
    def __init__(self, db: Any, *, batch_size: int = BATCH_SIZE):
        self._db = db
        self._batch_size = batch_size

    def restore(self, seller_id: str, backup: Any, mode: str = "append") -> Dict[str, Any]:
        if not isinstance(backup, dict) or not isinstance(backup.get("data"), dict):
            raise ValidationError("Formato de backup inválido")

        logger.info(
            f"[restore-data] seller_id={seller_id} action=restore_start mode={mode} "
            f"backup_version={backup.get('version')}"
        )

        tx = RestoreTracker()
        results: Dict[str, Any] = {
            "success": True,
            "restored": {},
            "errors": [],
            "skipped": {},
            "rolledBack": False,
        }

        try:
            tx.phase = "cleanup"
            if mode == "replace":
                self._delete_existing(seller_id)

            id_map: Dict[str, str] = {}
            data = backup["data"]
            for level, tables in LEVELS:
                tx.phase = level
                logger.info(f"[restore-data] Restoring {level}...")
                for table in tables:
                    results["restored"][table] = self._restore_table(
                        tx, table, data.get(table) or [], seller_id, id_map, results
                    )
            tx.committed = True
        except Exception as e:
            rolled_back = bool(tx.inserted_ids)
            if rolled_back:
                self._rollback(tx, str(e))
            logger.error(f"[restore-data] action=restore_error status=failed phase={tx.phase} error={e}")
            raise RestoreError(str(e) or "Erro desconhecido", phase=tx.phase, rolled_back=rolled_back)

        results["restored"] = {k: v for k, v in results["restored"].items() if v}
        duration_ms = int((time.monotonic() - tx.started_at) * 1000)
        logger.info(
            f"[restore-data] seller_id={seller_id} action=restore_complete status=success "
            f"duration={duration_ms}ms details={results['restored']}"
        )
        if results["skipped"]:
            logger.info(f"[restore-data] skipped_items={results['skipped']}")
        return results

    def _delete_existing(self, seller_id: str) -> None:
        logger.info("[restore-data] Deleting existing data...")
        for table in REPLACE_DELETE_ORDER:
            self._db.table(table).delete().eq("seller_id", seller_id).execute()

    def _restore_table(
        self,
        tx: RestoreTracker,
        table: str,
        items: List[Dict[str, Any]],
        seller_id: str,
        id_map: Dict[str, str],
        results: Dict[str, Any],
    ) -> int:
        if not items:
            return 0
        tx.phase = table

        prepared: List[Tuple[Any, Dict[str, Any]]] = []
        skipped = 0
        for item in items:
            entry = prepare_item(item, table, seller_id, id_map)
            if entry is None:
                skipped += 1
            else:
                prepared.append(entry)
        if skipped:
            results["skipped"][table] = skipped

        count = 0
        for start in range(0, len(prepared), self._batch_size):
            batch = prepared[start : start + self._batch_size]
            try:
                res = self._db.table(table).insert([row for _, row in batch]).execute()
            except Exception as e:
                code = db_error_code(e)
                if is_critical_code(code):
                    raise _CriticalRestoreError(f"Critical error in {table}: {e}")
                logger.warning(f"[{table}] Bulk insert failed ({code}), falling back to row-by-row: {e}")
                count += self._insert_rows(tx, table, batch, id_map, results)
                continue
            for (old_id, _), row in zip(batch, res.data or []):
                self._register(tx, table, old_id, row, id_map)
                count += 1
        return count

    def _insert_rows(
        self,
        tx: RestoreTracker,
        table: str,
        batch: List[Tuple[Any, Dict[str, Any]]],
        id_map: Dict[str, str],
        results: Dict[str, Any],
    ) -> int:
        count = 0
        for old_id, row in batch:
            try:
                res = self._db.table(table).insert([row]).execute()
            except Exception as e:
                code = db_error_code(e)
                if is_critical_code(code):
                    raise _CriticalRestoreError(f"Critical error in {table}: {e}")
                if code is None:
                    raise _CriticalRestoreError(f"Exception in {table}: {e}")
                if code in CONSTRAINT_CODES:
                    logger.warning(f"[{table}] Constraint violation: {e}")
                results["errors"].append(f"{table}: {e}")
                continue
            if res.data:
                self._register(tx, table, old_id, res.data[0], id_map)
                count += 1
        return count

    @staticmethod
    def _register(tx: RestoreTracker, table: str, old_id: Any, row: Dict[str, Any], id_map: Dict[str, str]) -> None:
        new_id = str(row["id"])
        if old_id:
            id_map[old_id] = new_id
        tx.track(table, new_id)

    def _rollback(self, tx: RestoreTracker, reason: str) -> None:
        logger.error(f"[restore-data] ROLLBACK triggered: {reason}")
        for table in ROLLBACK_ORDER:
            ids = tx.inserted_ids.get(table)
            if not ids:
                continue
            logger.info(f"[rollback] Deleting {len(ids)} records from {table}...")
            try:
                self._db.table(table).delete().in_("id", ids).execute()
            except Exception as e:
                logger.error(f"[rollback] Failed to rollback {table}: {e}")
        logger.info(f"[restore-data] Rollback completed in {int((time.monotonic() - tx.started_at) * 1000)}ms")
