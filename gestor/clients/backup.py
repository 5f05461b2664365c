"""Exportação paginada dos dados de um revendedor."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

PAGE_SIZE = 500
BACKUP_VERSION = "1.0"

ORDERED_TABLES = (
    "clients",
    "plans",
    "servers",
    "coupons",
    "referrals",
    "whatsapp_templates",
    "bills_to_pay",
    "shared_panels",
    "message_history",
)
# tabelas sem created_at confiável
UNORDERED_TABLES = (
    "panel_clients",
    "client_categories",
    "external_apps",
    "client_external_apps",
    "server_apps",
    "client_premium_accounts",
)


def fetch_all_paginated(db: Any, table: str, seller_id: str, *, ordered: bool = True, page_size: int = PAGE_SIZE) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    offset = 0
    while True:
        query = db.table(table).select("*").eq("seller_id", seller_id).range(offset, offset + page_size - 1)
        if ordered:
            query = query.order("created_at")
        page = query.execute().data or []
        rows.extend(page)
        if len(page) < page_size:
            return rows
        offset += page_size


def export_seller_data(db: Any, seller_id: str, email: Optional[str] = None, *, page_size: int = PAGE_SIZE) -> Dict[str, Any]:
    logger.info(f"[backup-data] seller_id={seller_id} action=export_start batch_size={page_size}")

    data: Dict[str, List[Dict[str, Any]]] = {}
    errors: List[str] = []
    for table in ORDERED_TABLES + UNORDERED_TABLES:
        try:
            data[table] = fetch_all_paginated(db, table, seller_id, ordered=table in ORDERED_TABLES, page_size=page_size)
        except Exception as e:
            errors.append(f"{table}: {e}")
            data[table] = []
    try:
        data["profiles"] = db.table("profiles").select("*").eq("id", seller_id).execute().data or []
    except Exception as e:
        errors.append(f"profiles: {e}")
        data["profiles"] = []

    if errors:
        logger.error(f"[backup-data] fetch_errors={errors}")

    backup = {
        "version": BACKUP_VERSION,
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "user": {"id": seller_id, "email": email},
        "data": data,
        "stats": {f"{table}_count": len(rows) for table, rows in data.items()},
    }
    logger.info(f"[backup-data] seller_id={seller_id} action=export_complete details={backup['stats']}")
    return backup
