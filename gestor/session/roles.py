"""
Papéis de usuário (`user_roles`) e período de teste.

`fix_user_roles` corrige contas criadas sem papel e/ou sem perfil.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

ADMIN = "admin"
SELLER = "seller"
USER = "user"
APP_ROLES = (ADMIN, SELLER, USER)

DEFAULT_TRIAL_DAYS = 5
DEFAULT_FIXED_ROLE = SELLER


def pick_role(rows: List[Dict[str, Any]]) -> Optional[str]:
    """Pode haver linhas duplicadas: `admin` vence, senão a primeira."""
    for row in rows:
        if row.get("role") == ADMIN:
            return ADMIN
    return rows[0].get("role") if rows else None


def load_trial_days(db: Any) -> int:
    try:
        rows = db.table("app_settings").select("value").eq("key", "seller_trial_days").limit(1).execute().data or []
    except Exception as e:
        logger.warning(f"Falha ao ler seller_trial_days: {e}")
        return DEFAULT_TRIAL_DAYS
    if rows:
        try:
            days = int(str(rows[0].get("value")).strip())
        except (TypeError, ValueError):
            return DEFAULT_TRIAL_DAYS
        if days > 0:
            return days
    return DEFAULT_TRIAL_DAYS


def _parse_dt(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def trial_info(
    profile: Optional[Dict[str, Any]],
    role: Optional[str],
    trial_days: int,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    created_at = _parse_dt((profile or {}).get("created_at"))
    if created_at is None or role != USER:
        return {"is_in_trial": False, "days_remaining": 0, "trial_expired": False, "trial_end_date": None}
    now = now or datetime.now(timezone.utc)
    end = created_at + timedelta(days=trial_days)
    remaining = math.ceil((end - now).total_seconds() / 86400)
    return {
        "is_in_trial": remaining > 0,
        "days_remaining": max(0, remaining),
        "trial_expired": remaining <= 0,
        "trial_end_date": end.isoformat(),
    }


def fix_user_roles(
    db: Any,
    *,
    user_id: str,
    email: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Garante perfil e papel para o usuário; papel existente nunca é trocado."""
    metadata = metadata or {}
    rows = db.table("user_roles").select("role").eq("user_id", user_id).execute().data or []
    role = pick_role(rows)
    role_created = False
    profile_created = False

    profiles = db.table("profiles").select("id").eq("id", user_id).limit(1).execute().data or []
    if not profiles:
        is_admin = role == ADMIN
        now = now or datetime.now(timezone.utc)
        trial_days = load_trial_days(db)
        db.table("profiles").insert(
            [
                {
                    "id": user_id,
                    "email": email,
                    "full_name": metadata.get("full_name") or (email or "").split("@")[0] or "Usuário",
                    "whatsapp": metadata.get("whatsapp") or None,
                    "subscription_expires_at": None if is_admin else (now + timedelta(days=trial_days)).isoformat(),
                    "is_permanent": is_admin,
                    "is_active": True,
                }
            ]
        ).execute()
        profile_created = True
        logger.info(f"Perfil criado para {user_id}")

    if role is None:
        db.table("user_roles").insert([{"user_id": user_id, "role": DEFAULT_FIXED_ROLE}]).execute()
        role = DEFAULT_FIXED_ROLE
        role_created = True
        logger.info(f"Papel {role} criado para {user_id}")
        if profile_created:
            for fn in ("create_default_plans_for_seller", "create_default_templates_for_seller"):
                try:
                    db.rpc(fn, {"seller_uuid": user_id}).execute()
                except Exception as e:
                    logger.warning(f"Dados padrão não criados ({fn}) para {user_id}: {e}")

    return {"success": True, "role": role, "role_created": role_created, "profile_created": profile_created}
