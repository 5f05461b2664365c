from supabase import create_client, Client
import os
import logging
from pathlib import Path
from typing import Optional, cast, Any, Dict
import base64
import json

from dotenv import load_dotenv

load_dotenv(Path(__file__).parent / ".env")

logger = logging.getLogger(__name__)

_SUPABASE_NOT_CONFIGURED_ERROR = (
    "Supabase não configurado (SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY)."
)
_SUPABASE_NOT_CONFIGURED_WARNING = (
    "Supabase não configurado: defina SUPABASE_URL e "
    "SUPABASE_SERVICE_ROLE_KEY."
)


def _get_first_env(*names: str) -> Optional[str]:
    for name in names:
        value = (os.getenv(name) or "").strip()
        if value:
            return value
    return None


def _decode_jwt_payload_unverified(token: str) -> Dict[str, Any]:
    try:
        parts = (token or "").split(".")
        if len(parts) < 2:
            return {}
        payload_b64 = parts[1]
        padding = "=" * (-len(payload_b64) % 4)
        raw = base64.urlsafe_b64decode(payload_b64 + padding)
        obj = json.loads(raw.decode("utf-8"))
        return obj if isinstance(obj, dict) else {}
    except Exception:
        return {}


def _is_service_role_key(key: Optional[str]) -> bool:
    if not key:
        return False
    payload = _decode_jwt_payload_unverified(key)
    role = str(payload.get("role") or "").strip().lower()
    return role == "service_role"


SUPABASE_URL = (_get_first_env("SUPABASE_URL", "VITE_SUPABASE_URL") or "").rstrip("/")
_candidate_service_key = _get_first_env(
    "SUPABASE_SERVICE_ROLE_KEY",
    "SUPABASE_SERVICE_KEY",
    "SUPABASE_KEY",
)
SUPABASE_ANON_KEY = _get_first_env(
    "SUPABASE_ANON_KEY",
    "SUPABASE_PUBLISHABLE_KEY",
    "VITE_SUPABASE_PUBLISHABLE_KEY",
)

SUPABASE_SERVICE_ROLE_KEY = (
    _candidate_service_key
    if _is_service_role_key(_candidate_service_key)
    else None
)


class _SupabaseNotConfigured:
    def table(self, *_args, **_kwargs):
        raise RuntimeError(_SUPABASE_NOT_CONFIGURED_ERROR)

    def rpc(self, *_args, **_kwargs):
        raise RuntimeError(_SUPABASE_NOT_CONFIGURED_ERROR)

    @property
    def auth(self):
        raise RuntimeError(_SUPABASE_NOT_CONFIGURED_ERROR)

    @property
    def functions(self):
        raise RuntimeError(_SUPABASE_NOT_CONFIGURED_ERROR)


def create_user_client() -> Client:
    """Cliente com a chave anon, usado pelo gerenciador de sessão (login/cadastro)."""
    if not SUPABASE_URL or not SUPABASE_ANON_KEY:
        raise RuntimeError(_SUPABASE_NOT_CONFIGURED_ERROR)
    return create_client(SUPABASE_URL, SUPABASE_ANON_KEY)


if SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY:
    supabase: Client = create_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)
else:
    logger.warning(_SUPABASE_NOT_CONFIGURED_WARNING)
    supabase = cast(Client, _SupabaseNotConfigured())
