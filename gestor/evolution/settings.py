from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

from .client import EvolutionClient, normalize_api_url

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvolutionSettings:
    api_url: str
    api_token: str

    def build_client(self, *, timeout_s: float = 30.0) -> EvolutionClient:
        return EvolutionClient(base_url=self.api_url, api_key=self.api_token, timeout_s=timeout_s)


def _env_settings() -> Optional[EvolutionSettings]:
    base_url = (
        (os.getenv("EVOLUTION_API_BASE_URL") or "").strip()
        or (os.getenv("EVOLUTION_BASE_URL") or "").strip()
        or (os.getenv("EVOLUTION_URL") or "").strip()
    )
    api_key = (
        (os.getenv("EVOLUTION_API_KEY") or "").strip()
        or (os.getenv("EVOLUTION_KEY") or "").strip()
        or (os.getenv("EVOLUTION_API_TOKEN") or "").strip()
    )
    if base_url and api_key:
        return EvolutionSettings(api_url=normalize_api_url(base_url), api_token=api_key)
    return None


def load_evolution_settings(db: Any) -> Optional[EvolutionSettings]:
    """Configuração global ativa mais recente; variáveis de ambiente como reserva."""
    try:
        rows = (
            db.table("whatsapp_global_config")
            .select("api_url, api_token, is_active, created_at")
            .eq("is_active", True)
            .order("created_at", desc=True)
            .limit(1)
            .execute()
            .data
        ) or []
    except Exception as e:
        logger.warning(f"Falha ao ler whatsapp_global_config: {e}")
        rows = []

    if rows and rows[0].get("api_url") and rows[0].get("api_token"):
        return EvolutionSettings(api_url=normalize_api_url(rows[0]["api_url"]), api_token=str(rows[0]["api_token"]))
    return _env_settings()
