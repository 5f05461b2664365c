from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Optional

from .core.auth import BearerTokenAuth
from .core.http import HttpClient, HttpClientConfig
from .supabase_client import SUPABASE_SERVICE_ROLE_KEY, SUPABASE_URL

logger = logging.getLogger(__name__)


class EdgeFunctionClient:
    """Chama edge functions do Supabase via HTTP (`/functions/v1/{nome}`)."""

    def __init__(self, *, base_url: str, token: str, timeout_s: float = 30.0):
        self._http = HttpClient(
            config=HttpClientConfig(base_url=f"{(base_url or '').rstrip('/')}/functions/v1", timeout_s=timeout_s),
            auth=BearerTokenAuth(token=token),
            provider="supabase-functions",
        )

    async def call(self, name: str, body: dict[str, Any], *, timeout_s: Optional[float] = None) -> Any:
        return await self._http.request("POST", f"/{name}", json=body, timeout_s=timeout_s)

    async def send_welcome_message(self, body: dict[str, Any]) -> Any:
        return await self.call("send-welcome-message", body, timeout_s=15.0)


@lru_cache(maxsize=1)
def get_edge_functions() -> EdgeFunctionClient:
    return EdgeFunctionClient(base_url=SUPABASE_URL, token=SUPABASE_SERVICE_ROLE_KEY or "")
