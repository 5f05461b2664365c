from __future__ import annotations

import logging
import re
from typing import Any, Optional

from ..core.auth import ApiKeyHeaderAuth
from ..core.errors import ProviderRequestError
from ..core.http import HttpClient, HttpClientConfig
from ..utils.phone_utils import phone_variants

logger = logging.getLogger(__name__)

PROVIDER = "evolution"


def normalize_api_url(url: Optional[str]) -> str:
    clean = (url or "").strip()
    clean = re.sub(r"/manager/?$", "", clean, flags=re.IGNORECASE)
    return clean.rstrip("/")


class EvolutionClient:
    """Cliente HTTP da Evolution API v2 autenticado pelo header `apikey`."""

    def __init__(self, *, base_url: str, api_key: str, timeout_s: float = 30.0, http: Optional[HttpClient] = None):
        self.base_url = normalize_api_url(base_url)
        self._http = http or HttpClient(
            config=HttpClientConfig(base_url=self.base_url, timeout_s=timeout_s),
            auth=ApiKeyHeaderAuth(header_name="apikey", api_key=api_key),
            provider=PROVIDER,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        return await self._http.request(method, path, **kwargs)

    # ---- instâncias ----

    async def fetch_instances(self, instance_name: Optional[str] = None, *, timeout_s: Optional[float] = None) -> Any:
        params = {"instanceName": instance_name} if instance_name else None
        return await self._request("GET", "/instance/fetchInstances", params=params, timeout_s=timeout_s)

    async def connect(self, instance_name: str) -> Any:
        """Retorna o QR code (base64/code) quando a sessão precisa ser pareada."""
        return await self._request("GET", f"/instance/connect/{instance_name}")

    async def connection_state(self, instance_name: str) -> Any:
        return await self._request("GET", f"/instance/connectionState/{instance_name}")

    async def restart(self, instance_name: str) -> Any:
        return await self._request("PUT", f"/instance/restart/{instance_name}")

    async def logout(self, instance_name: str) -> Any:
        return await self._request("DELETE", f"/instance/logout/{instance_name}")

    async def set_webhook(self, instance_name: str, webhook_url: str) -> Any:
        data = {
            "webhook": {
                "enabled": True,
                "url": webhook_url,
                "byEvents": False,
                "base64": False,
                "events": ["MESSAGES_UPSERT", "CONNECTION_UPDATE", "QRCODE_UPDATED", "LOGOUT_INSTANCE"],
            }
        }
        return await self._request("POST", f"/webhook/set/{instance_name}", json=data)

    # ---- mensagens ----

    async def send_text(self, instance_name: str, number: str, text: str) -> Any:
        return await self._request("POST", f"/message/sendText/{instance_name}", json={"number": number, "text": text})

    async def send_buttons_payload(self, instance_name: str, payload: dict[str, Any]) -> Any:
        return await self._request("POST", f"/message/sendButtons/{instance_name}", json=payload)

    async def send_list_payload(self, instance_name: str, payload: dict[str, Any]) -> Any:
        return await self._request("POST", f"/message/sendList/{instance_name}", json=payload)

    async def send_text_to_variants(self, instance_name: str, phone: str, text: str) -> Optional[str]:
        """
        Tenta os formatos de número em ordem até um ser aceito.

        400 e 5xx indicam formato errado ou instabilidade, então seguimos para o
        próximo; outros erros (401, 403...) interrompem. Retorna o formato usado
        ou None.
        """
        variants = phone_variants(phone)
        for number in variants:
            try:
                await self.send_text(instance_name, number, text)
                logger.info(f"[evolution] Success with format: {number[:6]}***")
                return number
            except ProviderRequestError as e:
                status = e.status_code
                if status is not None and status != 400 and status < 500:
                    logger.warning(f"[evolution] API Error {status}, giving up")
                    raise
                logger.info(f"[evolution] Format {number[:6]}*** failed ({status}), trying next...")
        logger.error(f"[evolution] All {len(variants)} phone formats failed")
        return None
