"""
Orquestração do salvamento de cliente antes do upsert atômico.

Criptografa credenciais, gera a impressão digital, monta os slots de painel
e envia tudo num único payload.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.errors import ClientSaveError, EncryptionError
from ..core.locks import OperationLocks
from .crypto import CredentialCrypto, credential_fingerprint

logger = logging.getLogger(__name__)

UpsertFn = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


@dataclass
class SharedCreditSelection:
    encrypted_login: Optional[str] = None
    encrypted_password: Optional[str] = None


@dataclass
class AtomicSaveParams:
    client_data: Dict[str, Any]
    seller_id: str
    client_id: Optional[str] = None
    external_apps: List[Dict[str, Any]] = field(default_factory=list)
    premium_accounts: List[Dict[str, Any]] = field(default_factory=list)
    server_apps_config: List[Dict[str, Any]] = field(default_factory=list)
    server_id: Optional[str] = None
    server_name: Optional[str] = None
    category: Optional[str] = None
    screens: int = 1
    is_server_credit_based: bool = False
    shared_credit: Optional[SharedCreditSelection] = None
    send_welcome_message: bool = False
    custom_welcome_message: Optional[str] = None


def generate_panel_entries(
    server_id: Optional[str],
    category: Optional[str],
    screens: int,
    is_server_credit_based: bool,
    server_name: Optional[str] = None,
) -> List[Dict[str, str]]:
    if not server_id or not is_server_credit_based:
        return []
    if category == "P2P":
        return [{"panel_id": server_id, "slot_type": "p2p"} for _ in range(screens)]
    if (server_name or "").upper() == "WPLAY" and screens == 3:
        # WPLAY com 3 telas = 2 IPTV + 1 P2P
        return [
            {"panel_id": server_id, "slot_type": "iptv"},
            {"panel_id": server_id, "slot_type": "iptv"},
            {"panel_id": server_id, "slot_type": "p2p"},
        ]
    return [{"panel_id": server_id, "slot_type": "iptv"} for _ in range(screens)]


class AtomicClientSaver:
    def __init__(self, *, crypto: CredentialCrypto, upsert: UpsertFn, locks: Optional[OperationLocks] = None):
        self._crypto = crypto
        self._upsert = upsert
        self._locks = locks or OperationLocks()

    async def prepare_client_credentials(
        self,
        client_data: Dict[str, Any],
        shared_credit: Optional[SharedCreditSelection] = None,
    ) -> Dict[str, Any]:
        data = dict(client_data)
        login = str(data.get("login") or "")
        password = str(data.get("password") or "")

        if shared_credit and shared_credit.encrypted_login:
            data["login"] = shared_credit.encrypted_login
            data["password"] = shared_credit.encrypted_password or None
            if login:
                data["credentials_fingerprint"] = credential_fingerprint(login, password)
            return data

        if not login:
            data["login"] = None
            data["password"] = None
            data["credentials_fingerprint"] = None
            return data

        encrypted_login, encrypted_password = await asyncio.gather(
            self._crypto.encrypt(login),
            self._crypto.encrypt(password) if password else _none(),
        )
        if not encrypted_login or (password and not encrypted_password):
            logger.error("[AtomicSave] Failed to encrypt credentials")
            raise EncryptionError("Falha ao criptografar credenciais")

        data["login"] = encrypted_login
        data["password"] = encrypted_password
        data["credentials_fingerprint"] = credential_fingerprint(login, password)
        return data

    async def _encrypt_or_keep(self, value: Optional[str], label: str) -> str:
        plain = value or ""
        if not plain:
            return ""
        encrypted = await self._crypto.encrypt(plain)
        if not encrypted:
            logger.error(f"[AtomicSave] Failed to encrypt {label} password")
            return plain
        return encrypted

    async def prepare_external_apps(self, apps: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        async def _one(app: Dict[str, Any]) -> Dict[str, Any]:
            return {
                "appId": app.get("appId") or app.get("app_id"),
                "email": app.get("email"),
                "password": await self._encrypt_or_keep(app.get("password"), "app"),
                "expirationDate": app.get("expirationDate") or app.get("expiration_date"),
                "devices": [
                    {"mac": d.get("mac", ""), "model": d.get("model") or d.get("name")}
                    for d in (app.get("devices") or [])
                ],
            }

        return list(await asyncio.gather(*(_one(a) for a in apps or [])))

    async def prepare_server_apps_config(self, configs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        async def _app(app: Dict[str, Any]) -> Dict[str, Any]:
            return {
                "serverAppId": app.get("serverAppId") or app.get("server_app_id"),
                "authCode": app.get("authCode") or app.get("auth_code"),
                "username": app.get("username"),
                "password": await self._encrypt_or_keep(app.get("password"), "server app"),
                "provider": app.get("provider"),
            }

        async def _config(config: Dict[str, Any]) -> Dict[str, Any]:
            apps = await asyncio.gather(*(_app(a) for a in config.get("apps") or []))
            return {"serverId": config.get("serverId") or config.get("server_id"), "apps": list(apps)}

        return list(await asyncio.gather(*(_config(c) for c in configs or [])))

    async def save_client(self, params: AtomicSaveParams) -> Dict[str, Any]:
        lock_key = params.client_id or f"new:{params.seller_id}:{params.client_data.get('phone') or params.client_data.get('name') or ''}"
        with self._locks.hold(lock_key):
            return await self._save(params)

    async def _save(self, params: AtomicSaveParams) -> Dict[str, Any]:
        is_update = bool(params.client_id)
        client_data, external_apps, server_apps = await asyncio.gather(
            self.prepare_client_credentials(params.client_data, params.shared_credit),
            self.prepare_external_apps(params.external_apps),
            self.prepare_server_apps_config(params.server_apps_config),
        )

        payload: Dict[str, Any] = {
            "clientData": client_data,
            "sellerId": params.seller_id,
            "externalApps": external_apps,
            "premiumAccounts": [
                {
                    "planName": acc.get("planName") or acc.get("plan_name"),
                    "email": acc.get("email"),
                    "password": acc.get("password"),
                    "price": acc.get("price"),
                    "expirationDate": acc.get("expirationDate") or acc.get("expiration_date"),
                    "notes": acc.get("notes"),
                }
                for acc in params.premium_accounts or []
            ],
            "serverAppsConfig": server_apps,
            "sendWelcomeMessage": params.send_welcome_message,
            "customWelcomeMessage": params.custom_welcome_message,
        }
        if is_update:
            payload["clientId"] = params.client_id
        else:
            payload["panelEntries"] = generate_panel_entries(
                params.server_id,
                params.category,
                params.screens,
                params.is_server_credit_based,
                params.server_name,
            )

        result = await self._upsert(payload)
        if not result.get("success"):
            raise ClientSaveError(
                str(result.get("error") or "Falha ao salvar cliente"),
                rolled_back=bool(result.get("rolledBack")),
            )
        return result


async def _none() -> None:
    return None
