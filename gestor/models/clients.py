"""Modelos do upsert atômico de clientes."""
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class DevicePayload(_CamelModel):
    mac: str = Field(max_length=100)
    model: Optional[str] = Field(default=None, max_length=100)


class ExternalAppPayload(_CamelModel):
    app_id: str = Field(alias="appId", max_length=100)
    email: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=500)
    expiration_date: Optional[str] = Field(default=None, alias="expirationDate", max_length=30)
    devices: List[DevicePayload] = Field(default_factory=list, max_length=20)


class PremiumAccountPayload(_CamelModel):
    plan_name: Optional[str] = Field(default=None, alias="planName", max_length=100)
    email: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=500)
    price: Optional[str] = Field(default=None, max_length=20)
    expiration_date: Optional[str] = Field(default=None, alias="expirationDate", max_length=30)
    notes: Optional[str] = Field(default=None, max_length=1000)


class ServerAppCredentialPayload(_CamelModel):
    server_app_id: UUID = Field(alias="serverAppId")
    auth_code: Optional[str] = Field(default=None, alias="authCode", max_length=200)
    username: Optional[str] = Field(default=None, max_length=200)
    password: Optional[str] = Field(default=None, max_length=500)
    provider: Optional[str] = Field(default=None, max_length=100)


class ServerAppConfigPayload(_CamelModel):
    server_id: UUID = Field(alias="serverId")
    apps: List[ServerAppCredentialPayload] = Field(max_length=50)


class PanelEntryPayload(_CamelModel):
    panel_id: UUID
    slot_type: Literal["iptv", "p2p"]


class AtomicClientUpsert(_CamelModel):
    client_data: Dict[str, Any] = Field(alias="clientData")
    client_id: Optional[UUID] = Field(default=None, alias="clientId")
    seller_id: UUID = Field(alias="sellerId")
    external_apps: List[ExternalAppPayload] = Field(default_factory=list, alias="externalApps", max_length=100)
    premium_accounts: List[PremiumAccountPayload] = Field(default_factory=list, alias="premiumAccounts", max_length=50)
    server_apps_config: List[ServerAppConfigPayload] = Field(default_factory=list, alias="serverAppsConfig", max_length=20)
    panel_entries: List[PanelEntryPayload] = Field(default_factory=list, alias="panelEntries", max_length=50)
    send_welcome_message: bool = Field(default=False, alias="sendWelcomeMessage")
    custom_welcome_message: Optional[str] = Field(default=None, alias="customWelcomeMessage", max_length=2000)


class AtomicUpsertDetails(_CamelModel):
    client_saved: bool = Field(default=False, alias="clientSaved")
    external_apps_saved: int = Field(default=0, alias="externalAppsSaved")
    premium_accounts_saved: int = Field(default=0, alias="premiumAccountsSaved")
    server_app_credentials_saved: int = Field(default=0, alias="serverAppCredentialsSaved")
    panel_entries_saved: int = Field(default=0, alias="panelEntriesSaved")
