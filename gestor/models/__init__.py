"""Modelos Pydantic da API.

Este módulo re-exporta todos os modelos para facilitar importações.
"""
from .backup import BackupRestoreRequest
from .bot import BotInterceptRequest, BotProcessRequest
from .clients import (
    AtomicClientUpsert,
    AtomicUpsertDetails,
    ExternalAppPayload,
    PanelEntryPayload,
    PremiumAccountPayload,
    ServerAppConfigPayload,
)
from .heartbeat import HeartbeatAction, HeartbeatRequest

__all__ = [
    "AtomicClientUpsert",
    "AtomicUpsertDetails",
    "BackupRestoreRequest",
    "BotInterceptRequest",
    "BotProcessRequest",
    "ExternalAppPayload",
    "HeartbeatAction",
    "HeartbeatRequest",
    "PanelEntryPayload",
    "PremiumAccountPayload",
    "ServerAppConfigPayload",
]
