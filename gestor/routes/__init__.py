"""
Routers da API.

Cada router cuida de um domínio; todos são montados sob `/api` em server.py.
"""

from .auth_routes import router as auth_router
from .backup_routes import router as backup_router
from .bot_routes import router as bot_router
from .clients_routes import router as clients_router
from .heartbeat_routes import router as heartbeat_router
from .webhooks_routes import router as webhooks_router

__all__ = [
    "auth_router",
    "backup_router",
    "bot_router",
    "clients_router",
    "heartbeat_router",
    "webhooks_router",
]
