from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Optional

from .bot.dispatcher import BotDispatcher
from .bot.flow_engine import FlowEngine
from .bot.menus import DynamicMenus
from .bot.sessions import SessionInterceptor
from .bot.states import BotStateMachine
from .clients.backup import export_seller_data
from .clients.restore import BackupRestorer
from .clients.upsert import AtomicClientUpserter
from .core.config import BotConfig, load_bot_config
from .core.observability import Observability
from .edge_functions import EdgeFunctionClient, get_edge_functions
from .evolution.heartbeat import HeartbeatService
from .evolution.settings import load_evolution_settings
from .evolution.webhook import EvolutionWebhookHandler
from .supabase_client import supabase


@lru_cache(maxsize=1)
def get_container() -> "GestorContainer":
    return GestorContainer.build()


class GestorContainer:
    def __init__(self, *, db: Any, functions: EdgeFunctionClient, obs: Observability, bot_config: BotConfig):
        self.db = db
        self.functions = functions
        self.obs = obs
        self.bot_config = bot_config
        self.machine = BotStateMachine(bot_config.state_messages)

    @staticmethod
    def build() -> "GestorContainer":
        obs = Observability(logging.getLogger("gestor"))
        return GestorContainer(db=supabase, functions=get_edge_functions(), obs=obs, bot_config=load_bot_config())

    def upserter(self) -> AtomicClientUpserter:
        return AtomicClientUpserter(self.db, welcome_sender=self.functions.send_welcome_message)

    def interceptor(self) -> SessionInterceptor:
        return SessionInterceptor(self.db)

    def flow_engine(self) -> FlowEngine:
        return FlowEngine(self.db, functions=self.functions, obs=self.obs)

    def dispatcher(self) -> BotDispatcher:
        return BotDispatcher(
            self.db,
            functions=self.functions,
            machine=self.machine,
            interceptor=self.interceptor(),
            flow_engine=self.flow_engine(),
            menus=DynamicMenus(self.db),
            interactive_menus=self.bot_config.interactive_menus,
            obs=self.obs,
        )

    def webhook_handler(self) -> EvolutionWebhookHandler:
        return EvolutionWebhookHandler(self.db, dispatcher=self.dispatcher(), functions=self.functions, obs=self.obs)

    def heartbeat(self) -> Optional[HeartbeatService]:
        settings = load_evolution_settings(self.db)
        if settings is None:
            return None
        return HeartbeatService(self.db, settings.build_client(timeout_s=10.0), obs=self.obs)

    def restorer(self) -> BackupRestorer:
        return BackupRestorer(self.db)

    def export(self, seller_id: str, email: Optional[str] = None) -> dict[str, Any]:
        return export_seller_data(self.db, seller_id, email)
