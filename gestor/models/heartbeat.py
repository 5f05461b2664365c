"""Modelo da rota de heartbeat de conexão."""
from typing import Literal, Optional

from pydantic import BaseModel

HeartbeatAction = Literal["check", "check_single", "check_all", "reconnect", "alerts", "get_alerts", "cleanup", "ping"]


class HeartbeatRequest(BaseModel):
    action: HeartbeatAction = "check"
    seller_id: Optional[str] = None
