"""
Connection heartbeat route.

- POST /connection-heartbeat - actions: check, check_all, reconnect, alerts, cleanup, ping
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from ..container import GestorContainer, get_container
from ..evolution.heartbeat import ping
from ..models import HeartbeatRequest
from ..utils.auth_helpers import ensure_seller_access, require_admin, verify_token

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Connection"])

_SELLER_ACTIONS = {"check", "check_single", "reconnect", "alerts", "get_alerts"}


@router.post("/connection-heartbeat")
async def connection_heartbeat(
    data: HeartbeatRequest,
    payload: dict = Depends(verify_token),
    container: GestorContainer = Depends(get_container),
):
    action = data.action
    if action == "ping":
        return ping()

    if action in _SELLER_ACTIONS:
        if not data.seller_id:
            raise HTTPException(status_code=400, detail="seller_id é obrigatório")
        ensure_seller_access(payload, data.seller_id, container.db)
    else:
        require_admin(payload, container.db)

    service = container.heartbeat()
    if service is None:
        raise HTTPException(status_code=400, detail="Evolution API não configurada")

    if action in ("check", "check_single"):
        return await service.check_single(data.seller_id)
    if action == "check_all":
        return await service.check_all()
    if action == "reconnect":
        return await service.reconnect(data.seller_id)
    if action in ("alerts", "get_alerts"):
        return service.get_alerts(data.seller_id)
    return service.cleanup()
