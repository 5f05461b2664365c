"""
Chatbot routes.

- POST /bot/process - Run a message through the configured flows
- POST /bot/intercept - Global navigation commands (voltar, início, menu, sair, humano)
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..container import GestorContainer, get_container
from ..models import BotInterceptRequest, BotProcessRequest
from ..utils.auth_helpers import ensure_seller_access, verify_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bot", tags=["Bot"])


@router.post("/process")
async def process_message(
    data: BotProcessRequest,
    payload: dict = Depends(verify_token),
    container: GestorContainer = Depends(get_container),
):
    ensure_seller_access(payload, data.seller_id, container.db)
    try:
        return await container.flow_engine().process_message(
            seller_id=data.seller_id,
            contact_phone=data.contact_phone,
            contact_name=data.contact_name,
            message_text=data.message_text,
            message_type=data.message_type,
            metadata=data.metadata,
        )
    except Exception as e:
        logger.exception(f"bot/process falhou seller_id={data.seller_id}")
        return JSONResponse(status_code=500, content={"success": False, "error": str(e), "responses": []})


@router.post("/intercept")
async def intercept_message(
    data: BotInterceptRequest,
    payload: dict = Depends(verify_token),
    container: GestorContainer = Depends(get_container),
):
    if data.seller_id:
        ensure_seller_access(payload, data.seller_id, container.db)
    return container.interceptor().intercept(data.seller_id, data.sender_phone, data.message_text)
