"""
Evolution webhook route.

- POST /webhooks/evolution/{instance} - Connection and message events from the gateway
"""

import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from ..container import GestorContainer, get_container
from ..core.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/evolution/{instance}")
async def evolution_webhook(instance: str, request: Request, container: GestorContainer = Depends(get_container)):
    # o gateway nem sempre manda Content-Type correto
    raw = await request.body()
    try:
        body = json.loads(raw.decode("utf-8")) if raw else {}
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    try:
        return await container.webhook_handler().handle(body, path_instance=instance)
    except ValidationError as e:
        return JSONResponse(status_code=400, content={"error": str(e), **(e.details or {})})
    except NotFoundError as e:
        return JSONResponse(status_code=404, content={"error": str(e), **(e.details or {})})
