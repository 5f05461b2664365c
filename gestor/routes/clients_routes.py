"""
Client routes.

- POST /clients/atomic-upsert - Create or update a client and its child rows in one transaction
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..container import GestorContainer, get_container
from ..core.errors import ClientSaveError
from ..models import AtomicClientUpsert
from ..utils.auth_helpers import ensure_seller_access, verify_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/clients", tags=["Clients"])


@router.post("/atomic-upsert")
async def atomic_upsert(
    data: AtomicClientUpsert,
    payload: dict = Depends(verify_token),
    container: GestorContainer = Depends(get_container),
):
    ensure_seller_access(payload, data.seller_id, container.db)
    try:
        return await container.upserter().upsert(data)
    except ClientSaveError as e:
        logger.error(f"atomic-upsert falhou seller_id={data.seller_id}: {e}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(e), "rolledBack": e.rolled_back},
        )
