"""
Backup routes.

- GET /backup/export - Export every table of a seller
- POST /backup/restore - Restore a backup (append or replace)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from ..container import GestorContainer, get_container
from ..core.errors import RestoreError, ValidationError
from ..models import BackupRestoreRequest
from ..utils.auth_helpers import ensure_seller_access, is_service_role, verify_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/backup", tags=["Backup"])


def _target_seller(payload: dict, seller_id: Optional[str]) -> str:
    target = seller_id or payload.get("user_id")
    if not target or (is_service_role(payload) and not seller_id):
        raise HTTPException(status_code=400, detail="seller_id é obrigatório")
    return str(target)


@router.get("/export")
async def export_backup(
    seller_id: Optional[str] = None,
    payload: dict = Depends(verify_token),
    container: GestorContainer = Depends(get_container),
):
    target = _target_seller(payload, seller_id)
    ensure_seller_access(payload, target, container.db)
    email = payload.get("email") if target == payload.get("user_id") else None
    return container.export(target, email)


@router.post("/restore")
async def restore_backup(
    data: BackupRestoreRequest,
    seller_id: Optional[str] = None,
    payload: dict = Depends(verify_token),
    container: GestorContainer = Depends(get_container),
):
    target = _target_seller(payload, seller_id)
    ensure_seller_access(payload, target, container.db)
    try:
        return container.restorer().restore(target, data.backup, data.mode)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RestoreError as e:
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(e), "phase": e.phase, "rolledBack": e.rolled_back},
        )
