"""
Auth routes.

- POST /auth/fix-user-roles - Create the missing profile/role for the calling user
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from ..container import GestorContainer, get_container
from ..session.roles import fix_user_roles
from ..utils.auth_helpers import is_service_role, verify_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Auth"])


@router.post("/fix-user-roles")
async def fix_roles(payload: dict = Depends(verify_token), container: GestorContainer = Depends(get_container)):
    if is_service_role(payload):
        raise HTTPException(status_code=400, detail="Token de usuário necessário")
    try:
        return fix_user_roles(
            container.db,
            user_id=payload["user_id"],
            email=payload.get("email"),
            metadata=payload.get("user_metadata") or {},
        )
    except Exception as e:
        logger.error(f"fix-user-roles falhou user_id={payload.get('user_id')}: {e}")
        raise HTTPException(status_code=500, detail="Erro ao corrigir papel do usuário")
