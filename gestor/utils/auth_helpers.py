"""
Authentication helper utilities.

Requests carry the Supabase access token (Bearer header or cookie). When
SUPABASE_JWT_SECRET is configured the token is verified locally with PyJWT;
otherwise it is validated against Supabase Auth.
"""

import hmac
import logging
import os
from typing import Any, Optional

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..supabase_client import SUPABASE_SERVICE_ROLE_KEY, supabase

logger = logging.getLogger(__name__)

# ==================== CONFIGURATION ====================
SUPABASE_JWT_SECRET = (os.getenv("SUPABASE_JWT_SECRET") or os.getenv("JWT_SECRET") or "").strip()
SUPABASE_JWT_AUDIENCE = "authenticated"

# Security bearer for FastAPI
security = HTTPBearer(auto_error=False)


# ==================== TOKEN FUNCTIONS ====================
def extract_token(http_request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    token = credentials.credentials if credentials else None
    if not token:
        token = http_request.cookies.get("sb-access-token") or http_request.cookies.get("access_token")
    return token or None


def decode_supabase_token(token: str, secret: Optional[str] = None) -> dict:
    """
    Decode a Supabase access token.

    Raises:
        HTTPException: If token is expired or invalid
    """
    key = secret if secret is not None else SUPABASE_JWT_SECRET
    try:
        return jwt.decode(token, key, algorithms=["HS256"], audience=SUPABASE_JWT_AUDIENCE)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expirado")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Token inválido")


def _validate_with_supabase(token: str) -> dict:
    try:
        res = supabase.auth.get_user(token)
    except Exception as e:
        logger.warning(f"Falha ao validar token no Supabase: {e}")
        raise HTTPException(status_code=401, detail="Token inválido")
    user = getattr(res, "user", None)
    if not user:
        raise HTTPException(status_code=401, detail="Token inválido")
    return {"sub": user.id, "email": getattr(user, "email", None), "role": "authenticated"}


def verify_token(http_request: Request, credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """
    Verify the Supabase token from the request.

    Returns:
        The token payload plus `user_id` and `access_token`

    Raises:
        HTTPException: If token is missing, expired, or invalid
    """
    token = extract_token(http_request, credentials)
    if not token:
        raise HTTPException(status_code=401, detail="Token não fornecido")
    if SUPABASE_SERVICE_ROLE_KEY and hmac.compare_digest(token, SUPABASE_SERVICE_ROLE_KEY):
        return {"role": "service_role", "user_id": "service_role", "access_token": token}
    if SUPABASE_JWT_SECRET:
        payload = decode_supabase_token(token)
    else:
        payload = _validate_with_supabase(token)
    user_id = str(payload.get("sub") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Token inválido")
    return {**payload, "user_id": user_id, "access_token": token}


def is_service_role(payload: dict) -> bool:
    return str(payload.get("role") or "") == "service_role"


def is_admin(payload: dict, db: Any = None) -> bool:
    """Service role tokens count as admin; otherwise look up `user_roles`."""
    if is_service_role(payload):
        return True
    client = db if db is not None else supabase
    rows = (
        client.table("user_roles")
        .select("role")
        .eq("user_id", payload.get("user_id"))
        .eq("role", "admin")
        .limit(1)
        .execute()
        .data
        or []
    )
    return bool(rows)


def ensure_seller_access(payload: dict, seller_id: Any, db: Any = None) -> None:
    """Own data, or any seller's data for admins and the service role."""
    if str(seller_id or "") == str(payload.get("user_id") or ""):
        return
    if not is_admin(payload, db):
        raise HTTPException(status_code=403, detail="Acesso negado")


def require_admin(payload: dict, db: Any = None) -> None:
    if not is_admin(payload, db):
        raise HTTPException(status_code=403, detail="Apenas administradores")
