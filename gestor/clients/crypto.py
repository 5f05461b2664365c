"""
Criptografia de credenciais via edge function `crypto`.

Em falha nunca devolve o texto puro: `encrypt` retorna "" e o chamador
decide o que fazer.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from typing import Any, Optional

from ..core.errors import GestorError

logger = logging.getLogger(__name__)

CRYPTO_FUNCTION = "crypto"
CRYPTO_TIMEOUT_S = 15.0
MAX_RETRIES = 2

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=]+$")


def is_encrypted(value: Optional[str]) -> bool:
    if not value:
        return False
    return value.startswith("enc:") or value.startswith("ENC:") or (len(value) > 50 and bool(_BASE64_RE.match(value)))


def credential_fingerprint(login: str, password: str = "") -> str:
    """Impressão digital estável de login+senha para detectar credenciais duplicadas sem descriptografar."""
    normalized = f"{str(login or '').strip().lower()}:{str(password or '').strip()}"
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class CredentialCrypto:
    def __init__(self, functions: Any, *, retry_base_s: float = 0.5):
        self._functions = functions
        self._retry_base_s = retry_base_s

    async def encrypt(self, plaintext: str) -> str:
        if not plaintext or not plaintext.strip():
            return ""

        last_error: Optional[Exception] = None
        for attempt in range(MAX_RETRIES + 1):
            if attempt > 0:
                await asyncio.sleep((2 ** attempt) * self._retry_base_s)
                logger.info(f"[crypto] Retry attempt {attempt} for encryption")
            try:
                result = await self._functions.call(
                    CRYPTO_FUNCTION,
                    {"action": "encrypt", "data": plaintext},
                    timeout_s=CRYPTO_TIMEOUT_S,
                )
            except GestorError as e:
                last_error = e
                logger.error(f"[crypto] Encryption error (attempt {attempt}): {e}")
                continue
            encrypted = result.get("encrypted") if isinstance(result, dict) else None
            if isinstance(encrypted, str) and encrypted:
                return encrypted
            logger.error("[crypto] Invalid encryption response")
            last_error = ValueError("Invalid encryption response")

        logger.error(f"[crypto] All encryption attempts failed: {last_error}")
        return ""

    async def decrypt(self, ciphertext: str) -> str:
        if not ciphertext or not ciphertext.strip():
            return ""
        try:
            result = await self._functions.call(
                CRYPTO_FUNCTION,
                {"action": "decrypt", "data": ciphertext},
                timeout_s=CRYPTO_TIMEOUT_S,
            )
        except GestorError as e:
            logger.error(f"[crypto] Decryption error: {e}")
            return ""
        if not isinstance(result, dict):
            return ""
        return str(result.get("decrypted") or "")
