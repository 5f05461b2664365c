"""
Database helper utilities.

Retry for transient Supabase/PostgREST failures and error classification.
"""

import logging
import re
import time
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


# ==================== ERROR DETECTION ====================
def is_transient_db_error(exc: Exception) -> bool:
    """Check if an exception is a transient database error that may be retried."""
    s = str(exc or "").lower()
    transient_markers = [
        "timeout",
        "timed out",
        "temporarily unavailable",
        "connection refused",
        "connection reset",
        "connection error",
        "network",
        "dns",
        "name or service not known",
        "failed to establish a new connection",
        "server disconnected",
        "502",
        "503",
        "504",
        "bad gateway",
        "gateway timeout",
        "service unavailable",
    ]
    return any(m in s for m in transient_markers)


_PG_CODE_RE = re.compile(r"['\"]code['\"]\s*:\s*['\"]([0-9A-Z]{5})['\"]")


def db_error_code(exc: Exception) -> Optional[str]:
    """Extract the Postgres SQLSTATE (e.g. 23505) from a PostgREST error."""
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code:
        return code
    m = _PG_CODE_RE.search(str(exc or ""))
    return m.group(1) if m else None


# ==================== RETRY LOGIC ====================
def db_call_with_retry(op_name: str, fn: Callable[[], Any], max_attempts: int = 4) -> Any:
    """
    Execute a database call with retry logic for transient errors.

    Args:
        op_name: Name of the operation (for logging)
        fn: Function to execute
        max_attempts: Maximum number of retry attempts

    Returns:
        Result of the function call

    Raises:
        Exception: If all attempts fail or a non-transient error occurs
    """
    import asyncio

    try:
        asyncio.get_running_loop()
        in_event_loop = True
    except RuntimeError:
        in_event_loop = False

    # Dentro do event loop não bloqueamos com time.sleep
    if in_event_loop:
        max_attempts = 1

    last_exc: Optional[Exception] = None
    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except Exception as e:
            last_exc = e
            if attempt >= max_attempts or not is_transient_db_error(e):
                raise
            sleep_s = min(2.0, 0.15 * (2 ** (attempt - 1)))
            logger.warning(f"{op_name} falhou (tentativa {attempt}/{max_attempts}): {e}")
            time.sleep(sleep_s)
    raise last_exc or Exception(f"{op_name} falhou")
