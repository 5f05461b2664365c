"""
Utilitários do backend: acesso ao banco com retry, autenticação e telefones.
"""

from .db_helpers import (
    is_transient_db_error,
    db_call_with_retry,
    db_error_code,
)
from .phone_utils import (
    normalize_phone_with_ddi,
    normalize_jid_to_phone,
    phone_variants,
)

__all__ = [
    "is_transient_db_error",
    "db_call_with_retry",
    "db_error_code",
    "normalize_phone_with_ddi",
    "normalize_jid_to_phone",
    "phone_variants",
]
