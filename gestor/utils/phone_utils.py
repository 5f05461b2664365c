"""
Phone number utilities.

Brazilian-first normalization, JID handling and the format variants tried
when the gateway rejects a number.
"""

import logging
import re
from typing import Any, List, Optional

logger = logging.getLogger(__name__)

_JID_SUFFIXES = ("@s.whatsapp.net", "@c.us", "@lid")


def _digits(value: Any) -> str:
    return re.sub(r"\D", "", str(value or ""))


def normalize_phone_with_ddi(value: Any) -> Optional[str]:
    """Digits with the 55 country code added to 10-11 digit numbers; None below 8 digits."""
    digits = _digits(value)
    if len(digits) < 8:
        logger.info(f"[phone-utils] Phone too short: {digits}")
        return None
    if digits.startswith('55') and 12 <= len(digits) <= 13:
        return digits
    if 10 <= len(digits) <= 11:
        return '55' + digits
    return digits


def normalize_jid_to_phone(jid: str) -> str:
    """JID to phone, only when it looks like an E.164 number (10-15 digits)."""
    if not jid:
        return ""
    raw = str(jid)
    for suffix in _JID_SUFFIXES:
        raw = raw.replace(suffix, "")
    digits = _digits(raw)
    if 10 <= len(digits) <= 15:
        return digits
    return ""


def phone_variants(phone: str) -> List[str]:
    """
    Formats to try when sending to a Brazilian number, original first.

    Adds/removes the 55 country code and the mobile ninth digit.
    """
    clean = _digits(phone)
    if not clean:
        return []
    variants = [clean]

    if not clean.startswith('55') and len(clean) in (10, 11):
        variants.append(f"55{clean}")

    if clean.startswith('55') and len(clean) >= 12:
        variants.append(clean[2:])

    if clean.startswith('55') and len(clean) == 12:
        ddd = clean[2:4]
        num = clean[4:]
        if not num.startswith('9') and int(ddd) >= 11:
            variants.append(f"55{ddd}9{num}")

    if clean.startswith('55') and len(clean) == 13:
        variants.append(clean[:4] + clean[5:])

    return list(dict.fromkeys(variants))
