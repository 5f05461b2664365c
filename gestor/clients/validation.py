"""
Validação e normalização silenciosa de clientes antes de salvar.

Correções automáticas são registradas em `corrections`; apenas erros de nome
impedem o salvamento.
"""
from __future__ import annotations

import re
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Deque, Dict, List, Optional

from ..core.locks import OperationLocks

MAX_LOGS = 100
DEFAULT_EXPIRATION_DAYS = 30
MAX_PRICE = 99999

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_MISSING = object()


@dataclass
class ValidationResult:
    is_valid: bool
    data: Dict[str, Any]
    corrections: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    blocked: bool = False
    block_reason: Optional[str] = None


def normalize_name(value: Optional[str]) -> str:
    if not value:
        return ""
    words = re.sub(r"\s+", " ", value.strip()).split(" ")
    return " ".join(w[:1].upper() + w[1:].lower() for w in words)


def normalize_phone(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    digits = re.sub(r"\D", "", str(value))
    if not digits:
        return None
    if len(digits) == 11 and digits.startswith("9"):
        return f"55{digits}"
    return digits


def normalize_email(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    trimmed = value.strip().lower()
    return trimmed or None


def normalize_date(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    parsed: Optional[date] = None
    try:
        if "-" in value:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        elif "/" in value:
            parts = value.split("/")
            if len(parts) == 3:
                parsed = date(int(parts[2]), int(parts[1]), int(parts[0]))
    except ValueError:
        return None
    return parsed.isoformat() if parsed else None


def normalize_price(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return value
    cleaned = re.sub(r"[^\d.-]", "", str(value).replace(",", "."))
    try:
        return float(cleaned)
    except ValueError:
        return None


def normalize_login(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    trimmed = value.strip()
    return trimmed or None


def normalize_category(value: Optional[str]) -> str:
    if not value or not value.strip():
        return "IPTV"
    return value.strip()


def _default_expiration(today: date) -> str:
    return (today + timedelta(days=DEFAULT_EXPIRATION_DAYS)).isoformat()


class ClientValidator:
    def __init__(self, *, locks: Optional[OperationLocks] = None, today=None):
        self.locks = locks or OperationLocks()
        self._today = today or (lambda: datetime.now(timezone.utc).date())
        self._logs: Deque[Dict[str, Any]] = deque(maxlen=MAX_LOGS)

    @property
    def logs(self) -> List[Dict[str, Any]]:
        """Entradas mais recentes primeiro."""
        return list(self._logs)

    def clear_logs(self) -> None:
        self._logs.clear()

    def _log(self, operation: str, client_id: Optional[str], result: ValidationResult) -> None:
        self._logs.appendleft(
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "operation": operation,
                "client_id": client_id,
                "corrections": list(result.corrections),
                "errors": list(result.errors),
                "blocked": result.blocked,
                "block_reason": result.block_reason,
            }
        )

    def validate_client(self, data: Dict[str, Any], operation: str, client_id: Optional[str] = None) -> ValidationResult:
        corrections: List[str] = []
        errors: List[str] = []
        out = dict(data)

        if client_id and operation != "create" and self.locks.is_locked(client_id):
            result = ValidationResult(False, out, corrections, errors, True, "Operação em andamento")
            self._log(operation, client_id, result)
            return result

        name = data.get("name", _MISSING)
        if name is not _MISSING:
            normalized = normalize_name(name)
            if normalized != name:
                corrections.append(f'Nome normalizado: "{name}" → "{normalized}"')
                out["name"] = normalized
            if operation in ("create", "update"):
                if not normalized:
                    errors.append("Nome é obrigatório")
                elif len(normalized) > 100:
                    errors.append("Nome muito longo")

        phone = data.get("phone", _MISSING)
        if phone is not _MISSING:
            normalized_phone = normalize_phone(phone)
            if normalized_phone is not None and normalized_phone != phone:
                corrections.append("Telefone normalizado")
                out["phone"] = normalized_phone
            if normalized_phone and len(normalized_phone) < 8:
                corrections.append("Telefone inválido removido")
                out["phone"] = None

        email = data.get("email", _MISSING)
        if email is not _MISSING:
            normalized_email = normalize_email(email)
            if normalized_email != email:
                corrections.append("Email normalizado")
                out["email"] = normalized_email
            if normalized_email and not _EMAIL_RE.match(normalized_email):
                corrections.append("Email inválido removido")
                out["email"] = None

        expiration = data.get("expiration_date", _MISSING)
        if expiration is not _MISSING or operation == "create":
            raw = None if expiration is _MISSING else expiration
            normalized_date = normalize_date(raw)
            if not raw:
                corrections.append("Data de vencimento definida automaticamente")
                out["expiration_date"] = _default_expiration(self._today())
            elif normalized_date is None:
                corrections.append("Data inválida corrigida para 30 dias")
                out["expiration_date"] = _default_expiration(self._today())
            elif normalized_date != raw:
                corrections.append("Data normalizada")
                out["expiration_date"] = normalized_date

        price = data.get("plan_price", _MISSING)
        if price is not _MISSING:
            normalized_price = normalize_price(price)
            if normalized_price != price:
                corrections.append("Preço normalizado")
                out["plan_price"] = normalized_price
            if normalized_price is not None and (normalized_price < 0 or normalized_price > MAX_PRICE):
                corrections.append("Preço inválido corrigido para 0")
                out["plan_price"] = 0

        pending = data.get("pending_amount", _MISSING)
        if pending is not _MISSING:
            normalized_pending = normalize_price(pending)
            out["pending_amount"] = normalized_pending
            if normalized_pending is not None and normalized_pending < 0:
                corrections.append("Valor pendente corrigido para 0")
                out["pending_amount"] = 0

        category = data.get("category", _MISSING)
        if category is not _MISSING or operation == "create":
            raw_category = None if category is _MISSING else category
            normalized_category = normalize_category(raw_category)
            if normalized_category != raw_category:
                corrections.append(f"Categoria definida automaticamente: {normalized_category}")
                out["category"] = normalized_category

        login = data.get("login", _MISSING)
        if login is not _MISSING:
            normalized_login = normalize_login(login)
            if normalized_login != login:
                corrections.append("Login normalizado")
                out["login"] = normalized_login

        if "is_paid" not in data and operation == "create":
            corrections.append("Status de pagamento definido como pago")
            out["is_paid"] = True

        result = ValidationResult(not errors, out, corrections, errors)
        self._log(operation, client_id, result)
        return result

    def validate_for_create(self, data: Dict[str, Any]) -> ValidationResult:
        return self.validate_client(data, "create")

    def validate_for_update(self, data: Dict[str, Any], client_id: str) -> ValidationResult:
        return self.validate_client(data, "update", client_id)
